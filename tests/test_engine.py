"""
Integration tests for the wired engine

Runs the hire-purchase flow end to end: contract, mandate, direct debit,
failure, sweep-driven retry and success.
"""

import pytest
from decimal import Decimal
from datetime import datetime, timezone, timedelta, date

from hire_purchase.config import EngineConfig
from hire_purchase.currency import Money, Currency
from hire_purchase.storage import InMemoryStorage, SQLiteStorage
from hire_purchase.amortization import PaymentFrequency
from hire_purchase.gateway import MockGateway, HttpGatewayAdapter, ChargeStatus
from hire_purchase.ledger import ContractStatus, AccountStatus
from hire_purchase.mandates import MandateStatus
from hire_purchase.payments import AttemptStatus
from hire_purchase.engine import InstallmentEngine, create_storage, create_gateway

T0 = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def ghs(value: str) -> Money:
    return Money(Decimal(value), Currency.GHS)


@pytest.fixture
def engine():
    config = EngineConfig(_env_file=None, database_url="memory://")
    engine = InstallmentEngine(config)
    yield engine
    engine.close()


class TestFactories:
    """Test storage and gateway selection"""

    def test_memory_storage(self):
        assert isinstance(create_storage(EngineConfig(_env_file=None, database_url="memory://")), InMemoryStorage)

    def test_sqlite_storage(self, tmp_path):
        storage = create_storage(EngineConfig(_env_file=None, database_url=f"sqlite:///{tmp_path}/hp.db"))
        assert isinstance(storage, SQLiteStorage)
        storage.close()

    def test_unknown_storage(self):
        with pytest.raises(ValueError):
            create_storage(EngineConfig(_env_file=None, database_url="postgresql://localhost/hp"))

    def test_gateway_selection(self):
        assert isinstance(create_gateway(EngineConfig(_env_file=None)), MockGateway)
        gateway = create_gateway(EngineConfig(_env_file=None, gateway_base_url="https://gw.test"))
        assert isinstance(gateway, HttpGatewayAdapter)
        gateway.close()


class TestWiring:
    """Test that components share storage, locks and events"""

    def test_components_share_infrastructure(self, engine):
        assert engine.payments.ledger is engine.ledger
        assert engine.payments.mandates is engine.mandates
        assert engine.payments.retry_scheduler is engine.retry_scheduler
        assert engine.retry_scheduler.coordinator is engine.payments
        assert engine.ledger.locks is engine.payments.locks is engine.mandates.locks
        assert engine.mandates.supported_networks == {"MTN", "VODAFONE", "TELECEL"}

    def test_poller_uses_config(self, engine):
        poller = engine.poller()
        assert poller.interval == 2.0
        assert poller.timeout == 120.0
        assert engine.poller(interval=0.5, timeout=1).interval == 0.5


class TestEndToEnd:
    """Full collection flow through the engine"""

    def test_direct_debit_with_retry(self, engine):
        contract = engine.ledger.create_contract(
            customer_id="cust-1",
            total_price=ghs("1200.00"),
            deposit_amount=ghs("200.00"),
            payment_frequency=PaymentFrequency.MONTHLY,
            installment_count=3,
            start_date=date(2024, 1, 1)
        )
        mandate = engine.mandates.initiate("cust-1", "0241234567", "MTN", contract_id=contract.id, now=T0)
        mandate = engine.mandates.verify(mandate.client_reference_id, "123456", now=T0)
        assert mandate.status == MandateStatus.APPROVED
        engine.ledger.attach_mandate(contract.id, mandate.id)

        first = contract.installments[0]
        attempt = engine.payments.charge_via_mandate(contract.id, mandate.id, [first.id], first.amount, now=T0)
        failed = engine.payments.handle_callback(attempt.transaction_ref, "FAILED", "Insufficient funds",
                                                 now=T0 + timedelta(minutes=1))
        assert failed.next_retry_at == T0 + timedelta(days=1, minutes=1)

        results = engine.tick(T0 + timedelta(days=1, minutes=1))
        assert results["retries"]["retried"] == 1

        retry = engine.payments.get_attempt(engine.payments.get_attempt(attempt.id).superseded_by)
        engine.gateway.set_charge_status(retry.external_ref, ChargeStatus.SUCCESS)
        resolved = engine.poller(interval=0.001, timeout=1).poll_until_resolved(retry.id)

        assert resolved.status == AttemptStatus.SUCCESS
        loaded = engine.ledger.get_contract(contract.id)
        assert loaded.get_installment(first.id).is_paid
        assert loaded.mandate_id == mandate.id
        assert engine.ledger.account_status("cust-1", date(2024, 1, 3)) == AccountStatus.GOOD_STANDING
        assert any("failed" in n.body for n in engine.notifier.get_notifications("cust-1"))

    def test_tick_runs_all_sweeps(self, engine):
        contract = engine.ledger.create_contract(
            customer_id="cust-2",
            total_price=ghs("300.00"),
            deposit_amount=ghs("0.00"),
            payment_frequency=PaymentFrequency.WEEKLY,
            installment_count=3,
            start_date=date(2024, 1, 1)
        )
        engine.mandates.initiate("cust-2", "0241111111", "VODAFONE", now=T0)

        results = engine.tick(T0 + timedelta(days=40))

        assert results["mandates"]["mandates_expired"] == 1
        assert results["defaults"]["contracts_defaulted"] == 1
        assert results["retries"]["due"] == 0
        assert engine.ledger.get_contract(contract.id).status == ContractStatus.DEFAULTED
