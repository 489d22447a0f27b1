"""
Test suite for the installment ledger

Contract creation, payment application, amendments, rescheduling,
derived statuses and the default sweep.
"""

import threading
import pytest
from decimal import Decimal
from datetime import datetime, timezone, date
from unittest.mock import Mock

from hire_purchase.currency import Money, Currency, money_sum
from hire_purchase.storage import InMemoryStorage
from hire_purchase.events import EventDispatcher, DomainEvent
from hire_purchase.amortization import PaymentFrequency
from hire_purchase.errors import (
    EntityNotFoundError, InvalidStateError, AlreadyPaidError, PaymentsExistError,
    AmountMismatchError, ConcurrentModificationError
)
from hire_purchase.ledger import (
    InstallmentLedger, ContractStatus, InstallmentStatus, AccountStatus, contract_account_status
)


def ghs(value: str) -> Money:
    return Money(Decimal(value), Currency.GHS)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def dispatcher():
    return EventDispatcher()


@pytest.fixture
def ledger(storage, dispatcher):
    return InstallmentLedger(storage, default_threshold_days=30, event_dispatcher=dispatcher)


@pytest.fixture
def contract(ledger):
    """1200.00 phone, 200.00 deposit, 1000.00 over 3 months"""
    return ledger.create_contract(
        customer_id="cust-1",
        total_price=ghs("1200.00"),
        deposit_amount=ghs("200.00"),
        payment_frequency=PaymentFrequency.MONTHLY,
        installment_count=3,
        start_date=date(2024, 1, 1),
        grace_period_days=5
    )


class TestContractCreation:
    """Test contract creation"""

    def test_schedule_generated(self, contract):
        assert contract.finance_amount == ghs("1000.00")
        assert [i.amount for i in contract.installments] == [ghs("333.33"), ghs("333.33"), ghs("333.34")]
        assert contract.end_date == date(2024, 3, 1)
        assert contract.status == ContractStatus.ACTIVE
        assert contract.total_paid == ghs("200.00")
        assert contract.outstanding_balance == ghs("1000.00")
        assert contract.contract_number.startswith("HP-")

    def test_persisted_round_trip(self, ledger, contract):
        loaded = ledger.get_contract(contract.id)

        assert loaded.installments == contract.installments
        assert loaded.total_price == contract.total_price
        assert loaded.payment_frequency == PaymentFrequency.MONTHLY
        assert loaded.version == 1

    def test_created_event(self, ledger, dispatcher):
        handler = Mock()
        dispatcher.subscribe(DomainEvent.CONTRACT_CREATED, handler)

        ledger.create_contract("cust-2", ghs("100.00"), ghs("0"), PaymentFrequency.WEEKLY, 2, date(2024, 1, 1))

        assert handler.call_args[0][0].data["finance_amount"] == "100.00"

    def test_full_deposit_completes_contract(self, ledger, dispatcher):
        handler = Mock()
        dispatcher.subscribe(DomainEvent.CONTRACT_COMPLETED, handler)

        contract = ledger.create_contract("cust-2", ghs("500.00"), ghs("500.00"),
                                          PaymentFrequency.MONTHLY, 2, date(2024, 1, 1))

        assert contract.status == ContractStatus.COMPLETED
        assert ledger.get_contract(contract.id).status == ContractStatus.COMPLETED
        assert all(i.amount == ghs("0.00") for i in contract.installments)
        assert ledger.account_status("cust-2", date(2024, 6, 1)) == AccountStatus.COMPLETED
        handler.assert_called_once()

    @pytest.mark.parametrize("kwargs", [
        {"total_price": ghs("0")},
        {"deposit_amount": ghs("1300.00")},
        {"deposit_amount": ghs("-1.00")},
        {"grace_period_days": -1},
        {"penalty_percentage": Decimal("101")},
        {"installment_count": 0},
    ])
    def test_invalid_terms(self, ledger, kwargs):
        terms = dict(
            customer_id="cust-1", total_price=ghs("1200.00"), deposit_amount=ghs("200.00"),
            payment_frequency=PaymentFrequency.MONTHLY, installment_count=3, start_date=date(2024, 1, 1)
        )
        terms.update(kwargs)
        with pytest.raises(ValueError):
            ledger.create_contract(**terms)

    def test_missing_contract(self, ledger):
        with pytest.raises(EntityNotFoundError):
            ledger.get_contract("nope")


class TestApplyPayment:
    """Test applying payments to installments"""

    def test_example_scenario(self, ledger, contract):
        """Pay installment 1, reschedule blocked, amend installment 2"""
        first, second, third = contract.installments

        paid = ledger.apply_payment(contract.id, first.id, ghs("333.33"))
        updated = ledger.get_contract(contract.id)

        assert updated.installment_status(paid, date(2024, 1, 1)) == InstallmentStatus.PAID
        assert updated.installments_paid == ghs("333.33")
        assert updated.outstanding_balance == ghs("666.67")

        with pytest.raises(PaymentsExistError):
            ledger.reschedule(contract.id, date(2024, 6, 1))

        amended = ledger.amend_installment(contract.id, second.id, new_amount=ghs("200.00"))
        assert [i.amount for i in amended.installments] == [ghs("333.33"), ghs("200.00"), ghs("466.67")]
        assert money_sum((i.amount for i in amended.installments), Currency.GHS) == amended.finance_amount

    def test_partial_payment(self, ledger, contract):
        installment = ledger.apply_payment(contract.id, contract.installments[0].id, ghs("100.00"))

        assert installment.paid_amount == ghs("100.00")
        assert installment.paid_at is None
        assert installment.status(date(2024, 1, 1), 5) == InstallmentStatus.PARTIAL

    def test_overpayment_rejected(self, ledger, contract):
        with pytest.raises(AmountMismatchError):
            ledger.apply_payment(contract.id, contract.installments[0].id, ghs("333.34"))
        assert not ledger.get_contract(contract.id).has_payments

    @pytest.mark.parametrize("amount", ["0", "-5.00"])
    def test_non_positive_amount(self, ledger, contract, amount):
        with pytest.raises(ValueError):
            ledger.apply_payment(contract.id, contract.installments[0].id, ghs(amount))

    def test_unknown_installment(self, ledger, contract):
        with pytest.raises(EntityNotFoundError):
            ledger.apply_payment(contract.id, "nope", ghs("1.00"))

    def test_full_payment_completes_contract(self, ledger, contract, dispatcher):
        completed = Mock()
        dispatcher.subscribe(DomainEvent.CONTRACT_COMPLETED, completed)

        ledger.apply_payments(contract.id, [(i.id, i.amount) for i in contract.installments])

        updated = ledger.get_contract(contract.id)
        assert updated.status == ContractStatus.COMPLETED
        assert updated.outstanding_balance.is_zero()
        assert updated.total_paid == ghs("1200.00")
        completed.assert_called_once()

        with pytest.raises(InvalidStateError):
            ledger.apply_payment(contract.id, contract.installments[0].id, ghs("1.00"))

    def test_batch_is_all_or_nothing(self, ledger, contract):
        first, second, _ = contract.installments

        with pytest.raises(AmountMismatchError):
            ledger.apply_payments(contract.id, [(first.id, ghs("333.33")), (second.id, ghs("500.00"))])

        assert not ledger.get_contract(contract.id).has_payments

    def test_batch_counts_repeated_installment(self, ledger, contract):
        first = contract.installments[0]
        with pytest.raises(AmountMismatchError):
            ledger.apply_payments(contract.id, [(first.id, ghs("200.00")), (first.id, ghs("200.00"))])

    def test_reference_applied_once(self, ledger, contract):
        first = contract.installments[0]

        ledger.apply_payment(contract.id, first.id, ghs("100.00"), reference="TXN-1")
        assert ledger.apply_payments(contract.id, [(first.id, ghs("100.00"))], reference="TXN-1") == []

        assert ledger.get_contract(contract.id).installments[0].paid_amount == ghs("100.00")

    def test_concurrent_payments_serialized(self, ledger, contract):
        """Parallel payments on one contract never lose an update"""
        installment_id = contract.installments[2].id
        errors = []

        def pay():
            try:
                ledger.apply_payment(contract.id, installment_id, ghs("10.00"))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=pay) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert ledger.get_contract(contract.id).installments[2].paid_amount == ghs("100.00")

    def test_stale_write_detected(self, storage, contract):
        """A second ledger without shared locks loses the version race"""
        ledger_a = InstallmentLedger(storage)
        stale = ledger_a.get_contract(contract.id)
        ledger_a.apply_payment(contract.id, contract.installments[0].id, ghs("1.00"))

        with pytest.raises(ConcurrentModificationError):
            ledger_a._save_contract(stale)


class TestAmendAndReschedule:
    """Test schedule edits"""

    def test_amend_due_date_only(self, ledger, contract):
        second = contract.installments[1]
        amended = ledger.amend_installment(contract.id, second.id, new_due_date=date(2024, 2, 15))

        assert amended.installments[1].due_date == date(2024, 2, 15)
        assert [i.amount for i in amended.installments] == [i.amount for i in contract.installments]

    def test_amend_due_date_must_keep_order(self, ledger, contract):
        with pytest.raises(InvalidStateError):
            ledger.amend_installment(contract.id, contract.installments[1].id, new_due_date=date(2024, 3, 2))

    def test_amend_last_due_date_moves_end_date(self, ledger, contract):
        amended = ledger.amend_installment(contract.id, contract.installments[2].id, new_due_date=date(2024, 4, 1))
        assert amended.end_date == date(2024, 4, 1)

    def test_amend_partially_paid_installment(self, ledger, contract):
        first = contract.installments[0]
        ledger.apply_payment(contract.id, first.id, ghs("0.01"))

        with pytest.raises(AlreadyPaidError):
            ledger.amend_installment(contract.id, first.id, new_amount=ghs("100.00"))

    def test_amend_requires_a_change(self, ledger, contract):
        with pytest.raises(ValueError):
            ledger.amend_installment(contract.id, contract.installments[0].id)

    def test_amend_event(self, ledger, contract, dispatcher):
        handler = Mock()
        dispatcher.subscribe(DomainEvent.INSTALLMENT_AMENDED, handler)

        ledger.amend_installment(contract.id, contract.installments[0].id, new_amount=ghs("400.00"))

        assert handler.call_args[0][0].data["new_amount"] == "400.00"

    def test_reschedule_regenerates_dates(self, ledger, contract):
        rescheduled = ledger.reschedule(contract.id, date(2024, 5, 31))

        assert [i.due_date for i in rescheduled.installments] == [
            date(2024, 5, 31), date(2024, 6, 30), date(2024, 7, 31)
        ]
        assert rescheduled.start_date == date(2024, 5, 31)
        assert rescheduled.end_date == date(2024, 7, 31)
        assert money_sum((i.amount for i in rescheduled.installments), Currency.GHS) == ghs("1000.00")


class TestStatuses:
    """Test derived installment and account statuses"""

    def test_overdue_respects_grace_period(self, contract):
        first = contract.installments[0]

        assert first.status(date(2024, 1, 6), 5) == InstallmentStatus.PENDING
        assert first.status(date(2024, 1, 7), 5) == InstallmentStatus.OVERDUE
        assert first.days_overdue(date(2024, 1, 10), 5) == 4

    def test_overdue_beats_partial(self, ledger, contract):
        ledger.apply_payment(contract.id, contract.installments[0].id, ghs("10.00"))
        updated = ledger.get_contract(contract.id)

        assert updated.installment_status(updated.installments[0], date(2024, 2, 1)) == InstallmentStatus.OVERDUE

    def test_account_status_levels(self, ledger, contract):
        assert ledger.account_status("cust-1", date(2024, 1, 1)) == AccountStatus.GOOD_STANDING
        assert ledger.account_status("cust-1", date(2024, 1, 20)) == AccountStatus.OVERDUE
        # due 2024-01-01 + 5 grace + 30 threshold
        assert ledger.account_status("cust-1", date(2024, 2, 6)) == AccountStatus.DEFAULTED

    def test_account_status_aggregates(self, ledger, contract):
        other = ledger.create_contract("cust-1", ghs("100.00"), ghs("0"), PaymentFrequency.MONTHLY, 1, date(2024, 1, 1))
        ledger.apply_payment(other.id, other.installments[0].id, ghs("100.00"))

        assert ledger.account_status("cust-1", date(2024, 1, 20)) == AccountStatus.OVERDUE

        ledger.apply_payments(contract.id, [(i.id, i.amount) for i in contract.installments])
        assert ledger.account_status("cust-1", date(2024, 1, 20)) == AccountStatus.COMPLETED

    def test_cancelled_contracts_ignored(self, ledger, contract):
        ledger.cancel_contract(contract.id)
        assert ledger.account_status("cust-1", date(2024, 6, 1)) == AccountStatus.GOOD_STANDING

    def test_unknown_customer(self, ledger):
        assert ledger.account_status("nobody") == AccountStatus.GOOD_STANDING

    def test_contract_account_status_completed(self, ledger, contract):
        ledger.apply_payments(contract.id, [(i.id, i.amount) for i in contract.installments])
        assert contract_account_status(ledger.get_contract(contract.id), date(2030, 1, 1), 30) == AccountStatus.COMPLETED

    def test_overdue_installments(self, ledger, contract):
        overdue = ledger.overdue_installments(contract.id, date(2024, 2, 10))
        assert [i.sequence_number for i in overdue] == [1, 2]


class TestContractLifecycle:
    """Test cancellation, defaults and mandate linkage"""

    def test_mark_defaults(self, ledger, contract, dispatcher):
        handler = Mock()
        dispatcher.subscribe(DomainEvent.CONTRACT_DEFAULTED, handler)

        assert ledger.mark_defaults(date(2024, 1, 20)) == {"contracts_checked": 1, "contracts_defaulted": 0}
        assert ledger.mark_defaults(date(2024, 2, 6)) == {"contracts_checked": 1, "contracts_defaulted": 1}

        assert ledger.get_contract(contract.id).status == ContractStatus.DEFAULTED
        handler.assert_called_once()

    def test_defaulted_contract_still_takes_payments(self, ledger, contract):
        ledger.mark_defaults(date(2024, 3, 1))
        ledger.apply_payment(contract.id, contract.installments[0].id, ghs("10.00"))

    def test_cancel(self, ledger, contract):
        cancelled = ledger.cancel_contract(contract.id)
        assert cancelled.status == ContractStatus.CANCELLED

        with pytest.raises(InvalidStateError):
            ledger.cancel_contract(contract.id)
        with pytest.raises(InvalidStateError):
            ledger.apply_payment(contract.id, contract.installments[0].id, ghs("1.00"))

    def test_attach_mandate(self, ledger, contract):
        ledger.attach_mandate(contract.id, "mandate-1")
        assert ledger.get_contract(contract.id).mandate_id == "mandate-1"

    def test_list_contracts(self, ledger, contract):
        ledger.create_contract("cust-2", ghs("50.00"), ghs("0"), PaymentFrequency.DAILY, 5, date(2024, 1, 1))

        assert [c.id for c in ledger.list_contracts(customer_id="cust-1")] == [contract.id]
        assert len(ledger.list_contracts(status=ContractStatus.ACTIVE)) == 2
