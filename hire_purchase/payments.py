"""
Payment Attempt Coordinator Module

Issues interactive and mandate-backed charges through the gateway, resolves
their outcome, applies successful payments to the ledger and hands failures
to the retry scheduler. Retries are new attempts linked to the one they
replace; an attempt is never retried twice.
"""

from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple, Union
from enum import Enum
import logging
import uuid

from .currency import Money, Currency, money_sum
from .storage import StorageInterface, StorageRecord, LockRegistry, parse_datetime, format_datetime
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .gateway import GatewayAdapter, ChargeStatus
from .ledger import InstallmentLedger, Contract, PAYABLE_STATES
from .mandates import MandateManager, normalize_msisdn
from .errors import (
    EntityNotFoundError, InvalidStateError, AmountMismatchError,
    UnsupportedNetworkError, MandateNotUsableError, ConcurrentModificationError
)
from .logging_config import log_action

logger = logging.getLogger("hire_purchase.payments")


class PaymentChannel(Enum):
    """How the charge is collected"""
    INTERACTIVE = "INTERACTIVE"  # customer approves a prompt
    DIRECT_DEBIT = "DIRECT_DEBIT"  # backed by an approved mandate


class AttemptStatus(Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


@dataclass
class RetryRecord:
    """One retry in an attempt chain's history"""
    attempt_number: int
    attempt_id: str
    status: AttemptStatus
    attempted_at: datetime
    failure_reason: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'attempt_number': self.attempt_number,
            'attempt_id': self.attempt_id,
            'status': self.status.value,
            'attempted_at': self.attempted_at.isoformat(),
            'failure_reason': self.failure_reason,
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'RetryRecord':
        return cls(
            attempt_number=data['attempt_number'],
            attempt_id=data['attempt_id'],
            status=AttemptStatus(data['status']),
            attempted_at=datetime.fromisoformat(data['attempted_at']),
            failure_reason=data.get('failure_reason'),
        )


@dataclass
class PaymentAttempt(StorageRecord):
    """A single try to collect money for one or more installments"""
    contract_id: str
    customer_id: str
    amount: Money
    installment_ids: List[str]
    channel: PaymentChannel
    transaction_ref: str
    status: AttemptStatus = AttemptStatus.PENDING
    external_ref: Optional[str] = None
    msisdn: Optional[str] = None
    network: Optional[str] = None
    mandate_id: Optional[str] = None
    failure_reason: Optional[str] = None
    retry_count: int = 0
    max_retries: int = 0
    next_retry_at: Optional[datetime] = None
    last_retry_at: Optional[datetime] = None
    is_auto_retry_enabled: bool = False
    failed_at: Optional[datetime] = None
    resolved_at: Optional[datetime] = None
    parent_attempt_id: Optional[str] = None
    root_attempt_id: Optional[str] = None
    superseded_by: Optional[str] = None
    retries: List[RetryRecord] = field(default_factory=list)
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != AttemptStatus.PENDING

    @property
    def is_latest_in_chain(self) -> bool:
        return self.superseded_by is None


class PaymentCoordinator(EventPublisherMixin):
    """
    Coordinates payment attempts between the gateway, ledger and retry scheduler
    """

    def __init__(
        self,
        storage: StorageInterface,
        ledger: InstallmentLedger,
        mandates: MandateManager,
        gateway: GatewayAdapter,
        payment_networks: Iterable[str],
        retry_scheduler=None,
        locks: Optional[LockRegistry] = None,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.ledger = ledger
        self.mandates = mandates
        self.gateway = gateway
        self.payment_networks = {n.upper() for n in payment_networks}
        self.retry_scheduler = retry_scheduler
        self.locks = locks or LockRegistry()
        self.set_event_dispatcher(event_dispatcher)

        self.attempts_table = "payment_attempts"

    def set_retry_scheduler(self, retry_scheduler) -> None:
        self.retry_scheduler = retry_scheduler

    # Charging

    def charge_interactive(
        self,
        contract_id: str,
        installment_ids: Sequence[str],
        amount: Money,
        msisdn: str,
        network: str,
        now: Optional[datetime] = None
    ) -> PaymentAttempt:
        """
        Start a charge the customer approves on their phone.

        Returns immediately with a PENDING attempt; the outcome arrives through
        `handle_callback` or `check_status`.
        """
        now = now or datetime.now(timezone.utc)
        network = network.upper()
        if network not in self.payment_networks:
            raise UnsupportedNetworkError(f"Network {network} is not supported for payments")
        contract = self._validate_targets(contract_id, installment_ids, amount)

        attempt = self._new_attempt(contract, installment_ids, amount, PaymentChannel.INTERACTIVE, now,
                                    msisdn=normalize_msisdn(msisdn), network=network)
        attempt.external_ref = self.gateway.initiate_charge(amount, attempt.msisdn, network, attempt.transaction_ref)
        return self._record_initiated(attempt)

    def charge_via_mandate(
        self,
        contract_id: str,
        mandate_id: str,
        installment_ids: Sequence[str],
        amount: Money,
        now: Optional[datetime] = None
    ) -> PaymentAttempt:
        """Start a direct debit against an APPROVED, unexpired mandate"""
        now = now or datetime.now(timezone.utc)
        contract = self._validate_targets(contract_id, installment_ids, amount)
        mandate = self._usable_mandate(mandate_id, contract, now)

        attempt = self._new_attempt(contract, installment_ids, amount, PaymentChannel.DIRECT_DEBIT, now,
                                    msisdn=mandate.msisdn, network=mandate.network, mandate_id=mandate.id)
        attempt.external_ref = self.gateway.initiate_direct_debit(
            amount, mandate.msisdn, mandate.network, attempt.transaction_ref, mandate.external_mandate_id
        )
        return self._record_initiated(attempt)

    # Resolution

    def resolve(
        self,
        attempt_id: str,
        status: Union[ChargeStatus, AttemptStatus, str],
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentAttempt:
        """
        Apply a gateway outcome to a PENDING attempt.

        SUCCESS spreads the amount over the target installments in order.
        FAILED marks the attempt and lets the retry scheduler decide what
        happens next. Resolving an already terminal attempt, or resolving
        with PENDING, returns the attempt unchanged.
        """
        status = AttemptStatus(status.value if isinstance(status, Enum) else str(status).upper())
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(f"attempt:{attempt_id}"):
            attempt = self.get_attempt(attempt_id)
            if attempt.is_terminal:
                if attempt.status != status:
                    logger.warning("Ignoring %s for attempt %s already %s",
                                   status.value, attempt_id, attempt.status.value)
                return attempt
            if status == AttemptStatus.PENDING:
                return attempt

            if status == AttemptStatus.SUCCESS:
                return self._resolve_success(attempt, now)
            return self._resolve_failure(attempt, failure_reason or "Payment failed", now)

    def handle_callback(
        self,
        transaction_ref: str,
        status: str,
        failure_reason: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> PaymentAttempt:
        """Gateway webhook entry point, keyed by the reference we generated"""
        attempt = self.get_by_transaction_ref(transaction_ref)
        return self.resolve(attempt.id, status, failure_reason, now)

    def check_status(self, attempt_id: str, now: Optional[datetime] = None) -> PaymentAttempt:
        """Ask the gateway about a PENDING attempt and resolve it if final"""
        attempt = self.get_attempt(attempt_id)
        if attempt.is_terminal or not attempt.external_ref:
            return attempt
        result = self.gateway.check_charge_status(attempt.external_ref)
        if result.status == ChargeStatus.PENDING:
            return attempt
        return self.resolve(attempt_id, result.status, result.reason, now)

    # Retries

    def retry_attempt(self, attempt_id: str, now: Optional[datetime] = None) -> Optional[PaymentAttempt]:
        """
        Spawn the next attempt in a failed attempt's chain.

        The failed attempt is claimed with a version check before the gateway
        is called, so concurrent callers cannot both retry it. The retry is
        capped at what is still owed on the targets; when nothing is owed the
        chain ends and None is returned. Any error from the gateway call releases
        the claim and propagates. A direct-debit chain whose mandate can no longer
        be charged has its automatic retries switched off.
        """
        now = now or datetime.now(timezone.utc)

        with self.locks.hold(f"attempt:{attempt_id}"):
            parent = self.get_attempt(attempt_id)
            if parent.status != AttemptStatus.FAILED:
                raise InvalidStateError(f"Attempt {attempt_id} is {parent.status.value}, only FAILED attempts retry")
            if parent.superseded_by:
                raise InvalidStateError(f"Attempt {attempt_id} was already retried by {parent.superseded_by}")

            contract = self.ledger.get_contract(parent.contract_id)
            if contract.status not in PAYABLE_STATES:
                raise InvalidStateError(f"Contract {contract.id} is {contract.status.value}")
            owed = self._remaining_on(contract, parent.installment_ids)
            if not owed.is_positive():
                parent.is_auto_retry_enabled = False
                parent.next_retry_at = None
                parent.updated_at = now
                self._save_attempt(parent)
                logger.info("Targets of attempt %s already settled, retry chain closed", attempt_id)
                return None

            mandate = None
            if parent.channel == PaymentChannel.DIRECT_DEBIT:
                try:
                    mandate = self._usable_mandate(parent.mandate_id, contract, now)
                except MandateNotUsableError:
                    parent.is_auto_retry_enabled = False
                    parent.next_retry_at = None
                    parent.updated_at = now
                    self._save_attempt(parent)
                    logger.warning("Mandate of attempt %s is no longer usable, automatic retries stopped", attempt_id)
                    raise

            child = self._new_attempt(
                contract, parent.installment_ids, min(parent.amount, owed), parent.channel, now,
                msisdn=parent.msisdn, network=parent.network, mandate_id=parent.mandate_id
            )
            child.retry_count = parent.retry_count + 1
            child.max_retries = parent.max_retries
            child.is_auto_retry_enabled = parent.is_auto_retry_enabled
            child.parent_attempt_id = parent.id
            child.root_attempt_id = parent.root_attempt_id or parent.id
            child.retries = list(parent.retries) + [
                RetryRecord(child.retry_count, child.id, AttemptStatus.PENDING, now)
            ]

            scheduled_for = parent.next_retry_at
            parent.superseded_by = child.id
            parent.next_retry_at = None
            parent.last_retry_at = now
            parent.updated_at = now
            self._save_attempt(parent)

            try:
                if mandate is not None:
                    child.external_ref = self.gateway.initiate_direct_debit(
                        child.amount, mandate.msisdn, mandate.network,
                        child.transaction_ref, mandate.external_mandate_id
                    )
                else:
                    child.external_ref = self.gateway.initiate_charge(
                        child.amount, child.msisdn, child.network, child.transaction_ref
                    )
            except Exception:
                parent.superseded_by = None
                parent.next_retry_at = scheduled_for
                parent.last_retry_at = None
                self._save_attempt(parent)
                raise

            self._record_initiated(child)

        log_action(logger, "info", "Retry initiated", action="retry_payment",
                   resource="payment_attempt", attempt_id=child.id, contract_id=child.contract_id,
                   extra={"retry_count": child.retry_count, "parent": parent.id})
        self.publish_event(DomainEvent.PAYMENT_RETRY_INITIATED, "payment_attempt", child.id, {
            "parent_attempt_id": parent.id,
            "root_attempt_id": child.root_attempt_id,
            "retry_count": child.retry_count,
            "amount": str(child.amount.amount),
        })
        return child

    # Queries

    def get_attempt(self, attempt_id: str) -> PaymentAttempt:
        data = self.storage.load(self.attempts_table, attempt_id)
        if not data:
            raise EntityNotFoundError(f"Payment attempt {attempt_id} not found")
        return self._attempt_from_dict(data)

    def get_by_transaction_ref(self, transaction_ref: str) -> PaymentAttempt:
        matches = self.storage.find(self.attempts_table, {"transaction_ref": transaction_ref})
        if not matches:
            raise EntityNotFoundError(f"Payment attempt with reference {transaction_ref} not found")
        return self._attempt_from_dict(matches[0])

    def list_attempts(
        self,
        contract_id: Optional[str] = None,
        status: Optional[AttemptStatus] = None
    ) -> List[PaymentAttempt]:
        filters = {}
        if contract_id:
            filters["contract_id"] = contract_id
        if status:
            filters["status"] = status.value
        attempts = [self._attempt_from_dict(d) for d in self.storage.find(self.attempts_table, filters)]
        attempts.sort(key=lambda a: a.created_at)
        return attempts

    def list_failed(self, limit: int = 20, offset: int = 0) -> Tuple[List[PaymentAttempt], int]:
        """Latest failed attempt of each chain, newest failure first, paginated"""
        failed = [a for a in self.list_attempts(status=AttemptStatus.FAILED) if a.is_latest_in_chain]
        failed.sort(key=lambda a: a.failed_at or a.created_at, reverse=True)
        return failed[offset:offset + limit], len(failed)

    # Internals

    def _validate_targets(self, contract_id: str, installment_ids: Sequence[str], amount: Money) -> Contract:
        contract = self.ledger.get_contract(contract_id)
        if contract.status not in PAYABLE_STATES:
            raise InvalidStateError(f"Contract {contract_id} is {contract.status.value}, cannot take payments")
        if not installment_ids:
            raise ValueError("At least one installment is required")
        if len(set(installment_ids)) != len(installment_ids):
            raise ValueError("Installments must not repeat")
        if amount.currency != contract.currency:
            raise ValueError(f"Payment currency {amount.currency.code} does not match contract")
        if not amount.is_positive():
            raise ValueError("Payment amount must be positive")

        owed = self._remaining_on(contract, installment_ids)
        if amount > owed:
            raise AmountMismatchError(
                f"Amount {amount.to_string()} exceeds {owed.to_string()} remaining on the selected installments"
            )
        return contract

    @staticmethod
    def _remaining_on(contract: Contract, installment_ids: Sequence[str]) -> Money:
        return money_sum((contract.get_installment(i).remaining for i in installment_ids), contract.currency)

    def _usable_mandate(self, mandate_id: Optional[str], contract: Contract, now: datetime):
        if not mandate_id:
            raise MandateNotUsableError("No mandate on this attempt")
        mandate = self.mandates.ensure_usable(mandate_id, now)
        if mandate.customer_id != contract.customer_id:
            raise MandateNotUsableError(f"Mandate {mandate_id} belongs to another customer")
        return mandate

    def _new_attempt(
        self,
        contract: Contract,
        installment_ids: Sequence[str],
        amount: Money,
        channel: PaymentChannel,
        now: datetime,
        **details
    ) -> PaymentAttempt:
        return PaymentAttempt(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            contract_id=contract.id,
            customer_id=contract.customer_id,
            amount=amount,
            installment_ids=list(installment_ids),
            channel=channel,
            transaction_ref=f"TXN-{uuid.uuid4().hex[:16].upper()}",
            **details
        )

    def _record_initiated(self, attempt: PaymentAttempt) -> PaymentAttempt:
        self._save_attempt(attempt)
        log_action(logger, "info", "Payment initiated", action="initiate_payment",
                   resource="payment_attempt", attempt_id=attempt.id, contract_id=attempt.contract_id,
                   extra={"channel": attempt.channel.value, "amount": str(attempt.amount.amount)})
        self.publish_event(DomainEvent.PAYMENT_INITIATED, "payment_attempt", attempt.id, {
            "contract_id": attempt.contract_id,
            "channel": attempt.channel.value,
            "amount": str(attempt.amount.amount),
            "currency": attempt.amount.currency.code,
            "transaction_ref": attempt.transaction_ref,
        })
        return attempt

    def _resolve_success(self, attempt: PaymentAttempt, now: datetime) -> PaymentAttempt:
        contract = self.ledger.get_contract(attempt.contract_id)
        if attempt.transaction_ref not in contract.applied_references:
            left = attempt.amount
            allocations: List[Tuple[str, Money]] = []
            for installment_id in attempt.installment_ids:
                share = min(left, contract.get_installment(installment_id).remaining)
                if share.is_positive():
                    allocations.append((installment_id, share))
                    left = left - share
            if left.is_positive():
                raise AmountMismatchError(
                    f"Attempt {attempt.id} collected {left.to_string()} more than its installments owe"
                )
            self.ledger.apply_payments(attempt.contract_id, allocations, reference=attempt.transaction_ref, now=now)

        attempt.status = AttemptStatus.SUCCESS
        attempt.resolved_at = now
        attempt.updated_at = now
        attempt.next_retry_at = None
        self._update_history(attempt)
        self._save_attempt(attempt)

        log_action(logger, "info", "Payment succeeded", action="resolve_payment",
                   resource="payment_attempt", attempt_id=attempt.id, contract_id=attempt.contract_id)
        self.publish_event(DomainEvent.PAYMENT_SUCCEEDED, "payment_attempt", attempt.id, {
            "contract_id": attempt.contract_id,
            "amount": str(attempt.amount.amount),
            "retry_count": attempt.retry_count,
        })
        return attempt

    def _resolve_failure(self, attempt: PaymentAttempt, reason: str, now: datetime) -> PaymentAttempt:
        attempt.status = AttemptStatus.FAILED
        attempt.failure_reason = reason
        attempt.failed_at = now
        attempt.resolved_at = now
        attempt.updated_at = now
        self._update_history(attempt)

        decision = None
        if self.retry_scheduler is not None:
            decision = self.retry_scheduler.evaluate_failure(attempt, now)
        else:
            attempt.is_auto_retry_enabled = False
            attempt.next_retry_at = None
        self._save_attempt(attempt)

        log_action(logger, "warning", "Payment failed", action="resolve_payment",
                   resource="payment_attempt", attempt_id=attempt.id, contract_id=attempt.contract_id,
                   extra={"reason": reason, "retry_count": attempt.retry_count,
                          "next_retry_at": format_datetime(attempt.next_retry_at)})
        self.publish_event(DomainEvent.PAYMENT_FAILED, "payment_attempt", attempt.id, {
            "contract_id": attempt.contract_id,
            "reason": reason,
            "retry_count": attempt.retry_count,
        })
        if decision is not None:
            self.retry_scheduler.after_failure(attempt, decision)
        return attempt

    @staticmethod
    def _update_history(attempt: PaymentAttempt) -> None:
        for record in attempt.retries:
            if record.attempt_id == attempt.id:
                record.status = attempt.status
                record.failure_reason = attempt.failure_reason

    def _save_attempt(self, attempt: PaymentAttempt) -> None:
        expected = attempt.version
        attempt.version = expected + 1
        if not self.storage.compare_and_save(
            self.attempts_table, attempt.id, self._attempt_to_dict(attempt), expected
        ):
            attempt.version = expected
            raise ConcurrentModificationError(f"Payment attempt {attempt.id} was modified concurrently")

    def _attempt_to_dict(self, attempt: PaymentAttempt) -> Dict:
        result = attempt.base_dict()
        result.update({
            'contract_id': attempt.contract_id,
            'customer_id': attempt.customer_id,
            'amount_amount': str(attempt.amount.amount),
            'amount_currency': attempt.amount.currency.code,
            'installment_ids': list(attempt.installment_ids),
            'channel': attempt.channel.value,
            'transaction_ref': attempt.transaction_ref,
            'status': attempt.status.value,
            'external_ref': attempt.external_ref,
            'msisdn': attempt.msisdn,
            'network': attempt.network,
            'mandate_id': attempt.mandate_id,
            'failure_reason': attempt.failure_reason,
            'retry_count': attempt.retry_count,
            'max_retries': attempt.max_retries,
            'next_retry_at': format_datetime(attempt.next_retry_at),
            'last_retry_at': format_datetime(attempt.last_retry_at),
            'is_auto_retry_enabled': attempt.is_auto_retry_enabled,
            'failed_at': format_datetime(attempt.failed_at),
            'resolved_at': format_datetime(attempt.resolved_at),
            'parent_attempt_id': attempt.parent_attempt_id,
            'root_attempt_id': attempt.root_attempt_id,
            'superseded_by': attempt.superseded_by,
            'retries': [record.to_dict() for record in attempt.retries],
            'version': attempt.version,
        })
        return result

    def _attempt_from_dict(self, data: Dict) -> PaymentAttempt:
        return PaymentAttempt(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            contract_id=data['contract_id'],
            customer_id=data['customer_id'],
            amount=Money(data['amount_amount'], Currency[data['amount_currency']]),
            installment_ids=list(data['installment_ids']),
            channel=PaymentChannel(data['channel']),
            transaction_ref=data['transaction_ref'],
            status=AttemptStatus(data['status']),
            external_ref=data.get('external_ref'),
            msisdn=data.get('msisdn'),
            network=data.get('network'),
            mandate_id=data.get('mandate_id'),
            failure_reason=data.get('failure_reason'),
            retry_count=data.get('retry_count', 0),
            max_retries=data.get('max_retries', 0),
            next_retry_at=parse_datetime(data.get('next_retry_at')),
            last_retry_at=parse_datetime(data.get('last_retry_at')),
            is_auto_retry_enabled=data.get('is_auto_retry_enabled', False),
            failed_at=parse_datetime(data.get('failed_at')),
            resolved_at=parse_datetime(data.get('resolved_at')),
            parent_attempt_id=data.get('parent_attempt_id'),
            root_attempt_id=data.get('root_attempt_id'),
            superseded_by=data.get('superseded_by'),
            retries=[RetryRecord.from_dict(r) for r in data.get('retries', [])],
            version=data.get('version', 0),
        )
