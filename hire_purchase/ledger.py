"""
Installment Ledger Module

Owns hire-purchase contracts and their installments: schedule creation,
payment application, amendments, rescheduling and derived statuses.
Every mutation of a contract's installment set runs under the contract's
lock and is persisted with a version check.
"""

from decimal import Decimal
from datetime import datetime, timezone, date, timedelta
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple, Callable, TypeVar
from enum import Enum
import logging
import uuid

from .currency import Money, Currency, money_sum
from .storage import StorageInterface, StorageRecord, LockRegistry, parse_datetime, format_datetime
from .events import DomainEvent, EventDispatcher, EventPublisherMixin
from .errors import (
    EntityNotFoundError, InvalidStateError, AlreadyPaidError,
    AmountMismatchError, ConcurrentModificationError
)
from . import amortization
from .amortization import PaymentFrequency, ScheduleEntry
from .logging_config import log_action

logger = logging.getLogger("hire_purchase.ledger")

T = TypeVar("T")


class ContractStatus(Enum):
    """Contract lifecycle states"""
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    DEFAULTED = "DEFAULTED"
    CANCELLED = "CANCELLED"


class InstallmentStatus(Enum):
    """Derived installment status, never stored"""
    PENDING = "PENDING"
    PARTIAL = "PARTIAL"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class AccountStatus(Enum):
    """Customer standing aggregated over contracts"""
    GOOD_STANDING = "GOOD_STANDING"
    OVERDUE = "OVERDUE"
    DEFAULTED = "DEFAULTED"
    COMPLETED = "COMPLETED"


PAYABLE_STATES = (ContractStatus.ACTIVE, ContractStatus.DEFAULTED)


@dataclass
class Installment:
    """Single scheduled installment, embedded in its contract"""
    id: str
    sequence_number: int
    due_date: date
    amount: Money
    paid_amount: Money
    paid_at: Optional[datetime] = None

    @property
    def remaining(self) -> Money:
        return self.amount - self.paid_amount

    @property
    def is_paid(self) -> bool:
        return self.paid_amount >= self.amount

    def days_overdue(self, today: date, grace_period_days: int = 0) -> int:
        """Days past the due date plus grace; 0 when not overdue or paid"""
        if self.is_paid:
            return 0
        return max(0, (today - (self.due_date + timedelta(days=grace_period_days))).days)

    def status(self, today: date, grace_period_days: int = 0) -> InstallmentStatus:
        if self.is_paid:
            return InstallmentStatus.PAID
        if self.days_overdue(today, grace_period_days) > 0:
            return InstallmentStatus.OVERDUE
        if self.paid_amount.is_positive():
            return InstallmentStatus.PARTIAL
        return InstallmentStatus.PENDING


@dataclass
class Contract(StorageRecord):
    """Hire-purchase agreement with its ordered installments"""
    contract_number: str
    customer_id: str
    total_price: Money
    deposit_amount: Money
    payment_frequency: PaymentFrequency
    total_installments: int
    start_date: date
    end_date: date
    grace_period_days: int = 0
    penalty_percentage: Decimal = Decimal('0')
    status: ContractStatus = ContractStatus.ACTIVE
    installments: List[Installment] = field(default_factory=list)
    mandate_id: Optional[str] = None
    applied_references: List[str] = field(default_factory=list)
    version: int = 0

    @property
    def currency(self) -> Currency:
        return self.total_price.currency

    @property
    def finance_amount(self) -> Money:
        return self.total_price - self.deposit_amount

    @property
    def installments_paid(self) -> Money:
        return money_sum((i.paid_amount for i in self.installments), self.currency)

    @property
    def total_paid(self) -> Money:
        """Deposit plus everything applied to installments"""
        return self.deposit_amount + self.installments_paid

    @property
    def outstanding_balance(self) -> Money:
        return self.total_price - self.total_paid

    @property
    def has_payments(self) -> bool:
        return any(i.paid_amount.is_positive() for i in self.installments)

    def get_installment(self, installment_id: str) -> Installment:
        for installment in self.installments:
            if installment.id == installment_id:
                return installment
        raise EntityNotFoundError(f"Installment {installment_id} not found on contract {self.id}")

    def index_of(self, installment_id: str) -> int:
        for index, installment in enumerate(self.installments):
            if installment.id == installment_id:
                return index
        raise EntityNotFoundError(f"Installment {installment_id} not found on contract {self.id}")

    def installment_status(self, installment: Installment, today: Optional[date] = None) -> InstallmentStatus:
        return installment.status(today or date.today(), self.grace_period_days)


def contract_account_status(contract: Contract, today: date, default_threshold_days: int) -> AccountStatus:
    """Standing of a single contract"""
    if contract.status == ContractStatus.COMPLETED:
        return AccountStatus.COMPLETED
    if contract.status == ContractStatus.DEFAULTED:
        return AccountStatus.DEFAULTED

    worst_days = max(
        (i.days_overdue(today, contract.grace_period_days) for i in contract.installments),
        default=0
    )
    if worst_days > default_threshold_days:
        return AccountStatus.DEFAULTED
    if worst_days > 0:
        return AccountStatus.OVERDUE
    return AccountStatus.GOOD_STANDING


class InstallmentLedger(EventPublisherMixin):
    """
    Manages contracts and their installment schedules
    """

    def __init__(
        self,
        storage: StorageInterface,
        locks: Optional[LockRegistry] = None,
        default_threshold_days: int = 30,
        event_dispatcher: Optional[EventDispatcher] = None
    ):
        self.storage = storage
        self.locks = locks or LockRegistry()
        self.default_threshold_days = default_threshold_days
        self.set_event_dispatcher(event_dispatcher)

        self.contracts_table = "contracts"

    # Contract lifecycle

    def create_contract(
        self,
        customer_id: str,
        total_price: Money,
        deposit_amount: Money,
        payment_frequency: PaymentFrequency,
        installment_count: int,
        start_date: date,
        grace_period_days: int = 0,
        penalty_percentage: Decimal = Decimal('0'),
        mandate_id: Optional[str] = None,
        contract_number: Optional[str] = None
    ) -> Contract:
        """
        Create a contract and generate its installment schedule

        Args:
            customer_id: Buyer
            total_price: Full price of the item
            deposit_amount: Paid up front; the rest is financed
            payment_frequency: DAILY, WEEKLY or MONTHLY
            installment_count: Number of installments
            start_date: Due date of the first installment
            grace_period_days: Days after a due date before it counts as overdue
            penalty_percentage: Late penalty rate kept on the contract (0-100)
            mandate_id: Direct-debit mandate to charge, if any
            contract_number: Human-facing number (generated if omitted)

        Returns:
            Created Contract
        """
        if deposit_amount.currency != total_price.currency:
            raise ValueError("Deposit currency must match total price currency")
        if not total_price.is_positive():
            raise ValueError("Total price must be positive")
        if deposit_amount.is_negative() or deposit_amount > total_price:
            raise ValueError("Deposit must be between zero and the total price")
        if grace_period_days < 0:
            raise ValueError("Grace period cannot be negative")
        if not Decimal('0') <= penalty_percentage <= Decimal('100'):
            raise ValueError("Penalty percentage must be between 0 and 100")

        now = datetime.now(timezone.utc)
        contract_id = str(uuid.uuid4())
        schedule = amortization.compute_schedule(
            total_price - deposit_amount, installment_count, start_date, payment_frequency
        )

        contract = Contract(
            id=contract_id,
            created_at=now,
            updated_at=now,
            contract_number=contract_number or f"HP-{now:%Y%m%d}-{contract_id[:6].upper()}",
            customer_id=customer_id,
            total_price=total_price,
            deposit_amount=deposit_amount,
            payment_frequency=payment_frequency,
            total_installments=installment_count,
            start_date=start_date,
            end_date=schedule[-1].due_date,
            grace_period_days=grace_period_days,
            penalty_percentage=penalty_percentage,
            installments=self._build_installments(schedule, total_price.currency),
            mandate_id=mandate_id
        )
        if not contract.outstanding_balance.is_positive():
            contract.status = ContractStatus.COMPLETED
        self._save_contract(contract)

        log_action(logger, "info", "Contract created", action="create_contract",
                   resource="contract", contract_id=contract.id,
                   extra={"finance_amount": str(contract.finance_amount.amount),
                          "installments": installment_count})
        self.publish_event(DomainEvent.CONTRACT_CREATED, "contract", contract.id, {
            "customer_id": customer_id,
            "finance_amount": str(contract.finance_amount.amount),
            "currency": contract.currency.code,
            "installments": installment_count,
        })
        if contract.status == ContractStatus.COMPLETED:
            self.publish_event(DomainEvent.CONTRACT_COMPLETED, "contract", contract.id, {
                "total_paid": str(contract.total_paid.amount),
            })
        return contract

    def get_contract(self, contract_id: str) -> Contract:
        data = self.storage.load(self.contracts_table, contract_id)
        if not data:
            raise EntityNotFoundError(f"Contract {contract_id} not found")
        return self._contract_from_dict(data)

    def list_contracts(
        self,
        customer_id: Optional[str] = None,
        status: Optional[ContractStatus] = None
    ) -> List[Contract]:
        filters = {}
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status.value
        contracts = [self._contract_from_dict(d) for d in self.storage.find(self.contracts_table, filters)]
        contracts.sort(key=lambda c: c.created_at)
        return contracts

    def cancel_contract(self, contract_id: str) -> Contract:
        def cancel(contract: Contract) -> Contract:
            if contract.status not in PAYABLE_STATES:
                raise InvalidStateError(f"Contract {contract_id} is {contract.status.value}, cannot cancel")
            contract.status = ContractStatus.CANCELLED
            return contract

        contract = self._mutate(contract_id, cancel)
        self.publish_event(DomainEvent.CONTRACT_CANCELLED, "contract", contract_id, {})
        return contract

    def attach_mandate(self, contract_id: str, mandate_id: Optional[str]) -> Contract:
        """Point the contract at a direct-debit mandate (weak reference)"""
        def attach(contract: Contract) -> Contract:
            contract.mandate_id = mandate_id
            return contract

        return self._mutate(contract_id, attach)

    # Payments

    def apply_payment(
        self,
        contract_id: str,
        installment_id: str,
        amount: Money,
        reference: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> Installment:
        """Apply a payment to one installment; overpayment is rejected, never capped"""
        self.apply_payments(contract_id, [(installment_id, amount)], reference=reference, now=now)
        return self.get_contract(contract_id).get_installment(installment_id)

    def apply_payments(
        self,
        contract_id: str,
        allocations: Sequence[Tuple[str, Money]],
        reference: Optional[str] = None,
        now: Optional[datetime] = None
    ) -> List[Installment]:
        """
        Apply a batch of (installment_id, amount) payments to one contract.

        The whole batch is validated before anything changes and is persisted
        in a single versioned write, so a failing item leaves the contract
        untouched. A reference that was already applied makes the call a no-op.

        Returns:
            The updated installments, or an empty list for a repeated reference
        """
        if not allocations:
            raise ValueError("No payments to apply")
        now = now or datetime.now(timezone.utc)

        completed = False
        applied: List[Installment] = []

        def apply(contract: Contract) -> Optional[Contract]:
            nonlocal completed
            if reference and reference in contract.applied_references:
                logger.info("Payment reference %s already applied to contract %s", reference, contract_id)
                return None
            if contract.status not in PAYABLE_STATES:
                raise InvalidStateError(f"Contract {contract_id} is {contract.status.value}, cannot accept payments")

            pending: Dict[str, Money] = {}
            for installment_id, amount in allocations:
                if amount.currency != contract.currency:
                    raise ValueError(f"Payment currency {amount.currency.code} does not match contract")
                if not amount.is_positive():
                    raise ValueError("Payment amount must be positive")
                installment = contract.get_installment(installment_id)
                total = pending.get(installment_id, Money.zero(contract.currency)) + amount
                if total > installment.remaining:
                    raise AmountMismatchError(
                        f"Payment {total.to_string()} exceeds remaining "
                        f"{installment.remaining.to_string()} on installment {installment.sequence_number}"
                    )
                pending[installment_id] = total

            for installment_id, total in pending.items():
                installment = contract.get_installment(installment_id)
                installment.paid_amount = installment.paid_amount + total
                if installment.is_paid:
                    installment.paid_at = now
                applied.append(installment)

            if reference:
                contract.applied_references.append(reference)
            if not contract.outstanding_balance.is_positive():
                contract.status = ContractStatus.COMPLETED
                completed = True
            return contract

        contract = self._mutate(contract_id, apply)
        if contract is None:
            return []

        for installment in applied:
            log_action(logger, "info", "Payment applied", action="apply_payment",
                       resource="installment", contract_id=contract_id,
                       extra={"installment": installment.sequence_number,
                              "paid_amount": str(installment.paid_amount.amount)})
            self.publish_event(DomainEvent.INSTALLMENT_PAYMENT_APPLIED, "installment", installment.id, {
                "contract_id": contract_id,
                "sequence_number": installment.sequence_number,
                "paid_amount": str(installment.paid_amount.amount),
                "reference": reference,
            })
        if completed:
            self.publish_event(DomainEvent.CONTRACT_COMPLETED, "contract", contract_id, {
                "total_paid": str(contract.total_paid.amount),
            })
        return applied

    # Schedule edits

    def amend_installment(
        self,
        contract_id: str,
        installment_id: str,
        new_amount: Optional[Money] = None,
        new_due_date: Optional[date] = None
    ) -> Contract:
        """
        Change an unpaid installment's amount and/or due date.

        A new amount triggers a recompute of every later unpaid installment so
        the schedule still sums to the finance amount.
        """
        if new_amount is None and new_due_date is None:
            raise ValueError("Nothing to amend")

        def amend(contract: Contract) -> Contract:
            if contract.status not in PAYABLE_STATES:
                raise InvalidStateError(f"Contract {contract_id} is {contract.status.value}, cannot amend")
            index = contract.index_of(installment_id)
            installment = contract.installments[index]
            if installment.paid_amount.is_positive():
                raise AlreadyPaidError(f"Installment {installment.sequence_number} already has payments")

            if new_due_date is not None:
                previous = contract.installments[index - 1] if index > 0 else None
                following = contract.installments[index + 1] if index + 1 < len(contract.installments) else None
                if (previous and new_due_date < previous.due_date) or (following and new_due_date > following.due_date):
                    raise InvalidStateError("New due date would break due-date order")
                installment.due_date = new_due_date
                contract.end_date = contract.installments[-1].due_date

            if new_amount is not None:
                if new_amount.currency != contract.currency:
                    raise ValueError("Amount currency does not match contract")
                amounts = amortization.recompute(contract.installments, contract.finance_amount, index, new_amount)
                for inst, amount in zip(contract.installments[index:], amounts):
                    inst.amount = amount
            return contract

        contract = self._mutate(contract_id, amend)
        self.publish_event(DomainEvent.INSTALLMENT_AMENDED, "installment", installment_id, {
            "contract_id": contract_id,
            "new_amount": str(new_amount.amount) if new_amount is not None else None,
            "new_due_date": new_due_date.isoformat() if new_due_date else None,
        })
        return contract

    def reschedule(self, contract_id: str, new_start_date: date) -> Contract:
        """Regenerate the whole schedule from a new start date (no payments allowed)"""
        def regenerate(contract: Contract) -> Contract:
            if contract.status != ContractStatus.ACTIVE:
                raise InvalidStateError(f"Contract {contract_id} is {contract.status.value}, cannot reschedule")
            schedule = amortization.reschedule(
                contract.installments, contract.finance_amount, contract.total_installments,
                new_start_date, contract.payment_frequency
            )
            contract.installments = self._build_installments(schedule, contract.currency)
            contract.start_date = new_start_date
            contract.end_date = schedule[-1].due_date
            return contract

        contract = self._mutate(contract_id, regenerate)
        self.publish_event(DomainEvent.CONTRACT_RESCHEDULED, "contract", contract_id, {
            "start_date": new_start_date.isoformat(),
            "end_date": contract.end_date.isoformat(),
        })
        return contract

    # Derived reads

    def account_status(self, customer_id: str, today: Optional[date] = None) -> AccountStatus:
        """Aggregate standing across a customer's contracts (cancelled ones ignored)"""
        today = today or date.today()
        statuses = [
            contract_account_status(c, today, self.default_threshold_days)
            for c in self.list_contracts(customer_id=customer_id)
            if c.status != ContractStatus.CANCELLED
        ]
        if not statuses:
            return AccountStatus.GOOD_STANDING
        if all(s == AccountStatus.COMPLETED for s in statuses):
            return AccountStatus.COMPLETED
        for worst in (AccountStatus.DEFAULTED, AccountStatus.OVERDUE):
            if worst in statuses:
                return worst
        return AccountStatus.GOOD_STANDING

    def overdue_installments(self, contract_id: str, today: Optional[date] = None) -> List[Installment]:
        contract = self.get_contract(contract_id)
        today = today or date.today()
        return [
            i for i in contract.installments
            if contract.installment_status(i, today) == InstallmentStatus.OVERDUE
        ]

    def mark_defaults(self, today: Optional[date] = None) -> Dict[str, int]:
        """Move ACTIVE contracts overdue beyond the default threshold to DEFAULTED"""
        today = today or date.today()
        results = {"contracts_checked": 0, "contracts_defaulted": 0}

        for contract in self.list_contracts(status=ContractStatus.ACTIVE):
            results["contracts_checked"] += 1
            if contract_account_status(contract, today, self.default_threshold_days) != AccountStatus.DEFAULTED:
                continue

            def default(current: Contract) -> Optional[Contract]:
                if current.status != ContractStatus.ACTIVE:
                    return None
                current.status = ContractStatus.DEFAULTED
                return current

            try:
                if self._mutate(contract.id, default) is not None:
                    results["contracts_defaulted"] += 1
                    self.publish_event(DomainEvent.CONTRACT_DEFAULTED, "contract", contract.id, {
                        "outstanding_balance": str(contract.outstanding_balance.amount),
                    })
            except ConcurrentModificationError:
                logger.warning("Contract %s changed during default sweep, skipped", contract.id)

        return results

    # Persistence helpers

    def _mutate(self, contract_id: str, change: Callable[[Contract], Optional[T]]) -> Optional[T]:
        """Load, change and save a contract under its lock; None from `change` skips the save"""
        with self.locks.hold(f"contract:{contract_id}"):
            contract = self.get_contract(contract_id)
            result = change(contract)
            if result is None:
                return None
            contract.updated_at = datetime.now(timezone.utc)
            self._save_contract(contract)
            return result

    def _save_contract(self, contract: Contract) -> None:
        expected = contract.version
        contract.version = expected + 1
        if not self.storage.compare_and_save(
            self.contracts_table, contract.id, self._contract_to_dict(contract), expected
        ):
            contract.version = expected
            raise ConcurrentModificationError(f"Contract {contract.id} was modified concurrently")

    @staticmethod
    def _build_installments(schedule: Sequence[ScheduleEntry], currency: Currency) -> List[Installment]:
        return [
            Installment(
                id=str(uuid.uuid4()),
                sequence_number=entry.sequence_number,
                due_date=entry.due_date,
                amount=entry.amount,
                paid_amount=Money.zero(currency)
            )
            for entry in schedule
        ]

    def _contract_to_dict(self, contract: Contract) -> Dict:
        result = contract.base_dict()
        result.update({
            'contract_number': contract.contract_number,
            'customer_id': contract.customer_id,
            'currency': contract.currency.code,
            'total_price_amount': str(contract.total_price.amount),
            'deposit_amount': str(contract.deposit_amount.amount),
            'payment_frequency': contract.payment_frequency.value,
            'total_installments': contract.total_installments,
            'start_date': contract.start_date.isoformat(),
            'end_date': contract.end_date.isoformat(),
            'grace_period_days': contract.grace_period_days,
            'penalty_percentage': str(contract.penalty_percentage),
            'status': contract.status.value,
            'mandate_id': contract.mandate_id,
            'applied_references': list(contract.applied_references),
            'version': contract.version,
            'installments': [
                {
                    'id': i.id,
                    'sequence_number': i.sequence_number,
                    'due_date': i.due_date.isoformat(),
                    'amount': str(i.amount.amount),
                    'paid_amount': str(i.paid_amount.amount),
                    'paid_at': format_datetime(i.paid_at),
                }
                for i in contract.installments
            ],
        })
        return result

    def _contract_from_dict(self, data: Dict) -> Contract:
        currency = Currency[data['currency']]

        def money(value: str) -> Money:
            return Money(Decimal(value), currency)

        return Contract(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            contract_number=data['contract_number'],
            customer_id=data['customer_id'],
            total_price=money(data['total_price_amount']),
            deposit_amount=money(data['deposit_amount']),
            payment_frequency=PaymentFrequency(data['payment_frequency']),
            total_installments=data['total_installments'],
            start_date=date.fromisoformat(data['start_date']),
            end_date=date.fromisoformat(data['end_date']),
            grace_period_days=data['grace_period_days'],
            penalty_percentage=Decimal(data['penalty_percentage']),
            status=ContractStatus(data['status']),
            installments=[
                Installment(
                    id=i['id'],
                    sequence_number=i['sequence_number'],
                    due_date=date.fromisoformat(i['due_date']),
                    amount=money(i['amount']),
                    paid_amount=money(i['paid_amount']),
                    paid_at=parse_datetime(i.get('paid_at')),
                )
                for i in data['installments']
            ],
            mandate_id=data.get('mandate_id'),
            applied_references=list(data.get('applied_references', [])),
            version=data.get('version', 0),
        )
