"""
Amortization Calculator

Pure functions that derive an installment schedule from contract terms and
recompute it after an edit. No interest: the finance amount is split evenly,
rounded down to the minor unit, and the last installment absorbs the residue
so the schedule always sums to the finance amount exactly.
"""

from dataclasses import dataclass
from datetime import date, timedelta
from enum import Enum
from typing import List, Protocol, Sequence
import calendar

from .currency import Money, money_sum
from .errors import InvalidStateError, PaymentsExistError


class PaymentFrequency(Enum):
    """Installment frequency"""
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


@dataclass(frozen=True)
class ScheduleEntry:
    """One row of a generated schedule"""
    sequence_number: int
    due_date: date
    amount: Money


class ScheduledAmount(Protocol):
    """Anything with a scheduled amount and a paid amount (e.g. Installment)"""
    amount: Money
    paid_amount: Money


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of a shorter month"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(start.day, last_day))


def due_date_for(start_date: date, index: int, frequency: PaymentFrequency) -> date:
    """Due date of the installment at 0-based `index`"""
    if frequency == PaymentFrequency.DAILY:
        return start_date + timedelta(days=index)
    if frequency == PaymentFrequency.WEEKLY:
        return start_date + timedelta(weeks=index)
    # Always offset from the start so a clamped February doesn't shift later months
    return add_months(start_date, index)


def split_evenly(total: Money, parts: int) -> List[Money]:
    """Equal floor shares with the remainder on the last part"""
    if parts < 1:
        raise ValueError("Cannot split into fewer than one part")
    share = total.floor_divide(parts)
    amounts = [share] * (parts - 1)
    amounts.append(total - share * (parts - 1))
    return amounts


def compute_schedule(
    finance_amount: Money,
    installment_count: int,
    start_date: date,
    frequency: PaymentFrequency
) -> List[ScheduleEntry]:
    """
    Generate the installment schedule for a contract.

    Example:
        GHS 1000.00 over 3 monthly installments from 2024-01-01 ->
        333.33 (2024-01-01), 333.33 (2024-02-01), 333.34 (2024-03-01)
    """
    if installment_count < 1:
        raise ValueError("installment_count must be at least 1")
    if finance_amount.is_negative():
        raise ValueError("finance_amount cannot be negative")

    amounts = split_evenly(finance_amount, installment_count)
    return [
        ScheduleEntry(
            sequence_number=i + 1,
            due_date=due_date_for(start_date, i, frequency),
            amount=amounts[i]
        )
        for i in range(installment_count)
    ]


def recompute(
    installments: Sequence[ScheduledAmount],
    finance_amount: Money,
    from_index: int,
    new_amount: Money
) -> List[Money]:
    """
    Recompute amounts after installment `from_index` (0-based) is set to `new_amount`.

    Installments before the index and any installment with a paid amount keep
    their amounts. What is left of the finance amount is spread evenly over
    the untouched (zero-paid) installments after the index, the last of them
    absorbing the rounding remainder.

    Returns:
        New amounts for installments[from_index:], in order
    """
    if not 0 <= from_index < len(installments):
        raise InvalidStateError(f"Installment index {from_index} out of range")

    target = installments[from_index]
    if target.paid_amount >= target.amount and target.paid_amount.is_positive():
        raise InvalidStateError("Cannot recompute from an installment that is already paid")
    if new_amount.is_negative():
        raise InvalidStateError("Installment amount cannot be negative")

    currency = finance_amount.currency
    tail = installments[from_index + 1:]
    fixed = money_sum((inst.amount for inst in installments[:from_index]), currency)
    fixed = fixed + money_sum((inst.amount for inst in tail if inst.paid_amount.is_positive()), currency)

    remaining = finance_amount - fixed - new_amount
    if remaining.is_negative():
        raise InvalidStateError(
            f"New amount {new_amount.to_string()} exceeds the distributable balance "
            f"{(finance_amount - fixed).to_string()}"
        )

    open_positions = [i for i, inst in enumerate(tail) if not inst.paid_amount.is_positive()]
    if not open_positions:
        if not remaining.is_zero():
            raise InvalidStateError(
                f"No later unpaid installment can absorb {remaining.to_string()}"
            )
        return [new_amount] + [inst.amount for inst in tail]

    shares = iter(split_evenly(remaining, len(open_positions)))
    result = [new_amount]
    for i, inst in enumerate(tail):
        result.append(next(shares) if i in open_positions else inst.amount)
    return result


def reschedule(
    installments: Sequence[ScheduledAmount],
    finance_amount: Money,
    installment_count: int,
    new_start_date: date,
    frequency: PaymentFrequency
) -> List[ScheduleEntry]:
    """Regenerate the full schedule from a new start date; blocked once anything is paid"""
    if any(inst.paid_amount.is_positive() for inst in installments):
        raise PaymentsExistError("Cannot reschedule a contract with payments applied")
    return compute_schedule(finance_amount, installment_count, new_start_date, frequency)
