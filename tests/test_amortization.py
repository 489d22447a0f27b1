"""
Test suite for the amortization calculator

Schedule generation, due-date arithmetic, recompute after an amendment
and the reschedule guard. Amounts must always sum to the finance amount.
"""

import pytest
from decimal import Decimal
from dataclasses import dataclass
from datetime import date

from hire_purchase.currency import Money, Currency, money_sum
from hire_purchase.errors import InvalidStateError, PaymentsExistError
from hire_purchase.amortization import (
    PaymentFrequency, compute_schedule, recompute, reschedule,
    add_months, due_date_for, split_evenly
)


def ghs(value: str) -> Money:
    return Money(Decimal(value), Currency.GHS)


@dataclass
class Row:
    amount: Money
    paid_amount: Money


def rows(*amounts, paid=None):
    paid = paid or {}
    return [Row(ghs(a), ghs(paid.get(i, "0"))) for i, a in enumerate(amounts)]


class TestComputeSchedule:
    """Test schedule generation"""

    def test_three_monthly_installments(self):
        """1000.00 over 3 months leaves the residue on the last installment"""
        schedule = compute_schedule(ghs("1000.00"), 3, date(2024, 1, 1), PaymentFrequency.MONTHLY)

        assert [e.amount for e in schedule] == [ghs("333.33"), ghs("333.33"), ghs("333.34")]
        assert [e.due_date for e in schedule] == [date(2024, 1, 1), date(2024, 2, 1), date(2024, 3, 1)]
        assert [e.sequence_number for e in schedule] == [1, 2, 3]

    @pytest.mark.parametrize("frequency", list(PaymentFrequency))
    @pytest.mark.parametrize("count", [1, 2, 3, 7, 12, 13, 52])
    def test_amount_conservation(self, frequency, count):
        """Sum of installments equals the finance amount exactly"""
        finance = ghs("1234.57")
        schedule = compute_schedule(finance, count, date(2024, 1, 31), frequency)

        assert len(schedule) == count
        assert money_sum((e.amount for e in schedule), Currency.GHS) == finance

    def test_zero_decimal_currency(self):
        """XOF has no minor unit"""
        finance = Money(Decimal("1000"), Currency.XOF)
        schedule = compute_schedule(finance, 3, date(2024, 1, 1), PaymentFrequency.WEEKLY)

        assert [e.amount.amount for e in schedule] == [Decimal("333"), Decimal("333"), Decimal("334")]

    def test_daily_and_weekly_due_dates(self):
        daily = compute_schedule(ghs("30.00"), 3, date(2024, 2, 28), PaymentFrequency.DAILY)
        weekly = compute_schedule(ghs("30.00"), 3, date(2024, 2, 28), PaymentFrequency.WEEKLY)

        assert [e.due_date for e in daily] == [date(2024, 2, 28), date(2024, 2, 29), date(2024, 3, 1)]
        assert [e.due_date for e in weekly] == [date(2024, 2, 28), date(2024, 3, 6), date(2024, 3, 13)]

    def test_zero_finance_amount(self):
        schedule = compute_schedule(ghs("0"), 2, date(2024, 1, 1), PaymentFrequency.MONTHLY)
        assert all(e.amount.is_zero() for e in schedule)

    def test_invalid_count(self):
        with pytest.raises(ValueError):
            compute_schedule(ghs("100.00"), 0, date(2024, 1, 1), PaymentFrequency.MONTHLY)

    def test_negative_finance_amount(self):
        with pytest.raises(ValueError):
            compute_schedule(ghs("-1.00"), 2, date(2024, 1, 1), PaymentFrequency.MONTHLY)


class TestDueDates:
    """Test calendar arithmetic"""

    def test_end_of_month_clamping(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 1, 31), 3) == date(2024, 4, 30)

    def test_no_drift_after_clamped_month(self):
        """Month 3 is still the 31st even though month 2 was clamped"""
        assert due_date_for(date(2024, 1, 31), 1, PaymentFrequency.MONTHLY) == date(2024, 2, 29)
        assert due_date_for(date(2024, 1, 31), 2, PaymentFrequency.MONTHLY) == date(2024, 3, 31)

    def test_year_rollover(self):
        assert add_months(date(2024, 11, 15), 3) == date(2025, 2, 15)

    def test_split_evenly(self):
        assert split_evenly(ghs("0.05"), 3) == [ghs("0.01"), ghs("0.01"), ghs("0.03")]


class TestRecompute:
    """Test redistribution after an amended amount"""

    def test_example_scenario(self):
        """First installment paid, second set to 200.00, third absorbs the rest"""
        installments = rows("333.33", "333.33", "333.34", paid={0: "333.33"})

        amounts = recompute(installments, ghs("1000.00"), 1, ghs("200.00"))

        assert amounts == [ghs("200.00"), ghs("466.67")]

    def test_paid_installments_after_target_stay_fixed(self):
        installments = rows("250.00", "250.00", "250.00", "250.00", paid={2: "10.00"})

        amounts = recompute(installments, ghs("1000.00"), 0, ghs("100.00"))

        assert amounts[2] == ghs("250.00")
        assert amounts == [ghs("100.00"), ghs("325.00"), ghs("250.00"), ghs("325.00")]

    def test_remainder_goes_to_last_open_installment(self):
        installments = rows("100.00", "100.00", "100.00", "100.00")

        amounts = recompute(installments, ghs("400.00"), 0, ghs("100.01"))

        assert amounts == [ghs("100.01"), ghs("99.99"), ghs("99.99"), ghs("100.01")]
        assert money_sum(amounts, Currency.GHS) == ghs("400.00")

    def test_last_installment_must_match_exactly(self):
        installments = rows("500.00", "500.00", paid={0: "500.00"})

        assert recompute(installments, ghs("1000.00"), 1, ghs("500.00")) == [ghs("500.00")]
        with pytest.raises(InvalidStateError):
            recompute(installments, ghs("1000.00"), 1, ghs("400.00"))

    def test_new_amount_exceeding_balance(self):
        installments = rows("500.00", "500.00")
        with pytest.raises(InvalidStateError):
            recompute(installments, ghs("1000.00"), 0, ghs("1000.01"))

    def test_negative_amount(self):
        with pytest.raises(InvalidStateError):
            recompute(rows("500.00", "500.00"), ghs("1000.00"), 0, ghs("-1.00"))

    def test_paid_target(self):
        installments = rows("500.00", "500.00", paid={0: "500.00"})
        with pytest.raises(InvalidStateError):
            recompute(installments, ghs("1000.00"), 0, ghs("400.00"))

    def test_index_out_of_range(self):
        with pytest.raises(InvalidStateError):
            recompute(rows("500.00", "500.00"), ghs("1000.00"), 2, ghs("1.00"))


class TestReschedule:
    """Test the reschedule guard"""

    def test_reschedule_without_payments(self):
        schedule = reschedule(rows("500.00", "500.00"), ghs("1000.00"), 2,
                              date(2024, 6, 1), PaymentFrequency.MONTHLY)

        assert [e.due_date for e in schedule] == [date(2024, 6, 1), date(2024, 7, 1)]

    def test_reschedule_with_partial_payment(self):
        with pytest.raises(PaymentsExistError):
            reschedule(rows("500.00", "500.00", paid={1: "0.01"}), ghs("1000.00"), 2,
                       date(2024, 6, 1), PaymentFrequency.MONTHLY)
