"""
Currency and Money Module

ISO 4217 currency codes with their minor-unit precision and an immutable
Money type. Monetary values NEVER use float.
"""

from decimal import Decimal, ROUND_HALF_UP, ROUND_DOWN, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterable

getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    GHS = ("GHS", 2)  # Ghana Cedi
    NGN = ("NGN", 2)  # Nigerian Naira
    KES = ("KES", 2)  # Kenyan Shilling
    XOF = ("XOF", 0)  # West African CFA franc
    USD = ("USD", 2)  # US Dollar

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @property
    def unit(self) -> Decimal:
        """Smallest currency unit, e.g. 0.01 for GHS"""
        return Decimal('0.1') ** self.precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    Amounts are rounded half-up to the currency's minor unit on creation.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        rounded = self.amount.quantize(self.currency.unit, rounding=ROUND_HALF_UP)
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    def _check_currency(self, other: 'Money', verb: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {verb} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier) -> 'Money':
        if not isinstance(multiplier, Decimal):
            multiplier = Decimal(str(multiplier))
        return Money(self.amount * multiplier, self.currency)

    def __neg__(self) -> 'Money':
        return Money(-self.amount, self.currency)

    def __eq__(self, other) -> bool:
        if not isinstance(other, Money):
            return False
        return self.amount == other.amount and self.currency == other.currency

    def __hash__(self) -> int:
        return hash((self.amount, self.currency.code))

    def __lt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount < other.amount

    def __le__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount <= other.amount

    def __gt__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount > other.amount

    def __ge__(self, other: 'Money') -> bool:
        self._check_currency(other, "compare")
        return self.amount >= other.amount

    def floor_divide(self, parts: int) -> 'Money':
        """Split into `parts` and round DOWN to the minor unit"""
        if parts <= 0:
            raise ValueError("parts must be positive")
        share = (self.amount / Decimal(parts)).quantize(self.currency.unit, rounding=ROUND_DOWN)
        return Money(share, self.currency)

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        if self.currency.precision == 0:
            return f"{self.currency.code} {self.amount:,.0f}"
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def money_sum(values: Iterable[Money], currency: Currency) -> Money:
    """Sum Money values, starting from zero in `currency`"""
    total = Money.zero(currency)
    for value in values:
        total = total + value
    return total


def parse_money(amount, currency: Currency) -> Money:
    """Build Money from a str/int/Decimal amount; floats are rejected"""
    if isinstance(amount, Money):
        if amount.currency != currency:
            raise ValueError(f"Expected {currency.code}, got {amount.currency.code}")
        return amount
    if isinstance(amount, float):
        raise ValueError("Monetary amounts must not be floats")
    return Money(Decimal(str(amount)), currency)
