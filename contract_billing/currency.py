"""
Money Module

ISO 4217 currency codes and an immutable Decimal-backed Money type. NEVER uses float
for monetary values. Gateway traffic uses integral minor units (cents).
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP, getcontext
from enum import Enum
from typing import Union

getcontext().prec = 28


class Currency(Enum):
    """ISO 4217 currency codes with minor-unit precision"""
    EGP = ("EGP", 2)  # Egyptian Pound
    USD = ("USD", 2)  # US Dollar
    EUR = ("EUR", 2)  # Euro
    SAR = ("SAR", 2)  # Saudi Riyal
    AED = ("AED", 2)  # UAE Dirham

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision

    @classmethod
    def from_code(cls, code: str) -> 'Currency':
        """Look up a currency by its ISO code"""
        for currency in cls:
            if currency.code == code.upper():
                return currency
        raise ValueError(f"Unknown currency code: {code}")


def quantize(value: Decimal, currency: Currency = Currency.EGP) -> Decimal:
    """Round a Decimal to the currency's minor unit"""
    return value.quantize(Decimal('0.1') ** currency.precision, rounding=ROUND_HALF_UP)


def to_decimal(value: Union[Decimal, int, str]) -> Decimal:
    """Convert to Decimal through str so binary floats never leak in"""
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation rounded to its currency's precision.
    """
    amount: Decimal
    currency: Currency

    def __post_init__(self):
        object.__setattr__(self, 'amount', quantize(to_decimal(self.amount), self.currency))

    @classmethod
    def zero(cls, currency: Currency) -> 'Money':
        return cls(Decimal('0'), currency)

    @classmethod
    def from_minor_units(cls, minor_units: int, currency: Currency) -> 'Money':
        """Build Money from an integral count of minor units"""
        return cls(Decimal(minor_units) / (Decimal(10) ** currency.precision), currency)

    def to_minor_units(self) -> int:
        """Integral minor units as the gateway expects (12.34 EGP -> 1234)"""
        return int(self.amount * (Decimal(10) ** self.currency.precision))

    def _check_currency(self, other: 'Money', operation: str) -> None:
        if self.currency != other.currency:
            raise ValueError(f"Cannot {operation} {self.currency.code} and {other.currency.code}")

    def __add__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "add")
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: 'Money') -> 'Money':
        self._check_currency(other, "subtract")
        return Money(self.amount - other.amount, self.currency)

    def __mul__(self, multiplier: Union[Decimal, int]) -> 'Money':
        return Money(self.amount * to_decimal(multiplier), self.currency)

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

    def is_zero(self) -> bool:
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        return self.amount > Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"
