"""
Money Module

Fixed-point Decimal money for loan amounts. Every amount stored or returned
by the engine is a Money rounded to its currency precision. NEVER uses float.
"""

from decimal import Decimal, ROUND_HALF_UP, getcontext
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Union
import re

# Set global decimal context for financial precision
getcontext().prec = 28

TWO_PLACES = Decimal('0.01')


class Currency(Enum):
    """ISO 4217 Currency Codes with precision info"""
    INR = ("INR", 2)  # Indian Rupee, 2 decimal places
    USD = ("USD", 2)  # US Dollar, 2 decimal places
    EUR = ("EUR", 2)  # Euro, 2 decimal places
    GBP = ("GBP", 2)  # British Pound, 2 decimal places

    def __init__(self, code: str, precision: int):
        self.code = code
        self.precision = precision


@dataclass(frozen=True)
class Money:
    """
    Immutable money representation with currency and proper precision.
    All monetary values MUST use this class or raw Decimal.
    """
    amount: Decimal
    currency: Currency = Currency.INR

    def __post_init__(self):
        if not isinstance(self.amount, Decimal):
            object.__setattr__(self, 'amount', Decimal(str(self.amount)))

        # Round to currency precision
        rounded = self.amount.quantize(
            Decimal('0.1') ** self.currency.precision,
            rounding=ROUND_HALF_UP
        )
        object.__setattr__(self, 'amount', rounded)

    @classmethod
    def zero(cls, currency: Currency = Currency.INR) -> 'Money':
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

    def __mul__(self, multiplier: Decimal) -> 'Money':
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
        return hash((self.amount, self.currency))

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
        """Check if amount is exactly zero"""
        return self.amount == Decimal('0')

    def is_positive(self) -> bool:
        """Check if amount is positive"""
        return self.amount > Decimal('0')

    def is_negative(self) -> bool:
        """Check if amount is negative"""
        return self.amount < Decimal('0')

    def to_string(self) -> str:
        """Format for display"""
        return f"{self.currency.code} {self.amount:,.{self.currency.precision}f}"


def money_min(first: Money, second: Money) -> Money:
    return first if first <= second else second


def money_max(first: Money, second: Money) -> Money:
    return first if first >= second else second


def money_sum(amounts: Iterable[Money], currency: Currency = Currency.INR) -> Money:
    total = Money.zero(currency)
    for amount in amounts:
        total = total + amount
    return total


# Leading currency marker, e.g. "₹", "Rs.", "INR "
_CURRENCY_PREFIX = re.compile(r'^(?:[₹$€£]|Rs\.?|INR|USD|EUR|GBP)\s*', re.IGNORECASE)
# Plain decimal literal: no exponent, no NaN or Infinity
_PLAIN_NUMBER = re.compile(r'[+-]?(?:\d+(?:\.\d*)?|\.\d+)')


def to_decimal(value: Union[str, int, Decimal, None]) -> Decimal:
    """
    Convert API/storage input into a Decimal without passing through float.

    Accepts Decimal, int or plain decimal strings. A leading currency marker,
    whitespace and thousands separators are tolerated; exponent notation is
    not. None becomes zero.

    Raises:
        ValueError: If the value is not a plain finite number
    """
    if value is None:
        return Decimal('0')
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise ValueError(f"Cannot convert '{value}' to Decimal")
        return value
    if isinstance(value, bool) or isinstance(value, float):
        raise ValueError(f"Refusing to read {value!r} as money; pass a string or Decimal")
    if isinstance(value, int):
        return Decimal(value)

    text = str(value).strip()
    sign = ''
    if text[:1] in ('+', '-'):
        sign, text = text[0], text[1:].lstrip()
    clean_value = sign + re.sub(r'[\s,]', '', _CURRENCY_PREFIX.sub('', text))
    if not _PLAIN_NUMBER.fullmatch(clean_value):
        raise ValueError(f"Cannot convert '{value}' to Decimal")
    return Decimal(clean_value)


def round_money(value: Decimal, currency: Currency = Currency.INR) -> Decimal:
    """Round a raw Decimal to currency precision (ROUND_HALF_UP)"""
    return value.quantize(
        Decimal('0.1') ** currency.precision,
        rounding=ROUND_HALF_UP
    )
