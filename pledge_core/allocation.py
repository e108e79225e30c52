"""
Payment Allocation Module

Splits a collection between interest and principal. Precedence is fixed:
adjusted interest due is paid first, only the remainder reduces principal.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from .currency import Money, Currency, money_min, money_max, money_sum
from .exceptions import PaymentModeMismatch


class PaymentType(Enum):
    """What a receipt achieved"""
    INTEREST = "interest"   # Interest only (possibly partial)
    PARTIAL = "partial"     # Some principal repaid
    FULL = "full"           # Loan settled


class PaymentModeType(Enum):
    CASH = "cash"
    CHEQUE = "cheque"
    TRANSFER = "transfer"
    UPI = "upi"
    CARD = "card"


@dataclass(frozen=True)
class PaymentMode:
    """One tender line of a receipt"""
    mode: PaymentModeType
    amount: Money
    reference: Optional[str] = None

    def __post_init__(self):
        if self.amount.is_negative():
            raise ValueError("Payment mode amount cannot be negative")


@dataclass(frozen=True)
class Adjustments:
    """
    Receipt adjustments applied to the interest side only.

    other_credits reduce interest due; other_debits and default_amount
    increase it. add_less carries its own sign.
    """
    other_credits: Money
    other_debits: Money
    default_amount: Money
    add_less: Money

    def __post_init__(self):
        for name in ('other_credits', 'other_debits', 'default_amount'):
            if getattr(self, name).is_negative():
                raise ValueError(f"{name} cannot be negative")

    @classmethod
    def none(cls, currency: Currency = Currency.INR) -> 'Adjustments':
        zero = Money.zero(currency)
        return cls(zero, zero, zero, zero)

    @property
    def net(self) -> Money:
        return self.other_debits + self.default_amount + self.add_less - self.other_credits


@dataclass(frozen=True)
class Allocation:
    """Result of splitting a collection"""
    interest_due: Money
    interest_paid: Money
    principal_paid: Money
    balance_interest: Money
    balance_principal: Money
    excess: Money

    @property
    def is_settled(self) -> bool:
        return self.balance_interest.is_zero() and self.balance_principal.is_zero()

    @property
    def payment_type(self) -> PaymentType:
        return classify_payment(self)


def classify_payment(allocation: Allocation) -> PaymentType:
    """FULL when the loan is settled, PARTIAL when principal moved, else INTEREST"""
    if allocation.is_settled:
        return PaymentType.FULL
    if allocation.principal_paid.is_positive():
        return PaymentType.PARTIAL
    return PaymentType.INTEREST


def allocate(
    outstanding_interest: Money,
    outstanding_principal: Money,
    collection_amount: Money,
    adjustments: Optional[Adjustments] = None
) -> Allocation:
    """
    Split collection_amount interest-first.

    The allocator clamps: anything beyond interest due plus outstanding
    principal is reported as `excess` and the caller decides whether that
    is an error.

    Raises:
        ValueError: If the collection or an outstanding balance is negative
    """
    currency = collection_amount.currency
    zero = Money.zero(currency)
    if collection_amount.is_negative():
        raise ValueError("Collection amount cannot be negative")
    if outstanding_interest.is_negative() or outstanding_principal.is_negative():
        raise ValueError("Outstanding balances cannot be negative")

    if adjustments is None:
        adjustments = Adjustments.none(currency)

    interest_due = money_max(outstanding_interest + adjustments.net, zero)

    interest_paid = money_min(collection_amount, interest_due)
    remainder = collection_amount - interest_paid
    principal_paid = money_min(remainder, outstanding_principal)

    return Allocation(
        interest_due=interest_due,
        interest_paid=interest_paid,
        principal_paid=principal_paid,
        balance_interest=interest_due - interest_paid,
        balance_principal=outstanding_principal - principal_paid,
        excess=remainder - principal_paid
    )


def validate_payment_modes(modes: Iterable[PaymentMode], collection_amount: Money) -> None:
    """
    Payment mode lines must add up exactly to the collection amount.

    An empty breakdown is treated as a single cash line for the full amount.

    Raises:
        PaymentModeMismatch: If the lines do not sum to collection_amount
    """
    modes = list(modes)
    if not modes:
        return
    total = money_sum((mode.amount for mode in modes), collection_amount.currency)
    if total != collection_amount:
        raise PaymentModeMismatch(
            f"Payment modes total {total.to_string()} does not equal "
            f"collection amount {collection_amount.to_string()}"
        )
