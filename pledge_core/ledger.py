"""
Interest Ledger Engine

Owns the ordered, append-only sequence of interest periods for a loan.
`quote` previews the open period without touching the loan; `commit`
re-runs the same computation, allocates the receipt and appends exactly one
period; `reverse` removes a period only when it is the last one.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional, TYPE_CHECKING
from enum import Enum
import uuid

from .currency import Money, Currency, money_min, money_max
from .storage import StorageRecord
from .interest import AccrualCalculator, create_calculator
from .allocation import (
    Adjustments, Allocation, PaymentMode, PaymentModeType, PaymentType,
    allocate, validate_payment_modes
)
from .exceptions import (
    AlreadySettled, Overpayment, InvalidLoanState, NonTerminalReversal, LoanNotFound
)
from .logging_config import get_logger, log_action

if TYPE_CHECKING:
    from .loans import LoanAccount


logger = get_logger("pledge.ledger")


def _money_to_dict(record: Any, result: Dict[str, Any]) -> Dict[str, Any]:
    """Write every Money field as a Decimal string plus one currency code"""
    for f in fields(record):
        value = getattr(record, f.name)
        if isinstance(value, Money):
            result[f.name] = str(value.amount)
            result['currency'] = value.currency.code
    return result


@dataclass
class InterestPeriod(StorageRecord):
    """
    One closed ledger period, produced by exactly one receipt.

    total_accrued = interest_accrued + penalty_accrued + carry_in_interest
                    - advance_interest_applied
    closing_principal = opening_principal + added_principal
                        - adjusted_principal - principal_paid

    advance_interest_remaining is the prepaid advance still unused after
    this period; it is credited against the following periods.
    """
    loan_id: str
    sequence: int
    receipt_id: str
    from_date: date
    to_date: date
    duration_days: int
    opening_principal: Money
    interest_accrued: Money
    penalty_accrued: Money
    carry_in_interest: Money
    advance_interest_applied: Money
    total_accrued: Money
    interest_paid: Money
    principal_paid: Money
    added_principal: Money
    adjusted_principal: Money
    closing_principal: Money
    balance_interest: Money
    min_days_applied: bool = False
    advance_interest_remaining: Money = None

    def __post_init__(self):
        if self.advance_interest_remaining is None:
            self.advance_interest_remaining = Money.zero(self.closing_principal.currency)
        if self.advance_interest_remaining.is_negative():
            raise ValueError("Remaining advance interest cannot be negative")

        expected_total = (self.interest_accrued + self.penalty_accrued + self.carry_in_interest
                          - self.advance_interest_applied)
        if self.total_accrued != expected_total:
            raise ValueError(f"Total accrued {self.total_accrued.to_string()} does not equal "
                             f"accrued + penalty + carry-in - advance ({expected_total.to_string()})")

        expected_closing = (self.opening_principal + self.added_principal
                            - self.adjusted_principal - self.principal_paid)
        if self.closing_principal != expected_closing:
            raise ValueError(f"Closing principal {self.closing_principal.to_string()} does not equal "
                             f"opening + added - adjusted - paid ({expected_closing.to_string()})")
        if self.closing_principal.is_negative():
            raise ValueError("Closing principal cannot be negative")
        if self.to_date <= self.from_date:
            raise ValueError("Period must end after it starts")

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'sequence': self.sequence,
            'receipt_id': self.receipt_id,
            'from_date': self.from_date.isoformat(),
            'to_date': self.to_date.isoformat(),
            'duration_days': self.duration_days,
            'min_days_applied': self.min_days_applied,
        }
        return _money_to_dict(self, result)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'InterestPeriod':
        currency = Currency[data['currency']]
        kwargs = {}
        for f in fields(cls):
            value = data.get(f.name)
            if f.type in ('Money', Money):
                kwargs[f.name] = Money(Decimal(value), currency) if value is not None else None
            elif f.name in ('created_at', 'updated_at'):
                kwargs[f.name] = datetime.fromisoformat(value)
            elif f.name in ('from_date', 'to_date'):
                kwargs[f.name] = date.fromisoformat(value)
            else:
                kwargs[f.name] = value
        return cls(**kwargs)


class ReceiptStatus(Enum):
    ACTIVE = "active"
    CANCELLED = "cancelled"


@dataclass
class Receipt(StorageRecord):
    """
    A payment event against a loan.

    The operator supplies the dates, the collection, the adjustments and
    the payment mode breakdown; commit fills in the allocation results.
    """
    loan_id: str
    receipt_date: date
    till_date: date
    collection_amount: Money
    other_credits: Money = None
    other_debits: Money = None
    default_amount: Money = None
    add_less: Money = None
    added_principal: Money = None
    adjusted_principal: Money = None
    payment_modes: List[PaymentMode] = field(default_factory=list)
    receipt_number: Optional[str] = None
    remarks: Optional[str] = None
    status: ReceiptStatus = ReceiptStatus.ACTIVE

    # Filled by commit
    period_id: Optional[str] = None
    payment_type: Optional[PaymentType] = None
    interest_paid: Money = None
    principal_paid: Money = None
    outstanding_principal_after: Money = None
    outstanding_interest_after: Money = None

    def __post_init__(self):
        zero = Money.zero(self.collection_amount.currency)
        for name in ('other_credits', 'other_debits', 'default_amount', 'add_less',
                     'added_principal', 'adjusted_principal', 'interest_paid', 'principal_paid',
                     'outstanding_principal_after', 'outstanding_interest_after'):
            if getattr(self, name) is None:
                setattr(self, name, zero)

        if self.collection_amount.is_negative():
            raise ValueError("Collection amount cannot be negative")
        if self.added_principal.is_negative() or self.adjusted_principal.is_negative():
            raise ValueError("Principal adjustments cannot be negative")

    @property
    def adjustments(self) -> Adjustments:
        return Adjustments(
            other_credits=self.other_credits,
            other_debits=self.other_debits,
            default_amount=self.default_amount,
            add_less=self.add_less
        )

    @property
    def is_active(self) -> bool:
        return self.status == ReceiptStatus.ACTIVE

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'receipt_number': self.receipt_number,
            'receipt_date': self.receipt_date.isoformat(),
            'till_date': self.till_date.isoformat(),
            'remarks': self.remarks,
            'status': self.status.value,
            'period_id': self.period_id,
            'payment_type': self.payment_type.value if self.payment_type else None,
            'payment_modes': [
                {
                    'mode': mode.mode.value,
                    'amount': str(mode.amount.amount),
                    'reference': mode.reference,
                }
                for mode in self.payment_modes
            ],
        }
        return _money_to_dict(self, result)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Receipt':
        currency = Currency[data['currency']]

        def money(name: str) -> Money:
            return Money(Decimal(data[name]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            receipt_date=date.fromisoformat(data['receipt_date']),
            till_date=date.fromisoformat(data['till_date']),
            collection_amount=money('collection_amount'),
            other_credits=money('other_credits'),
            other_debits=money('other_debits'),
            default_amount=money('default_amount'),
            add_less=money('add_less'),
            added_principal=money('added_principal'),
            adjusted_principal=money('adjusted_principal'),
            payment_modes=[
                PaymentMode(PaymentModeType(mode['mode']), Money(Decimal(mode['amount']), currency),
                            mode.get('reference'))
                for mode in data.get('payment_modes', [])
            ],
            receipt_number=data.get('receipt_number'),
            remarks=data.get('remarks'),
            status=ReceiptStatus(data['status']),
            period_id=data.get('period_id'),
            payment_type=PaymentType(data['payment_type']) if data.get('payment_type') else None,
            interest_paid=money('interest_paid'),
            principal_paid=money('principal_paid'),
            outstanding_principal_after=money('outstanding_principal_after'),
            outstanding_interest_after=money('outstanding_interest_after'),
        )


@dataclass(frozen=True)
class InterestQuote:
    """Provisional closing figures for the open period; never persisted"""
    loan_id: str
    from_date: date
    till_date: date
    days_calculated: int
    outstanding_principal: Money
    accrued_interest: Money
    penalty_interest: Money
    carry_in_interest: Money
    advance_interest_applied: Money
    outstanding_interest: Money
    min_calc_days_applied: bool
    advance_interest_remaining: Money

    @property
    def already_settled(self) -> bool:
        """True when interest is already paid up to till_date"""
        return self.days_calculated == 0

    @property
    def total_payable(self) -> Money:
        return self.outstanding_principal + self.outstanding_interest


@dataclass(frozen=True)
class CommitResult:
    period: InterestPeriod
    allocation: Allocation
    receipt: Receipt
    quote: InterestQuote


class LedgerEngine:
    """
    Quotes and commits interest periods for a LoanAccount.

    The engine holds no loan state. Callers serialize `commit` and
    `reverse` per loan; `quote` is safe to call concurrently.
    """

    def __init__(self, calculator: Optional[AccrualCalculator] = None,
                 apply_min_days_to_first_period: bool = True):
        self.calculator = calculator or create_calculator()
        self.apply_min_days_to_first_period = apply_min_days_to_first_period

    def quote(self, loan: 'LoanAccount', till_date: date) -> InterestQuote:
        """
        Interest owed on the loan up to till_date.

        Returns zero accrued interest with days_calculated == 0 when till_date
        is on or before the paid-through date; never raises for that case.
        """
        currency = loan.currency
        zero = Money.zero(currency)
        last = loan.last_period
        from_date = loan.paid_through_date
        opening = loan.outstanding_principal
        carry_in = last.balance_interest if last else zero
        is_first = last is None

        accrual = self.calculator.accrue(
            opening, loan.scheme, from_date, till_date,
            schedule=loan.emi_schedule,
            apply_min_days=(not is_first) or self.apply_min_days_to_first_period
        )

        penalty = zero
        advance_applied = zero
        advance_available = loan.advance_interest_remaining
        if accrual.duration_days > 0:
            penalty = self.calculator.penalty_interest(opening, loan.scheme, from_date, till_date,
                                                       loan.maturity_date)
            # Prepaid advance covers each period until it is used up
            if advance_available.is_positive():
                advance_applied = money_min(advance_available, accrual.interest + penalty)

        return InterestQuote(
            loan_id=loan.id,
            from_date=from_date,
            till_date=till_date,
            days_calculated=accrual.duration_days,
            outstanding_principal=opening,
            accrued_interest=accrual.interest,
            penalty_interest=penalty,
            carry_in_interest=carry_in,
            advance_interest_applied=advance_applied,
            outstanding_interest=accrual.interest + penalty + carry_in - advance_applied,
            min_calc_days_applied=accrual.min_days_applied,
            advance_interest_remaining=advance_available - advance_applied
        )

    def commit(self, loan: 'LoanAccount', receipt: Receipt) -> CommitResult:
        """
        Settle the open period up to receipt.till_date.

        Interest is recomputed here; figures supplied by a client are never
        trusted. On success one InterestPeriod is appended to loan.ledger,
        the receipt's computed fields are filled in and a fully settled loan
        is closed.

        Raises:
            LoanClosed: If the loan no longer accepts receipts
            AlreadySettled: If till_date is not after the paid-through date
            PaymentModeMismatch: If payment modes do not sum to the collection
            Overpayment: If the collection exceeds interest due plus principal
        """
        loan.ensure_accepts_receipts()

        if receipt.loan_id != loan.id:
            raise ValueError(f"Receipt belongs to loan {receipt.loan_id}, not {loan.id}")
        if receipt.collection_amount.currency != loan.currency:
            raise ValueError("Receipt currency must match loan currency")

        paid_through = loan.paid_through_date
        if receipt.till_date <= paid_through:
            log_action(logger, "warning", "Receipt rejected: already settled",
                       action="commit_rejected", loan_id=loan.id,
                       extra={"till_date": receipt.till_date, "paid_through": paid_through})
            raise AlreadySettled(
                f"Interest already settled up to {paid_through.isoformat()}; "
                f"choose a till date after it"
            )

        validate_payment_modes(receipt.payment_modes, receipt.collection_amount)

        quote = self.quote(loan, receipt.till_date)

        principal_available = (quote.outstanding_principal + receipt.added_principal
                               - receipt.adjusted_principal)
        if principal_available.is_negative():
            raise ValueError("Adjusted principal exceeds outstanding principal")

        allocation = allocate(
            quote.outstanding_interest,
            principal_available,
            receipt.collection_amount,
            receipt.adjustments
        )
        if allocation.excess.is_positive():
            maximum = allocation.interest_due + principal_available
            log_action(logger, "warning", "Receipt rejected: overpayment",
                       action="commit_rejected", loan_id=loan.id,
                       extra={"collection": receipt.collection_amount.amount, "maximum": maximum.amount})
            raise Overpayment(
                f"Collection {receipt.collection_amount.to_string()} exceeds total outstanding "
                f"{maximum.to_string()}"
            )

        now = datetime.now(timezone.utc)
        # Interest adjustments are folded into the carry-in so the period balances
        carry_in = quote.carry_in_interest + (allocation.interest_due - quote.outstanding_interest)
        period = InterestPeriod(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            sequence=len(loan.ledger) + 1,
            receipt_id=receipt.id,
            from_date=quote.from_date,
            to_date=receipt.till_date,
            duration_days=quote.days_calculated,
            opening_principal=quote.outstanding_principal,
            interest_accrued=quote.accrued_interest,
            penalty_accrued=quote.penalty_interest,
            carry_in_interest=carry_in,
            advance_interest_applied=quote.advance_interest_applied,
            total_accrued=allocation.interest_due,
            interest_paid=allocation.interest_paid,
            principal_paid=allocation.principal_paid,
            added_principal=receipt.added_principal,
            adjusted_principal=receipt.adjusted_principal,
            closing_principal=allocation.balance_principal,
            balance_interest=allocation.balance_interest,
            min_days_applied=quote.min_calc_days_applied,
            advance_interest_remaining=quote.advance_interest_remaining
        )

        receipt.period_id = period.id
        receipt.payment_type = allocation.payment_type
        receipt.interest_paid = allocation.interest_paid
        receipt.principal_paid = allocation.principal_paid
        receipt.outstanding_principal_after = allocation.balance_principal
        receipt.outstanding_interest_after = allocation.balance_interest
        receipt.updated_at = now

        loan.ledger.append(period)
        if allocation.is_settled:
            loan.mark_closed()
        loan.updated_at = now

        log_action(logger, "info", "Receipt committed", action="commit",
                   resource=receipt.id, loan_id=loan.id,
                   extra={
                       "sequence": period.sequence,
                       "till_date": receipt.till_date,
                       "interest_paid": allocation.interest_paid.amount,
                       "principal_paid": allocation.principal_paid.amount,
                       "balance_principal": allocation.balance_principal.amount,
                       "advance_applied": period.advance_interest_applied.amount,
                   })

        return CommitResult(period=period, allocation=allocation, receipt=receipt, quote=quote)

    def reverse(self, loan: 'LoanAccount', receipt_id: str) -> InterestPeriod:
        """
        Remove the ledger period produced by receipt_id.

        Raises:
            LoanNotFound: If no period belongs to the receipt
            NonTerminalReversal: If the period is not the last one
            InvalidLoanState: If the loan is closed or auctioned
        """
        index = next((i for i, period in enumerate(loan.ledger) if period.receipt_id == receipt_id), None)
        if index is None:
            raise LoanNotFound(f"No ledger period for receipt {receipt_id} on loan {loan.id}")
        if index != len(loan.ledger) - 1:
            log_action(logger, "error", "Reversal refused: period is not the last one",
                       action="reverse_rejected", loan_id=loan.id,
                       extra={"receipt_id": receipt_id, "sequence": index + 1,
                              "ledger_length": len(loan.ledger)})
            raise NonTerminalReversal(
                f"Receipt {receipt_id} produced period {index + 1} of {len(loan.ledger)}; "
                f"only the last period can be reversed"
            )
        if not loan.accepts_receipts():
            raise InvalidLoanState(
                f"Loan {loan.id} is {loan.status.value}; its ledger cannot be reopened"
            )

        period = loan.ledger.pop()
        loan.updated_at = datetime.now(timezone.utc)
        log_action(logger, "info", "Receipt reversed", action="reverse",
                   resource=receipt_id, loan_id=loan.id, extra={"sequence": period.sequence})
        return period


def verify_ledger(loan: 'LoanAccount') -> List[str]:
    """
    Check conservation and contiguity of a loan's ledger.

    Returns:
        List of problems found; empty when the ledger is consistent
    """
    problems = []
    expected_from = loan.loan_date
    expected_opening = loan.principal
    expected_advance = loan.advance_interest

    for index, period in enumerate(loan.ledger):
        if period.sequence != index + 1:
            problems.append(f"period {index + 1}: sequence {period.sequence}")
        if period.from_date != expected_from:
            problems.append(f"period {index + 1}: starts {period.from_date}, expected {expected_from}")
        if period.opening_principal != expected_opening:
            problems.append(f"period {index + 1}: opening principal {period.opening_principal.to_string()}, "
                            f"expected {expected_opening.to_string()}")
        if (period.closing_principal + period.principal_paid + period.adjusted_principal
                != period.opening_principal + period.added_principal):
            problems.append(f"period {index + 1}: principal not conserved")
        if (period.advance_interest_applied.is_negative()
                or period.advance_interest_applied > expected_advance):
            problems.append(f"period {index + 1}: advance applied {period.advance_interest_applied.to_string()} "
                            f"exceeds the {expected_advance.to_string()} still available")
        expected_advance = expected_advance - period.advance_interest_applied
        if period.advance_interest_remaining != money_max(expected_advance, Money.zero(loan.currency)):
            problems.append(f"period {index + 1}: remaining advance {period.advance_interest_remaining.to_string()}, "
                            f"expected {expected_advance.to_string()}")
        expected_from = period.to_date
        expected_opening = period.closing_principal

    return problems
