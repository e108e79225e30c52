"""
Loan Module

The pledge loan aggregate: principal, resolved scheme rules, maturity,
disbursement charges, the interest ledger and the lifecycle status. The
LoanManager service persists loans, receipts and ledger periods and
serializes every ledger mutation per loan.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
import threading
import weakref
import uuid

from .currency import Money, Currency, money_max, money_sum
from .storage import StorageInterface, StorageRecord
from .audit import AuditTrail, AuditEventType
from .schemes import SchemeRules, InterestMethod
from .maturity import calculate_maturity_date
from .interest import EmiSchedule, build_emi_schedule
from .allocation import PaymentMode
from .ledger import (
    LedgerEngine, InterestPeriod, InterestQuote, Receipt, ReceiptStatus, CommitResult,
    verify_ledger
)
from .exceptions import LoanNotFound, LoanClosed, InvalidLoanState
from .logging_config import get_logger, log_action


logger = get_logger("pledge.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    OPEN = "open"              # Accepting receipts
    MATURED = "matured"        # Past maturity date, still accepting receipts
    CLOSED = "closed"          # Principal and interest fully settled
    AUCTIONED = "auctioned"    # Pledged gold sold after maturity


# Transitions only move forward
_ALLOWED_TRANSITIONS = {
    LoanStatus.OPEN: {LoanStatus.MATURED, LoanStatus.CLOSED},
    LoanStatus.MATURED: {LoanStatus.CLOSED, LoanStatus.AUCTIONED},
    LoanStatus.CLOSED: set(),
    LoanStatus.AUCTIONED: set(),
}


@dataclass
class LoanAccount(StorageRecord):
    """A pledge loan and its interest ledger"""
    loan_number: str
    customer_id: str
    principal: Money
    scheme: SchemeRules
    loan_date: date
    maturity_date: date
    status: LoanStatus = LoanStatus.OPEN
    advance_interest: Money = None
    processing_fee: Money = None
    emi_schedule: Optional[EmiSchedule] = None
    ledger: List[InterestPeriod] = field(default_factory=list)
    closed_date: Optional[date] = None

    def __post_init__(self):
        if not self.principal.is_positive():
            raise ValueError("Loan principal must be positive")
        zero = Money.zero(self.principal.currency)
        if self.advance_interest is None:
            self.advance_interest = zero
        if self.processing_fee is None:
            self.processing_fee = zero

    @property
    def currency(self) -> Currency:
        return self.principal.currency

    @property
    def last_period(self) -> Optional[InterestPeriod]:
        return self.ledger[-1] if self.ledger else None

    @property
    def outstanding_principal(self) -> Money:
        last = self.last_period
        return last.closing_principal if last else self.principal

    @property
    def paid_through_date(self) -> date:
        """Date up to which interest has been settled"""
        last = self.last_period
        return last.to_date if last else self.loan_date

    @property
    def net_disbursed(self) -> Money:
        return self.principal - self.advance_interest - self.processing_fee

    @property
    def advance_interest_remaining(self) -> Money:
        """Prepaid advance interest not yet credited against a period"""
        applied = money_sum((period.advance_interest_applied for period in self.ledger), self.currency)
        return money_max(self.advance_interest - applied, Money.zero(self.currency))

    def status_as_of(self, as_of: date) -> LoanStatus:
        """Status with maturity derived from the date"""
        if self.status in (LoanStatus.CLOSED, LoanStatus.AUCTIONED):
            return self.status
        if as_of > self.maturity_date:
            return LoanStatus.MATURED
        return self.status

    def accepts_receipts(self) -> bool:
        return self.status not in (LoanStatus.CLOSED, LoanStatus.AUCTIONED)

    def ensure_accepts_receipts(self) -> None:
        if not self.accepts_receipts():
            raise LoanClosed(f"Loan {self.loan_number} is {self.status.value} and accepts no receipts")

    def transition_to(self, new_status: LoanStatus) -> None:
        """
        Move to new_status.

        Raises:
            InvalidLoanState: If the transition would move backwards
        """
        if new_status == self.status:
            return
        if new_status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidLoanState(
                f"Loan {self.loan_number} cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status
        self.updated_at = datetime.now(timezone.utc)

    def mark_closed(self) -> None:
        self.transition_to(LoanStatus.CLOSED)
        self.closed_date = self.paid_through_date

    def quote_as_of(self, till_date: date, engine: Optional[LedgerEngine] = None) -> InterestQuote:
        """Preview interest owed up to till_date without changing the loan"""
        return (engine or LedgerEngine()).quote(self, till_date)

    def apply_receipt(self, receipt: Receipt, engine: Optional[LedgerEngine] = None) -> CommitResult:
        """Commit a receipt against this loan, appending one ledger period"""
        return (engine or LedgerEngine()).commit(self, receipt)


@dataclass(frozen=True)
class DisbursementSummary:
    """Amounts handed over at loan creation"""
    principal: Money
    advance_interest: Money
    processing_fee: Money
    net_disbursed: Money


class LoanManager:
    """
    Manages pledge loans: creation, quotes, receipts, reversals, scheme
    changes and auctions.

    Ledger mutations for one loan are serialized by a per-loan lock and
    written inside a storage transaction; different loans never share a
    lock.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: Optional[AuditTrail] = None,
        engine: Optional[LedgerEngine] = None,
        loan_number_prefix: str = "GL",
        receipt_number_prefix: str = "RC"
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.engine = engine or LedgerEngine()
        self.loan_number_prefix = loan_number_prefix
        self.receipt_number_prefix = receipt_number_prefix

        self.loans_table = "pledge_loans"
        self.periods_table = "interest_periods"
        self.receipts_table = "receipts"
        self.sequences_table = "number_sequences"

        # Locks live only while some caller holds them
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()
        self._sequence_lock = threading.Lock()

    def create_loan(
        self,
        customer_id: str,
        principal: Money,
        scheme: SchemeRules,
        loan_date: Optional[date] = None,
        loan_number: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> LoanAccount:
        """
        Create a pledge loan

        Args:
            customer_id: Borrower customer ID
            principal: Amount sanctioned
            scheme: Resolved scheme rules
            loan_date: Disbursement date (defaults to today)
            loan_number: Loan number (generated when omitted)
            user_id: Operator creating the loan

        Returns:
            Created LoanAccount
        """
        if not principal.is_positive():
            raise ValueError("Loan principal must be positive")
        if not loan_date:
            loan_date = date.today()

        calculator = self.engine.calculator
        advance_interest = calculator.advance_interest(principal, scheme)
        processing_fee = calculator.processing_fee(principal, scheme)
        if advance_interest + processing_fee > principal:
            raise ValueError("Advance interest and processing fee exceed the principal")

        emi_schedule = None
        if scheme.method == InterestMethod.EMI:
            emi_schedule = build_emi_schedule(principal, scheme, loan_date)

        now = datetime.now(timezone.utc)
        with self.storage.atomic():
            loan = LoanAccount(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_number=loan_number or self._next_number(self.loan_number_prefix, loan_date.year),
                customer_id=customer_id,
                principal=principal,
                scheme=scheme,
                loan_date=loan_date,
                maturity_date=calculate_maturity_date(loan_date, scheme.validity_months),
                advance_interest=advance_interest,
                processing_fee=processing_fee,
                emi_schedule=emi_schedule
            )
            self._save_loan(loan)

        self._log_audit(
            AuditEventType.LOAN_CREATED, loan.id, user_id,
            {
                "loan_number": loan.loan_number,
                "customer_id": customer_id,
                "principal": principal.to_string(),
                "method": scheme.method.value,
                "annual_rate_percent": str(scheme.annual_rate_percent),
                "loan_date": loan_date.isoformat(),
                "maturity_date": loan.maturity_date.isoformat(),
                "advance_interest": advance_interest.to_string(),
                "processing_fee": processing_fee.to_string(),
            }
        )
        log_action(logger, "info", "Loan created", action="create_loan", loan_id=loan.id,
                   extra={"loan_number": loan.loan_number, "principal": principal.amount,
                          "method": scheme.method.value})
        return loan

    def get_loan(self, loan_id: str) -> LoanAccount:
        """
        Get a loan with its ledger

        Raises:
            LoanNotFound: If no loan has this ID
        """
        loan_dict = self.storage.load(self.loans_table, loan_id)
        if not loan_dict:
            raise LoanNotFound(f"Loan {loan_id} not found")
        return self._loan_from_dict(loan_dict, self._load_ledger(loan_id))

    def get_loan_by_number(self, loan_number: str) -> LoanAccount:
        matches = self.storage.find(self.loans_table, {"loan_number": loan_number})
        if not matches:
            raise LoanNotFound(f"Loan {loan_number} not found")
        return self._loan_from_dict(matches[0], self._load_ledger(matches[0]['id']))

    def list_loans(
        self,
        customer_id: Optional[str] = None,
        status: Optional[LoanStatus] = None
    ) -> List[LoanAccount]:
        filters = {}
        if customer_id:
            filters["customer_id"] = customer_id
        if status:
            filters["status"] = status.value
        loans_data = self.storage.find(self.loans_table, filters)
        return [self._loan_from_dict(data, self._load_ledger(data['id'])) for data in loans_data]

    def quote(self, loan_id: str, till_date: date) -> InterestQuote:
        """Interest owed on a loan up to till_date; never writes anything"""
        return self.get_loan(loan_id).quote_as_of(till_date, self.engine)

    def apply_receipt(
        self,
        loan_id: str,
        till_date: date,
        collection_amount: Money,
        receipt_date: Optional[date] = None,
        other_credits: Optional[Money] = None,
        other_debits: Optional[Money] = None,
        default_amount: Optional[Money] = None,
        add_less: Optional[Money] = None,
        added_principal: Optional[Money] = None,
        adjusted_principal: Optional[Money] = None,
        payment_modes: Optional[List[PaymentMode]] = None,
        receipt_number: Optional[str] = None,
        remarks: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> CommitResult:
        """
        Record a receipt and append the resulting interest period

        Interest is recomputed under the loan lock, so two concurrent
        receipts for the same till date cannot both succeed.

        Returns:
            CommitResult with the new period, the allocation and the saved receipt
        """
        now = datetime.now(timezone.utc)
        with self._loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            previous_status = loan.status

            receipt = Receipt(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                receipt_date=receipt_date or date.today(),
                till_date=till_date,
                collection_amount=collection_amount,
                other_credits=other_credits,
                other_debits=other_debits,
                default_amount=default_amount,
                add_less=add_less,
                added_principal=added_principal,
                adjusted_principal=adjusted_principal,
                payment_modes=list(payment_modes or []),
                receipt_number=receipt_number,
                remarks=remarks
            )

            with self.storage.atomic():
                result = self.engine.commit(loan, receipt)
                if not receipt.receipt_number:
                    receipt.receipt_number = self._next_number(self.receipt_number_prefix,
                                                               receipt.receipt_date.year)
                self.storage.save(self.periods_table, result.period.id, result.period.to_dict())
                self.storage.save(self.receipts_table, receipt.id, receipt.to_dict())
                self._save_loan(loan)

        self._log_audit(
            AuditEventType.RECEIPT_COMMITTED, loan.id, user_id,
            {
                "receipt_id": receipt.id,
                "receipt_number": receipt.receipt_number,
                "sequence": result.period.sequence,
                "from_date": result.period.from_date.isoformat(),
                "till_date": till_date.isoformat(),
                "collection_amount": collection_amount.to_string(),
                "interest_paid": result.allocation.interest_paid.to_string(),
                "principal_paid": result.allocation.principal_paid.to_string(),
                "balance_principal": result.allocation.balance_principal.to_string(),
                "balance_interest": result.allocation.balance_interest.to_string(),
                "advance_interest_applied": result.period.advance_interest_applied.to_string(),
            }
        )
        if loan.status != previous_status:
            self._log_status_change(loan, previous_status, user_id)
        return result

    def cancel_receipt(
        self,
        loan_id: str,
        receipt_id: str,
        reason: Optional[str] = None,
        user_id: Optional[str] = None
    ) -> Receipt:
        """
        Cancel a receipt and remove the ledger period it produced

        Raises:
            LoanNotFound: If the loan or receipt does not exist
            InvalidLoanState: If the receipt is already cancelled or the loan is closed
            NonTerminalReversal: If a later receipt exists
        """
        with self._loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            receipt_dict = self.storage.load(self.receipts_table, receipt_id)
            if not receipt_dict or receipt_dict['loan_id'] != loan_id:
                raise LoanNotFound(f"Receipt {receipt_id} not found for loan {loan_id}")
            receipt = Receipt.from_dict(receipt_dict)
            if not receipt.is_active:
                raise InvalidLoanState(f"Receipt {receipt.receipt_number} is already cancelled")

            period = self.engine.reverse(loan, receipt_id)

            receipt.status = ReceiptStatus.CANCELLED
            receipt.updated_at = datetime.now(timezone.utc)
            if reason:
                receipt.remarks = reason

            with self.storage.atomic():
                self.storage.delete(self.periods_table, period.id)
                self.storage.save(self.receipts_table, receipt.id, receipt.to_dict())
                self._save_loan(loan)

        self._log_audit(
            AuditEventType.RECEIPT_CANCELLED, loan.id, user_id,
            {
                "receipt_id": receipt.id,
                "receipt_number": receipt.receipt_number,
                "sequence": period.sequence,
                "reason": reason,
            }
        )
        return receipt

    def get_receipts(self, loan_id: str, include_cancelled: bool = True) -> List[Receipt]:
        """Receipts for a loan in till-date order"""
        self._ensure_loan_exists(loan_id)
        receipts = [Receipt.from_dict(data)
                    for data in self.storage.find(self.receipts_table, {"loan_id": loan_id})]
        if not include_cancelled:
            receipts = [receipt for receipt in receipts if receipt.is_active]
        return sorted(receipts, key=lambda r: (r.till_date, r.created_at))

    def get_ledger(self, loan_id: str) -> List[InterestPeriod]:
        self._ensure_loan_exists(loan_id)
        return self._load_ledger(loan_id)

    def get_emi_schedule(self, loan_id: str) -> EmiSchedule:
        loan = self.get_loan(loan_id)
        if loan.emi_schedule is None:
            raise InvalidLoanState(f"Loan {loan.loan_number} is not on an EMI scheme")
        return loan.emi_schedule

    def change_scheme(
        self,
        loan_id: str,
        scheme: SchemeRules,
        user_id: Optional[str] = None
    ) -> LoanAccount:
        """
        Replace the loan's scheme rules

        Closed periods keep the figures they were committed with; the new
        rules govern the open period onward. Maturity is recomputed from the
        loan date. An EMI schedule can only be (re)built before the first
        receipt.
        """
        with self._loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            loan.ensure_accepts_receipts()

            emi_involved = InterestMethod.EMI in (scheme.method, loan.scheme.method)
            if emi_involved and loan.ledger:
                raise InvalidLoanState(
                    f"Loan {loan.loan_number} has receipts; EMI terms can only change before the first receipt"
                )

            previous = loan.scheme
            loan.scheme = scheme
            loan.maturity_date = calculate_maturity_date(loan.loan_date, scheme.validity_months)
            loan.emi_schedule = (build_emi_schedule(loan.principal, scheme, loan.loan_date)
                                 if scheme.method == InterestMethod.EMI else None)
            loan.updated_at = datetime.now(timezone.utc)

            with self.storage.atomic():
                self._save_loan(loan)

        self._log_audit(
            AuditEventType.SCHEME_CHANGED, loan.id, user_id,
            {
                "previous": previous.to_dict(),
                "current": scheme.to_dict(),
                "maturity_date": loan.maturity_date.isoformat(),
            }
        )
        log_action(logger, "info", "Scheme changed", action="change_scheme", loan_id=loan.id,
                   extra={"from_method": previous.method.value, "to_method": scheme.method.value})
        return loan

    def mark_auctioned(
        self,
        loan_id: str,
        as_of: Optional[date] = None,
        user_id: Optional[str] = None
    ) -> LoanAccount:
        """
        Record the auction of a matured loan's pledge

        Raises:
            InvalidLoanState: If the loan is not matured as of the date
        """
        if not as_of:
            as_of = date.today()

        with self._loan_lock(loan_id):
            loan = self.get_loan(loan_id)
            previous_status = loan.status
            if loan.status_as_of(as_of) != LoanStatus.MATURED:
                raise InvalidLoanState(
                    f"Loan {loan.loan_number} is {loan.status_as_of(as_of).value}; only matured loans can be auctioned"
                )
            loan.transition_to(LoanStatus.MATURED)
            loan.transition_to(LoanStatus.AUCTIONED)

            with self.storage.atomic():
                self._save_loan(loan)

        self._log_status_change(loan, previous_status, user_id)
        return loan

    def disbursement_summary(self, loan_id: str) -> DisbursementSummary:
        loan = self.get_loan(loan_id)
        return DisbursementSummary(
            principal=loan.principal,
            advance_interest=loan.advance_interest,
            processing_fee=loan.processing_fee,
            net_disbursed=loan.net_disbursed
        )

    def verify_ledger(self, loan_id: str) -> List[str]:
        return verify_ledger(self.get_loan(loan_id))

    def _loan_lock(self, loan_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(loan_id)
            if lock is None:
                lock = self._locks[loan_id] = threading.Lock()
            return lock

    def _next_number(self, prefix: str, year: int) -> str:
        """Next number in the yearly sequence, e.g. GL-2024-000001"""
        key = f"{prefix}-{year}"
        with self._sequence_lock:
            record = self.storage.load(self.sequences_table, key) or {"id": key, "value": 0}
            record["value"] += 1
            self.storage.save(self.sequences_table, key, record)
        return f"{prefix}-{year}-{record['value']:06d}"

    def _ensure_loan_exists(self, loan_id: str) -> None:
        if not self.storage.exists(self.loans_table, loan_id):
            raise LoanNotFound(f"Loan {loan_id} not found")

    def _log_status_change(self, loan: LoanAccount, previous_status: LoanStatus,
                           user_id: Optional[str]) -> None:
        event_type = (AuditEventType.LOAN_CLOSED if loan.status == LoanStatus.CLOSED
                      else AuditEventType.LOAN_STATUS_CHANGED)
        self._log_audit(
            event_type, loan.id, user_id,
            {
                "loan_number": loan.loan_number,
                "old_status": previous_status.value,
                "new_status": loan.status.value,
            }
        )
        log_action(logger, "info", "Loan status changed", action="status_change", loan_id=loan.id,
                   extra={"old_status": previous_status.value, "new_status": loan.status.value})

    def _log_audit(self, event_type: AuditEventType, loan_id: str, user_id: Optional[str],
                   metadata: Dict[str, Any]) -> None:
        if self.audit_trail is None:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="loan",
            entity_id=loan_id,
            metadata=metadata,
            user_id=user_id
        )

    def _load_ledger(self, loan_id: str) -> List[InterestPeriod]:
        periods = [InterestPeriod.from_dict(data)
                   for data in self.storage.find(self.periods_table, {"loan_id": loan_id})]
        return sorted(periods, key=lambda p: p.sequence)

    def _save_loan(self, loan: LoanAccount) -> None:
        self.storage.save(self.loans_table, loan.id, self._loan_to_dict(loan))

    def _loan_to_dict(self, loan: LoanAccount) -> Dict:
        """Convert loan to dictionary; ledger periods are stored separately"""
        return {
            'id': loan.id,
            'created_at': loan.created_at.isoformat(),
            'updated_at': loan.updated_at.isoformat(),
            'loan_number': loan.loan_number,
            'customer_id': loan.customer_id,
            'principal': str(loan.principal.amount),
            'advance_interest': str(loan.advance_interest.amount),
            'processing_fee': str(loan.processing_fee.amount),
            'currency': loan.currency.code,
            'scheme': loan.scheme.to_dict(),
            'loan_date': loan.loan_date.isoformat(),
            'maturity_date': loan.maturity_date.isoformat(),
            'status': loan.status.value,
            'emi_schedule': loan.emi_schedule.to_dict() if loan.emi_schedule else None,
            'closed_date': loan.closed_date.isoformat() if loan.closed_date else None,
        }

    def _loan_from_dict(self, data: Dict, ledger: List[InterestPeriod]) -> LoanAccount:
        """Convert dictionary to loan"""
        currency = Currency[data['currency']]

        def get_money(name: str) -> Money:
            return Money(Decimal(data[name]), currency)

        return LoanAccount(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_number=data['loan_number'],
            customer_id=data['customer_id'],
            principal=get_money('principal'),
            scheme=SchemeRules.from_dict(data['scheme']),
            loan_date=date.fromisoformat(data['loan_date']),
            maturity_date=date.fromisoformat(data['maturity_date']),
            status=LoanStatus(data['status']),
            advance_interest=get_money('advance_interest'),
            processing_fee=get_money('processing_fee'),
            emi_schedule=EmiSchedule.from_dict(data['emi_schedule']) if data.get('emi_schedule') else None,
            ledger=ledger,
            closed_date=date.fromisoformat(data['closed_date']) if data.get('closed_date') else None
        )
