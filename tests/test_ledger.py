"""
Tests for the interest ledger engine: quotes, commits and reversals
"""

import pytest
import uuid
from decimal import Decimal
from datetime import datetime, timezone, date

from pledge_core.currency import Money
from pledge_core.schemes import SchemeRules, InterestMethod
from pledge_core.maturity import calculate_maturity_date
from pledge_core.interest import AccrualCalculator
from pledge_core.allocation import PaymentMode, PaymentModeType, PaymentType
from pledge_core.ledger import LedgerEngine, Receipt, InterestPeriod, verify_ledger
from pledge_core.loans import LoanAccount, LoanStatus
from pledge_core.exceptions import (
    AlreadySettled, Overpayment, PaymentModeMismatch, LoanClosed,
    NonTerminalReversal, InvalidLoanState, LoanNotFound
)


def inr(amount: str) -> Money:
    return Money(Decimal(amount))


def make_loan(principal: str = '50000', rules: SchemeRules = None,
              loan_date: date = date(2024, 1, 1), **kwargs) -> LoanAccount:
    now = datetime.now(timezone.utc)
    rules = rules or SchemeRules(InterestMethod.SIMPLE, Decimal('24'))
    return LoanAccount(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_number="GL-2024-000001",
        customer_id="CUST001",
        principal=inr(principal),
        scheme=rules,
        loan_date=loan_date,
        maturity_date=calculate_maturity_date(loan_date, rules.validity_months),
        **kwargs
    )


def make_receipt(loan: LoanAccount, till_date: date, amount: str, **kwargs) -> Receipt:
    now = datetime.now(timezone.utc)
    return Receipt(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        loan_id=loan.id,
        receipt_date=till_date,
        till_date=till_date,
        collection_amount=inr(amount),
        **kwargs
    )


class TestQuote:
    """Quotes are read-only previews of the open period"""

    def setup_method(self):
        """Set up test fixtures"""
        self.engine = LedgerEngine(AccrualCalculator())
        self.loan = make_loan()

    def test_first_period_quote(self):
        quote = self.engine.quote(self.loan, date(2024, 1, 31))

        assert quote.from_date == date(2024, 1, 1)
        assert quote.days_calculated == 30
        assert quote.outstanding_principal == inr('50000')
        assert quote.accrued_interest == inr('986.30')
        assert quote.outstanding_interest == inr('986.30')
        assert quote.total_payable == inr('50986.30')
        assert quote.min_calc_days_applied is False

    def test_quote_is_idempotent(self):
        first = self.engine.quote(self.loan, date(2024, 1, 31))
        second = self.engine.quote(self.loan, date(2024, 1, 31))

        assert first == second
        assert self.loan.ledger == []

    def test_quote_at_paid_through_date(self):
        """Already paid up to this date: zero interest, no error"""
        quote = self.engine.quote(self.loan, date(2024, 1, 1))

        assert quote.days_calculated == 0
        assert quote.accrued_interest == Money.zero()
        assert quote.already_settled

        before = self.engine.quote(self.loan, date(2023, 12, 1))
        assert before.days_calculated == 0
        assert before.outstanding_interest == Money.zero()

    def test_quote_after_commit_at_same_date(self):
        self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 31), '1000'))

        quote = self.engine.quote(self.loan, date(2024, 1, 31))
        assert quote.days_calculated == 0
        assert quote.outstanding_interest == Money.zero()
        assert quote.outstanding_principal == inr('49986.30')

    def test_min_days_on_first_period(self):
        loan = make_loan(rules=SchemeRules(InterestMethod.SIMPLE, Decimal('24'), min_calc_days=15))

        quote = self.engine.quote(loan, date(2024, 1, 6))
        assert quote.days_calculated == 5
        assert quote.accrued_interest == inr('493.15')
        assert quote.min_calc_days_applied is True

    def test_min_days_first_period_can_be_disabled(self):
        engine = LedgerEngine(AccrualCalculator(), apply_min_days_to_first_period=False)
        loan = make_loan(rules=SchemeRules(InterestMethod.SIMPLE, Decimal('24'), min_calc_days=15))

        quote = engine.quote(loan, date(2024, 1, 6))
        assert quote.accrued_interest == inr('164.38')
        assert quote.min_calc_days_applied is False

        # Later periods always honour the floor
        engine.commit(loan, make_receipt(loan, date(2024, 1, 6), '164.38'))
        later = engine.quote(loan, date(2024, 1, 11))
        assert later.accrued_interest == inr('493.15')
        assert later.min_calc_days_applied is True

    def test_carry_in_interest(self):
        """Unpaid interest carries into the next period without compounding"""
        self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 31), '500'))

        quote = self.engine.quote(self.loan, date(2024, 3, 1))
        assert quote.days_calculated == 30
        assert quote.accrued_interest == inr('986.30')
        assert quote.carry_in_interest == inr('486.30')
        assert quote.outstanding_interest == inr('1472.60')

    def test_advance_interest_credited_against_accrual(self):
        loan = make_loan(advance_interest=inr('1000'))

        quote = self.engine.quote(loan, date(2024, 1, 31))
        assert quote.advance_interest_applied == inr('986.30')
        assert quote.outstanding_interest == Money.zero()

        short = self.engine.quote(loan, date(2024, 1, 11))
        assert short.advance_interest_applied == short.accrued_interest

    def test_penalty_after_maturity(self):
        rules = SchemeRules(InterestMethod.SIMPLE, Decimal('24'), validity_months=1,
                            penalty_rate_percent=Decimal('12'))
        loan = make_loan(rules=rules)

        quote = self.engine.quote(loan, date(2024, 3, 2))
        assert quote.days_calculated == 61
        assert quote.accrued_interest == inr('2005.48')
        assert quote.penalty_interest == inr('493.15')
        assert quote.outstanding_interest == inr('2498.63')


class TestCommit:
    """Commits append exactly one period"""

    def setup_method(self):
        """Set up test fixtures"""
        self.engine = LedgerEngine(AccrualCalculator())
        self.loan = make_loan()

    def test_partial_payment(self):
        receipt = make_receipt(self.loan, date(2024, 1, 31), '1000')
        result = self.engine.commit(self.loan, receipt)
        period = result.period

        assert len(self.loan.ledger) == 1
        assert period.sequence == 1
        assert period.from_date == date(2024, 1, 1)
        assert period.to_date == date(2024, 1, 31)
        assert period.duration_days == 30
        assert period.interest_accrued == inr('986.30')
        assert period.interest_paid == inr('986.30')
        assert period.principal_paid == inr('13.70')
        assert period.closing_principal == inr('49986.30')
        assert period.balance_interest == Money.zero()

        assert receipt.period_id == period.id
        assert receipt.interest_paid == inr('986.30')
        assert receipt.principal_paid == inr('13.70')
        assert receipt.outstanding_principal_after == inr('49986.30')
        assert receipt.payment_type == PaymentType.PARTIAL
        assert self.loan.status == LoanStatus.OPEN
        assert self.loan.paid_through_date == date(2024, 1, 31)

    def test_same_till_date_twice(self):
        self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 31), '1000'))

        with pytest.raises(AlreadySettled, match="already settled"):
            self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 31), '1000'))
        assert len(self.loan.ledger) == 1

    def test_till_date_on_loan_date(self):
        with pytest.raises(AlreadySettled):
            self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 1), '100'))

    def test_full_settlement_closes_loan(self):
        result = self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 31), '50986.30'))

        assert result.allocation.is_settled
        assert result.receipt.payment_type == PaymentType.FULL
        assert self.loan.status == LoanStatus.CLOSED
        assert self.loan.closed_date == date(2024, 1, 31)

        with pytest.raises(LoanClosed):
            self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 2, 29), '1'))

    def test_overpayment(self):
        with pytest.raises(Overpayment, match="exceeds total outstanding"):
            self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 1, 31), '50986.31'))
        assert self.loan.ledger == []

    def test_payment_mode_mismatch(self):
        receipt = make_receipt(self.loan, date(2024, 1, 31), '1000', payment_modes=[
            PaymentMode(PaymentModeType.CASH, inr('600')),
            PaymentMode(PaymentModeType.UPI, inr('300')),
        ])
        with pytest.raises(PaymentModeMismatch):
            self.engine.commit(self.loan, receipt)
        assert self.loan.ledger == []

    def test_adjustments_fold_into_period(self):
        receipt = make_receipt(self.loan, date(2024, 1, 31), '886.30', other_credits=inr('100'))
        period = self.engine.commit(self.loan, receipt).period

        assert period.interest_accrued == inr('986.30')
        assert period.total_accrued == inr('886.30')
        assert period.interest_paid == inr('886.30')
        assert period.balance_interest == Money.zero()
        assert period.closing_principal == inr('50000')

    def test_principal_adjustments(self):
        receipt = make_receipt(self.loan, date(2024, 1, 31), '986.30',
                               added_principal=inr('5000'), adjusted_principal=inr('1000'))
        period = self.engine.commit(self.loan, receipt).period

        assert period.closing_principal == inr('54000')
        assert (period.closing_principal + period.principal_paid + period.adjusted_principal
                == period.opening_principal + period.added_principal)

    def test_adjusted_principal_cannot_exceed_outstanding(self):
        receipt = make_receipt(self.loan, date(2024, 1, 31), '0', adjusted_principal=inr('60000'))
        with pytest.raises(ValueError, match="exceeds outstanding principal"):
            self.engine.commit(self.loan, receipt)

    def test_receipt_for_other_loan(self):
        other = make_loan()
        with pytest.raises(ValueError, match="belongs to loan"):
            self.engine.commit(self.loan, make_receipt(other, date(2024, 1, 31), '100'))

    def test_advance_interest_runs_across_periods(self):
        """Three months prepaid at issuance cover the periods until used up"""
        loan = make_loan(advance_interest=inr('3000'))
        expected = [
            (date(2024, 1, 31), '986.30', '2013.70', '0.00'),
            (date(2024, 3, 1), '986.30', '1027.40', '0.00'),
            (date(2024, 3, 31), '986.30', '41.10', '0.00'),
            (date(2024, 4, 30), '41.10', '0.00', '945.20'),
        ]
        for till, applied, remaining, owed in expected:
            quote = self.engine.quote(loan, till)
            assert quote.advance_interest_applied == inr(applied)
            assert quote.advance_interest_remaining == inr(remaining)
            assert quote.outstanding_interest == inr(owed)

            period = self.engine.commit(loan, make_receipt(loan, till, owed)).period
            assert period.advance_interest_applied == inr(applied)
            assert period.advance_interest_remaining == inr(remaining)
            assert period.balance_interest == Money.zero()

        assert loan.advance_interest_remaining == Money.zero()
        assert loan.outstanding_principal == inr('50000')
        assert self.engine.quote(loan, date(2024, 5, 30)).advance_interest_applied == Money.zero()
        assert verify_ledger(loan) == []

    def test_reversal_restores_advance(self):
        loan = make_loan(advance_interest=inr('3000'))
        self.engine.commit(loan, make_receipt(loan, date(2024, 1, 31), '0'))
        second = make_receipt(loan, date(2024, 3, 1), '0')
        self.engine.commit(loan, second)
        assert loan.advance_interest_remaining == inr('1027.40')

        self.engine.reverse(loan, second.id)
        assert loan.advance_interest_remaining == inr('2013.70')

    def test_tampered_advance_is_reported(self):
        loan = make_loan(advance_interest=inr('1000'))
        self.engine.commit(loan, make_receipt(loan, date(2024, 1, 31), '0'))
        loan.ledger[0].advance_interest_remaining = inr('1000')

        problems = verify_ledger(loan)
        assert len(problems) == 1
        assert "remaining advance" in problems[0]

    def test_ledger_properties(self):
        """Conservation and contiguity over several receipts"""
        for till, amount in [(date(2024, 1, 31), '500'), (date(2024, 3, 1), '2000'),
                             (date(2024, 3, 20), '0'), (date(2024, 5, 1), '10000')]:
            self.engine.commit(self.loan, make_receipt(self.loan, till, amount))

        ledger = self.loan.ledger
        assert [p.sequence for p in ledger] == [1, 2, 3, 4]
        for previous, current in zip(ledger, ledger[1:]):
            assert previous.to_date == current.from_date
            assert previous.from_date < current.from_date
            assert previous.closing_principal == current.opening_principal
            assert previous.balance_interest == current.carry_in_interest
        for period in ledger:
            assert (period.closing_principal + period.principal_paid + period.adjusted_principal
                    == period.opening_principal + period.added_principal)
        assert verify_ledger(self.loan) == []


class TestReverse:
    """Only the last period can be reversed"""

    def setup_method(self):
        """Set up test fixtures"""
        self.engine = LedgerEngine(AccrualCalculator())
        self.loan = make_loan()
        self.first = make_receipt(self.loan, date(2024, 1, 31), '1000')
        self.second = make_receipt(self.loan, date(2024, 3, 1), '1000')
        self.engine.commit(self.loan, self.first)
        self.engine.commit(self.loan, self.second)

    def test_reverse_last_period(self):
        period = self.engine.reverse(self.loan, self.second.id)

        assert period.sequence == 2
        assert len(self.loan.ledger) == 1
        assert self.loan.paid_through_date == date(2024, 1, 31)

        # The reopened period can be committed again
        self.engine.commit(self.loan, make_receipt(self.loan, date(2024, 3, 1), '1000'))
        assert len(self.loan.ledger) == 2

    def test_reverse_non_terminal_period(self):
        with pytest.raises(NonTerminalReversal, match="only the last period"):
            self.engine.reverse(self.loan, self.first.id)
        assert len(self.loan.ledger) == 2

    def test_reverse_unknown_receipt(self):
        with pytest.raises(LoanNotFound):
            self.engine.reverse(self.loan, "missing")

    def test_reverse_closing_receipt_refused(self):
        balance = self.engine.quote(self.loan, date(2024, 3, 31)).total_payable
        closing = make_receipt(self.loan, date(2024, 3, 31), str(balance.amount))
        self.engine.commit(self.loan, closing)
        assert self.loan.status == LoanStatus.CLOSED

        with pytest.raises(InvalidLoanState):
            self.engine.reverse(self.loan, closing.id)


class TestSerialization:
    """Periods and receipts survive storage"""

    def test_period_and_receipt_round_trip(self):
        engine = LedgerEngine(AccrualCalculator())
        loan = make_loan()
        receipt = make_receipt(loan, date(2024, 1, 31), '1000', remarks="first", payment_modes=[
            PaymentMode(PaymentModeType.CASH, inr('1000'))
        ])
        result = engine.commit(loan, receipt)

        period = InterestPeriod.from_dict(result.period.to_dict())
        assert period == result.period

        restored = Receipt.from_dict(receipt.to_dict())
        assert restored.principal_paid == inr('13.70')
        assert restored.payment_modes[0].mode == PaymentModeType.CASH
        assert restored.payment_type == PaymentType.PARTIAL
        assert restored.remarks == "first"

    def test_period_conservation_is_validated(self):
        engine = LedgerEngine(AccrualCalculator())
        loan = make_loan()
        data = engine.commit(loan, make_receipt(loan, date(2024, 1, 31), '1000')).period.to_dict()
        data['closing_principal'] = '50000.00'

        with pytest.raises(ValueError, match="Closing principal"):
            InterestPeriod.from_dict(data)
