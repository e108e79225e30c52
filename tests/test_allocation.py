"""
Tests for interest-first payment allocation
"""

import pytest
from decimal import Decimal

from pledge_core.currency import Money
from pledge_core.allocation import (
    Adjustments, PaymentMode, PaymentModeType, PaymentType,
    allocate, classify_payment, validate_payment_modes
)
from pledge_core.exceptions import PaymentModeMismatch


def inr(amount: str) -> Money:
    return Money(Decimal(amount))


class TestAllocate:
    """Interest is paid first, the remainder reduces principal"""

    def test_partial_principal(self):
        """1,000 against 986.30 interest and 50,000 principal"""
        allocation = allocate(inr('986.30'), inr('50000'), inr('1000'))

        assert allocation.interest_due == inr('986.30')
        assert allocation.interest_paid == inr('986.30')
        assert allocation.principal_paid == inr('13.70')
        assert allocation.balance_interest == Money.zero()
        assert allocation.balance_principal == inr('49986.30')
        assert allocation.excess == Money.zero()
        assert allocation.payment_type == PaymentType.PARTIAL

    def test_exact_full_settlement(self):
        allocation = allocate(inr('986.30'), inr('50000'), inr('50986.30'))

        assert allocation.balance_interest == Money.zero()
        assert allocation.balance_principal == Money.zero()
        assert allocation.is_settled
        assert allocation.payment_type == PaymentType.FULL

    def test_interest_only(self):
        allocation = allocate(inr('986.30'), inr('50000'), inr('500'))

        assert allocation.interest_paid == inr('500')
        assert allocation.principal_paid == Money.zero()
        assert allocation.balance_interest == inr('486.30')
        assert allocation.balance_principal == inr('50000')
        assert classify_payment(allocation) == PaymentType.INTEREST

    def test_zero_collection(self):
        allocation = allocate(inr('986.30'), inr('50000'), Money.zero())

        assert allocation.interest_paid == Money.zero()
        assert allocation.balance_interest == inr('986.30')

    def test_excess_is_clamped_and_reported(self):
        allocation = allocate(inr('986.30'), inr('50000'), inr('60000'))

        assert allocation.principal_paid == inr('50000')
        assert allocation.balance_principal == Money.zero()
        assert allocation.excess == inr('9013.70')

    def test_negative_inputs_rejected(self):
        with pytest.raises(ValueError, match="Collection amount"):
            allocate(inr('986.30'), inr('50000'), inr('-1'))
        with pytest.raises(ValueError, match="Outstanding balances"):
            allocate(inr('-1'), inr('50000'), inr('1'))

    def test_interest_first_property(self):
        """interest_paid <= interest due, and principal moves only once interest is cleared"""
        for amount in ['0', '1', '500', '986.29', '986.30', '986.31', '1000', '25000', '50986.30']:
            allocation = allocate(inr('986.30'), inr('50000'), inr(amount))
            assert allocation.interest_paid <= allocation.interest_due
            if allocation.principal_paid.is_positive():
                assert allocation.interest_paid == allocation.interest_due
            assert allocation.interest_paid + allocation.principal_paid + allocation.excess == inr(amount)


class TestAdjustments:
    """Adjustments change interest due only"""

    def test_net_adjustments(self):
        adjustments = Adjustments(
            other_credits=inr('100'),
            other_debits=inr('50'),
            default_amount=inr('20'),
            add_less=inr('-6.30')
        )
        assert adjustments.net == inr('-36.30')

        allocation = allocate(inr('986.30'), inr('50000'), inr('1000'), adjustments)
        assert allocation.interest_due == inr('950.00')
        assert allocation.interest_paid == inr('950.00')
        assert allocation.principal_paid == inr('50.00')
        assert allocation.balance_principal == inr('49950.00')

    def test_credits_cannot_make_interest_negative(self):
        adjustments = Adjustments(inr('2000'), Money.zero(), Money.zero(), Money.zero())

        allocation = allocate(inr('986.30'), inr('50000'), inr('100'), adjustments)
        assert allocation.interest_due == Money.zero()
        assert allocation.principal_paid == inr('100')

    def test_no_adjustments_keeps_interest_due(self):
        allocation = allocate(inr('986.30'), inr('50000'), inr('100'), Adjustments.none())
        assert allocation.interest_due == inr('986.30')

    def test_negative_credit_rejected(self):
        with pytest.raises(ValueError, match="other_credits cannot be negative"):
            Adjustments(inr('-1'), Money.zero(), Money.zero(), Money.zero())


class TestPaymentModes:
    """Payment mode breakdown must add up to the collection"""

    def test_modes_sum_to_collection(self):
        modes = [
            PaymentMode(PaymentModeType.CASH, inr('600')),
            PaymentMode(PaymentModeType.UPI, inr('400'), reference="UPI-991"),
        ]
        validate_payment_modes(modes, inr('1000'))

    def test_mismatch(self):
        modes = [
            PaymentMode(PaymentModeType.CASH, inr('600')),
            PaymentMode(PaymentModeType.CHEQUE, inr('300')),
        ]
        with pytest.raises(PaymentModeMismatch, match="does not equal"):
            validate_payment_modes(modes, inr('1000'))

    def test_empty_breakdown_is_accepted(self):
        validate_payment_modes([], inr('1000'))

    def test_negative_mode_rejected(self):
        with pytest.raises(ValueError, match="cannot be negative"):
            PaymentMode(PaymentModeType.CASH, inr('-5'))
