"""
Loan endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .system import PledgeSystem, get_pledge_system
from .schemas import (
    CreateLoanRequest, ReceiptRequest, ChangeSchemeRequest, AuctionRequest, parse_currency, parse_money
)
from ..currency import Money
from ..interest import EmiSchedule
from ..ledger import InterestPeriod, InterestQuote, Receipt
from ..loans import LoanAccount


router = APIRouter()


def _money(money: Optional[Money]) -> Optional[str]:
    return str(money.amount) if money is not None else None


def _loan_summary(loan: LoanAccount, as_of: date) -> dict:
    return {
        "id": loan.id,
        "loanNumber": loan.loan_number,
        "customerId": loan.customer_id,
        "currency": loan.currency.code,
        "principal": _money(loan.principal),
        "outstandingPrincipal": _money(loan.outstanding_principal),
        "loanDate": loan.loan_date.isoformat(),
        "maturityDate": loan.maturity_date.isoformat(),
        "paidThroughDate": loan.paid_through_date.isoformat(),
        "status": loan.status_as_of(as_of).value,
        "advanceInterest": _money(loan.advance_interest),
        "advanceInterestRemaining": _money(loan.advance_interest_remaining),
        "processingFee": _money(loan.processing_fee),
        "netDisbursed": _money(loan.net_disbursed),
        "scheme": loan.scheme.to_dict(),
        "periods": len(loan.ledger),
    }


def _quote(quote: InterestQuote) -> dict:
    return {
        "fromDate": quote.from_date.isoformat(),
        "tillDate": quote.till_date.isoformat(),
        "daysCalculated": quote.days_calculated,
        "minCalcDaysApplied": quote.min_calc_days_applied,
        "outstandingPrincipal": _money(quote.outstanding_principal),
        "accruedInterest": _money(quote.accrued_interest),
        "penaltyInterest": _money(quote.penalty_interest),
        "carryInInterest": _money(quote.carry_in_interest),
        "advanceInterestApplied": _money(quote.advance_interest_applied),
        "advanceInterestRemaining": _money(quote.advance_interest_remaining),
        "outstandingInterest": _money(quote.outstanding_interest),
        "totalPayable": _money(quote.total_payable),
        "alreadySettled": quote.already_settled,
    }


def _period(period: InterestPeriod) -> dict:
    return {
        "id": period.id,
        "sequence": period.sequence,
        "receiptId": period.receipt_id,
        "fromDate": period.from_date.isoformat(),
        "toDate": period.to_date.isoformat(),
        "durationDays": period.duration_days,
        "openingPrincipal": _money(period.opening_principal),
        "interestAccrued": _money(period.interest_accrued),
        "penaltyAccrued": _money(period.penalty_accrued),
        "carryInInterest": _money(period.carry_in_interest),
        "advanceInterestApplied": _money(period.advance_interest_applied),
        "advanceInterestRemaining": _money(period.advance_interest_remaining),
        "totalAccrued": _money(period.total_accrued),
        "interestPaid": _money(period.interest_paid),
        "principalPaid": _money(period.principal_paid),
        "addedPrincipal": _money(period.added_principal),
        "adjustedPrincipal": _money(period.adjusted_principal),
        "closingPrincipal": _money(period.closing_principal),
        "balanceInterest": _money(period.balance_interest),
        "minDaysApplied": period.min_days_applied,
    }


def _receipt(receipt: Receipt) -> dict:
    return {
        "id": receipt.id,
        "receiptNumber": receipt.receipt_number,
        "receiptDate": receipt.receipt_date.isoformat(),
        "tillDate": receipt.till_date.isoformat(),
        "status": receipt.status.value,
        "paymentType": receipt.payment_type.value if receipt.payment_type else None,
        "collectionAmount": _money(receipt.collection_amount),
        "otherCredits": _money(receipt.other_credits),
        "otherDebits": _money(receipt.other_debits),
        "defaultAmount": _money(receipt.default_amount),
        "addLess": _money(receipt.add_less),
        "addedPrincipal": _money(receipt.added_principal),
        "adjustedPrincipal": _money(receipt.adjusted_principal),
        "interestPaid": _money(receipt.interest_paid),
        "principalPaid": _money(receipt.principal_paid),
        "outstandingPrincipalAfter": _money(receipt.outstanding_principal_after),
        "outstandingInterestAfter": _money(receipt.outstanding_interest_after),
        "paymentModes": [
            {"mode": mode.mode.value, "amount": _money(mode.amount), "reference": mode.reference}
            for mode in receipt.payment_modes
        ],
        "remarks": receipt.remarks,
    }


def _emi_schedule(schedule: EmiSchedule) -> dict:
    return {
        "startDate": schedule.start_date.isoformat(),
        "tenureMonths": schedule.tenure_months,
        "installment": _money(schedule.installment),
        "entries": [
            {
                "number": entry.number,
                "dueDate": entry.due_date.isoformat(),
                "installment": _money(entry.installment),
                "interest": _money(entry.interest),
                "principal": _money(entry.principal),
                "balance": _money(entry.balance),
            }
            for entry in schedule.entries
        ],
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Create a pledge loan"""
    currency = parse_currency(request.currency or system.config.default_currency)
    loan = system.loan_manager.create_loan(
        customer_id=request.customer_id,
        principal=parse_money(request.principal, currency),
        scheme=request.scheme.to_rules(),
        loan_date=request.loan_date,
        loan_number=request.loan_number
    )
    return _loan_summary(loan, date.today())


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Get loan details with status as of today"""
    loan = system.loan_manager.get_loan(loan_id)
    return _loan_summary(loan, date.today())


@router.get("/{loan_id}/quote")
async def get_quote(
    loan_id: str,
    till_date: date = Query(..., alias="tillDate"),
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Preview interest owed up to tillDate"""
    return _quote(system.loan_manager.quote(loan_id, till_date))


@router.post("/{loan_id}/receipts", status_code=status.HTTP_201_CREATED)
async def create_receipt(
    loan_id: str,
    request: ReceiptRequest,
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Record a receipt; interest is recomputed server-side"""
    currency = system.loan_manager.get_loan(loan_id).currency
    result = system.loan_manager.apply_receipt(
        loan_id=loan_id,
        till_date=request.till_date,
        collection_amount=parse_money(request.collection_amount, currency),
        receipt_date=request.receipt_date,
        other_credits=parse_money(request.other_credits, currency),
        other_debits=parse_money(request.other_debits, currency),
        default_amount=parse_money(request.default_amount, currency),
        add_less=parse_money(request.add_less, currency),
        added_principal=parse_money(request.added_principal, currency),
        adjusted_principal=parse_money(request.adjusted_principal, currency),
        payment_modes=[mode.to_payment_mode(currency) for mode in request.payment_modes],
        receipt_number=request.receipt_number,
        remarks=request.remarks
    )
    allocation = result.allocation
    return {
        "receipt": _receipt(result.receipt),
        "interestDue": _money(allocation.interest_due),
        "interestPaid": _money(allocation.interest_paid),
        "principalPaid": _money(allocation.principal_paid),
        "balanceInterest": _money(allocation.balance_interest),
        "balancePrincipal": _money(allocation.balance_principal),
        "paymentType": allocation.payment_type.value,
        "newLedgerPeriod": _period(result.period),
    }


@router.get("/{loan_id}/receipts")
async def list_receipts(
    loan_id: str,
    include_cancelled: bool = Query(True, alias="includeCancelled"),
    system: PledgeSystem = Depends(get_pledge_system)
):
    receipts = system.loan_manager.get_receipts(loan_id, include_cancelled=include_cancelled)
    return {"receipts": [_receipt(receipt) for receipt in receipts]}


@router.delete("/{loan_id}/receipts/{receipt_id}")
async def cancel_receipt(
    loan_id: str,
    receipt_id: str,
    reason: Optional[str] = None,
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Cancel the latest receipt and reopen its period"""
    receipt = system.loan_manager.cancel_receipt(loan_id, receipt_id, reason=reason)
    return {"receipt": _receipt(receipt), "message": "Receipt cancelled"}


@router.get("/{loan_id}/ledger")
async def get_ledger(
    loan_id: str,
    system: PledgeSystem = Depends(get_pledge_system)
):
    periods = system.loan_manager.get_ledger(loan_id)
    return {"periods": [_period(period) for period in periods]}


@router.get("/{loan_id}/emi-schedule")
async def get_emi_schedule(
    loan_id: str,
    system: PledgeSystem = Depends(get_pledge_system)
):
    return _emi_schedule(system.loan_manager.get_emi_schedule(loan_id))


@router.put("/{loan_id}/scheme")
async def change_scheme(
    loan_id: str,
    request: ChangeSchemeRequest,
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Replace the loan's scheme rules for the open period onward"""
    loan = system.loan_manager.change_scheme(loan_id, request.scheme.to_rules())
    return _loan_summary(loan, date.today())


@router.post("/{loan_id}/auction")
async def auction_loan(
    loan_id: str,
    request: AuctionRequest,
    system: PledgeSystem = Depends(get_pledge_system)
):
    """Record the auction of a matured loan"""
    as_of = request.as_of or date.today()
    loan = system.loan_manager.mark_auctioned(loan_id, as_of=as_of)
    return _loan_summary(loan, as_of)
