"""
Pydantic schemas for API requests

JSON field names are camelCase; money travels as a decimal string.
"""

from datetime import date
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from ..currency import Money, Currency, to_decimal
from ..schemes import SchemeRules
from ..allocation import PaymentMode, PaymentModeType


def parse_currency(code: str) -> Currency:
    try:
        return Currency[code.upper()]
    except KeyError:
        raise ValueError(f"Unsupported currency: {code}")


def parse_money(value: Optional[str], currency: Currency) -> Optional[Money]:
    if value is None:
        return None
    return Money(to_decimal(value), currency)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SchemeModel(CamelModel):
    method: str = Field(..., description="simple, compound, emi, multiple or customized")
    annual_rate_percent: str = Field(..., description="Annual rate in percent as string")
    min_calc_days: Optional[int] = None
    grace_days: Optional[int] = None
    compounding_frequency: Optional[str] = None
    penalty_rate_percent: Optional[str] = None
    penalty_grace_days: Optional[int] = None
    emi_tenure_months: Optional[int] = None
    advance_months: Optional[int] = None
    processing_fee_percent: Optional[str] = None
    validity_months: Optional[int] = None
    customized_style: Optional[str] = None

    def to_rules(self) -> SchemeRules:
        return SchemeRules.from_dict(self.model_dump(exclude_none=True))


class CreateLoanRequest(CamelModel):
    customer_id: str
    principal: str = Field(..., description="Decimal amount as string")
    currency: Optional[str] = Field(None, description="Defaults to the configured currency")
    loan_date: Optional[date] = None
    loan_number: Optional[str] = None
    scheme: SchemeModel


class PaymentModeModel(CamelModel):
    mode: str = Field(..., description="cash, cheque, transfer, upi or card")
    amount: str
    reference: Optional[str] = None

    def to_payment_mode(self, currency: Currency) -> PaymentMode:
        return PaymentMode(PaymentModeType(self.mode.lower()), parse_money(self.amount, currency),
                           self.reference)


class ReceiptRequest(CamelModel):
    till_date: date
    collection_amount: str
    receipt_date: Optional[date] = None
    other_credits: Optional[str] = None
    other_debits: Optional[str] = None
    default_amount: Optional[str] = None
    add_less: Optional[str] = None
    added_principal: Optional[str] = None
    adjusted_principal: Optional[str] = None
    payment_modes: List[PaymentModeModel] = []
    receipt_number: Optional[str] = None
    remarks: Optional[str] = None


class ChangeSchemeRequest(CamelModel):
    scheme: SchemeModel


class AuctionRequest(CamelModel):
    as_of: Optional[date] = None
