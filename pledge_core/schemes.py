"""
Scheme Rules Module

Immutable, resolved interest-policy parameters for one loan. Scheme master
data is owned elsewhere; this module parses it into SchemeRules and rejects
incomplete or inconsistent policies up front.
"""

from decimal import Decimal
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional
from enum import Enum
import re

from .currency import to_decimal
from .exceptions import ConfigurationError


class InterestMethod(Enum):
    """Interest calculation methods a scheme can select"""
    SIMPLE = "simple"
    COMPOUND = "compound"
    EMI = "emi"
    MULTIPLE = "multiple"        # Whole-month slabs with grace days
    CUSTOMIZED = "customized"    # House style chosen by customized_style


class CompoundingFrequency(Enum):
    """How often interest compounds"""
    DAILY = "daily"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    HALF_YEARLY = "half_yearly"
    YEARLY = "yearly"

    @property
    def periods_per_year(self) -> int:
        return {
            CompoundingFrequency.DAILY: 365,
            CompoundingFrequency.MONTHLY: 12,
            CompoundingFrequency.QUARTERLY: 4,
            CompoundingFrequency.HALF_YEARLY: 2,
            CompoundingFrequency.YEARLY: 1,
        }[self]


class CustomizedStyle(Enum):
    """House calculation styles for the CUSTOMIZED method"""
    VEL_BANKERS = "vel_bankers"   # Half-month slabs
    ACTUAL_360 = "actual_360"     # Actual days over a 360-day year


def _parse_enum(enum_cls, value: Any, field_name: str):
    if isinstance(value, enum_cls):
        return value
    if value is None:
        return None
    # Accept "Compound", "HALF_YEARLY", "half-yearly", "VelBankers" ...
    key = _normalize(str(value))
    for member in enum_cls:
        if key == _normalize(member.value):
            return member
    raise ConfigurationError(f"Unknown {field_name}: {value!r}")


def _normalize(text: str) -> str:
    return re.sub(r'[^a-z0-9]', '', text.lower())


@dataclass(frozen=True)
class SchemeRules:
    """
    Resolved interest policy for a loan.

    Rates are percentages (24 means 24% a year). Method-specific fields are
    required only for their method and validated in __post_init__.
    """
    method: InterestMethod
    annual_rate_percent: Decimal
    min_calc_days: int = 1
    grace_days: int = 0
    compounding_frequency: Optional[CompoundingFrequency] = None
    penalty_rate_percent: Decimal = Decimal('0')
    penalty_grace_days: int = 0
    emi_tenure_months: Optional[int] = None
    advance_months: int = 0
    processing_fee_percent: Decimal = Decimal('0')
    validity_months: int = 12
    customized_style: Optional[CustomizedStyle] = None

    def __post_init__(self):
        for name in ('annual_rate_percent', 'penalty_rate_percent', 'processing_fee_percent'):
            value = getattr(self, name)
            if not isinstance(value, Decimal):
                object.__setattr__(self, name, to_decimal(value))

        if not isinstance(self.method, InterestMethod):
            raise ConfigurationError(f"Unknown interest method: {self.method!r}")
        if self.annual_rate_percent <= Decimal('0'):
            raise ConfigurationError("Annual rate must be greater than zero")
        if self.min_calc_days < 1:
            raise ConfigurationError("Minimum calculation days must be at least 1")
        if self.grace_days < 0 or self.penalty_grace_days < 0:
            raise ConfigurationError("Grace days cannot be negative")
        if self.penalty_rate_percent < Decimal('0'):
            raise ConfigurationError("Penalty rate cannot be negative")
        if self.processing_fee_percent < Decimal('0'):
            raise ConfigurationError("Processing fee percent cannot be negative")
        if self.advance_months < 0:
            raise ConfigurationError("Advance months cannot be negative")
        if self.validity_months < 1:
            raise ConfigurationError("Validity must be at least one month")

        if self.method == InterestMethod.COMPOUND:
            if self.compounding_frequency is None:
                raise ConfigurationError("Compound method requires a compounding frequency")
        elif self.compounding_frequency is not None:
            raise ConfigurationError("Compounding frequency applies only to the compound method")

        if self.method == InterestMethod.EMI:
            if not self.emi_tenure_months or self.emi_tenure_months < 1:
                raise ConfigurationError("EMI method requires a tenure of at least one month")
        elif self.emi_tenure_months is not None:
            raise ConfigurationError("EMI tenure applies only to the EMI method")

        if self.method == InterestMethod.CUSTOMIZED:
            if self.customized_style is None:
                raise ConfigurationError("Customized method requires a customized style")
        elif self.customized_style is not None:
            raise ConfigurationError("Customized style applies only to the customized method")

    @property
    def annual_rate(self) -> Decimal:
        """Annual rate as a fraction (0.24 for 24%)"""
        return self.annual_rate_percent / Decimal('100')

    def with_changes(self, **changes) -> 'SchemeRules':
        return replace(self, **changes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'method': self.method.value,
            'annual_rate_percent': str(self.annual_rate_percent),
            'min_calc_days': self.min_calc_days,
            'grace_days': self.grace_days,
            'compounding_frequency': self.compounding_frequency.value if self.compounding_frequency else None,
            'penalty_rate_percent': str(self.penalty_rate_percent),
            'penalty_grace_days': self.penalty_grace_days,
            'emi_tenure_months': self.emi_tenure_months,
            'advance_months': self.advance_months,
            'processing_fee_percent': str(self.processing_fee_percent),
            'validity_months': self.validity_months,
            'customized_style': self.customized_style.value if self.customized_style else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SchemeRules':
        """
        Build rules from stored rules or from scheme master data.

        Both snake_case keys (as written by to_dict) and the scheme screen's
        camelCase keys (roi, calculationMethod, minCalcDays, emiTenure,
        advanceMonth, validityInMonths, customizedStyle, ...) are accepted.
        Fields that belong to another method are ignored, so a scheme record
        carrying the screen's defaults for every method still resolves.
        """
        def pick(*keys, default=None):
            for key in keys:
                if key in data and data[key] is not None and data[key] != '':
                    return data[key]
            return default

        method = _parse_enum(InterestMethod, pick('method', 'calculationMethod', 'calculation_method'),
                             "interest method")
        if method is None:
            raise ConfigurationError("Scheme does not name an interest method")

        frequency = None
        emi_tenure = None
        style = None
        if method == InterestMethod.COMPOUND:
            frequency = _parse_enum(CompoundingFrequency,
                                    pick('compounding_frequency', 'compoundingFrequency'),
                                    "compounding frequency")
        elif method == InterestMethod.EMI:
            tenure = pick('emi_tenure_months', 'emiTenure', 'emiTenureMonths')
            emi_tenure = int(tenure) if tenure is not None else None
        elif method == InterestMethod.CUSTOMIZED:
            style = _parse_enum(CustomizedStyle, pick('customized_style', 'customizedStyle'),
                                "customized style")

        rate = pick('annual_rate_percent', 'annualRatePercent', 'roi')
        if rate is None:
            raise ConfigurationError("Scheme does not define an interest rate")

        try:
            return cls(
                method=method,
                annual_rate_percent=to_decimal(rate),
                min_calc_days=int(pick('min_calc_days', 'minCalcDays', default=1)),
                grace_days=int(pick('grace_days', 'graceDays', default=0)),
                compounding_frequency=frequency,
                penalty_rate_percent=to_decimal(pick('penalty_rate_percent', 'penaltyRate',
                                                     'penaltyRatePercent', default='0')),
                penalty_grace_days=int(pick('penalty_grace_days', 'penaltyGraceDays', default=0)),
                emi_tenure_months=emi_tenure,
                advance_months=int(pick('advance_months', 'advanceMonth', 'advanceMonths', default=0)),
                processing_fee_percent=to_decimal(pick('processing_fee_percent', 'processingFeePercent',
                                                       default='0')),
                validity_months=int(pick('validity_months', 'validityInMonths', 'validityMonths',
                                         default=12)),
                customized_style=style,
            )
        except ConfigurationError:
            raise
        except (TypeError, ValueError) as e:
            raise ConfigurationError(f"Invalid scheme rules: {e}")
