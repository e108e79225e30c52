"""
Interest Accrual Module

Pure interest calculations for pledge loans: one accrual strategy per
scheme method, the minimum-calculation-days floor, the EMI amortization
schedule, post-maturity penalty interest, and the charges deducted at
disbursement (advance interest, processing fee).

All intermediate math is Decimal at 28 significant digits. Results are cut
to `precision` places and then rounded to paise with ROUND_HALF_UP.
"""

from decimal import Decimal, ROUND_HALF_UP, localcontext
from datetime import date, timedelta
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from .config import get_config
from .currency import Money, Currency, round_money
from .exceptions import ConfigurationError
from .maturity import add_months, months_between
from .schemes import SchemeRules, InterestMethod, CustomizedStyle


ZERO = Decimal('0')
ONE = Decimal('1')
TWELVE = Decimal('12')


@dataclass(frozen=True)
class AccrualResult:
    """Outcome of one accrual: natural duration and the interest owed"""
    duration_days: int
    interest: Money
    min_days_applied: bool = False

    def as_tuple(self) -> Tuple[int, Money]:
        return self.duration_days, self.interest


@dataclass
class EmiScheduleEntry:
    """Single installment in an EMI amortization schedule"""
    number: int
    due_date: date
    installment: Money
    interest: Money
    principal: Money
    balance: Money

    def __post_init__(self):
        calculated = self.interest + self.principal
        if abs(calculated.amount - self.installment.amount) > Decimal('0.01'):
            raise ValueError(f"Installment {self.installment.to_string()} does not equal "
                             f"principal {self.principal.to_string()} + "
                             f"interest {self.interest.to_string()}")


@dataclass
class EmiSchedule:
    """
    Amortization table built once when an EMI loan is created.

    Cumulative interest after k installments equals EMI*k minus the
    principal amortized by then; a partially elapsed month is prorated by
    the fraction of that calendar month that has passed.
    """
    start_date: date
    principal: Money
    installment: Money
    entries: List[EmiScheduleEntry] = field(default_factory=list)

    @property
    def tenure_months(self) -> int:
        return len(self.entries)

    @property
    def end_date(self) -> date:
        return self.entries[-1].due_date if self.entries else self.start_date

    def _position(self, on_date: date) -> Tuple[int, Decimal]:
        """Whole installments elapsed at on_date and the fraction of the next one"""
        if on_date <= self.start_date:
            return 0, ZERO
        whole = months_between(self.start_date, on_date)
        if whole >= self.tenure_months:
            return self.tenure_months, ZERO
        anchor = add_months(self.start_date, whole)
        following = add_months(self.start_date, whole + 1)
        fraction = Decimal((on_date - anchor).days) / Decimal((following - anchor).days)
        return whole, fraction

    def cumulative_interest(self, on_date: date) -> Decimal:
        whole, fraction = self._position(on_date)
        total = sum((entry.interest.amount for entry in self.entries[:whole]), ZERO)
        if fraction and whole < self.tenure_months:
            total += self.entries[whole].interest.amount * fraction
        return total

    def scheduled_balance(self, on_date: date) -> Decimal:
        """Principal the schedule expects to be outstanding at on_date"""
        whole, _ = self._position(on_date)
        if whole == 0:
            return self.principal.amount
        return self.entries[whole - 1].balance.amount

    def to_dict(self) -> Dict:
        currency = self.principal.currency.code
        return {
            'start_date': self.start_date.isoformat(),
            'principal': str(self.principal.amount),
            'installment': str(self.installment.amount),
            'currency': currency,
            'entries': [
                {
                    'number': entry.number,
                    'due_date': entry.due_date.isoformat(),
                    'installment': str(entry.installment.amount),
                    'interest': str(entry.interest.amount),
                    'principal': str(entry.principal.amount),
                    'balance': str(entry.balance.amount),
                }
                for entry in self.entries
            ]
        }

    @classmethod
    def from_dict(cls, data: Dict) -> 'EmiSchedule':
        currency = Currency[data['currency']]

        def money(value: str) -> Money:
            return Money(Decimal(value), currency)

        return cls(
            start_date=date.fromisoformat(data['start_date']),
            principal=money(data['principal']),
            installment=money(data['installment']),
            entries=[
                EmiScheduleEntry(
                    number=entry['number'],
                    due_date=date.fromisoformat(entry['due_date']),
                    installment=money(entry['installment']),
                    interest=money(entry['interest']),
                    principal=money(entry['principal']),
                    balance=money(entry['balance']),
                )
                for entry in data['entries']
            ]
        )


def emi_installment(principal: Decimal, annual_rate_percent: Decimal, tenure_months: int) -> Decimal:
    """Standard amortization formula: P * [i(1+i)^n] / [(1+i)^n - 1]"""
    monthly_rate = annual_rate_percent / Decimal('100') / TWELVE
    if monthly_rate == ZERO:
        return principal / Decimal(tenure_months)
    factor = (ONE + monthly_rate) ** tenure_months
    return principal * (monthly_rate * factor) / (factor - ONE)


def build_emi_schedule(principal: Money, rules: SchemeRules, start_date: date) -> EmiSchedule:
    """
    Generate the equal-installment schedule for an EMI scheme.

    Raises:
        ConfigurationError: If the rules are not for the EMI method
    """
    if rules.method != InterestMethod.EMI:
        raise ConfigurationError(f"EMI schedule requested for {rules.method.value} scheme")

    currency = principal.currency
    tenure = rules.emi_tenure_months
    monthly_rate = rules.annual_rate / TWELVE
    installment = Money(emi_installment(principal.amount, rules.annual_rate_percent, tenure), currency)

    entries = []
    remaining = principal
    for number in range(1, tenure + 1):
        interest = Money(remaining.amount * monthly_rate, currency)
        principal_part = installment - interest
        payment = installment

        # Final installment clears whatever rounding left behind
        if number == tenure or principal_part > remaining:
            principal_part = remaining
            payment = principal_part + interest

        remaining = remaining - principal_part
        entries.append(EmiScheduleEntry(
            number=number,
            due_date=add_months(start_date, number),
            installment=payment,
            interest=interest,
            principal=principal_part,
            balance=remaining
        ))

    return EmiSchedule(start_date=start_date, principal=principal,
                       installment=installment, entries=entries)


@dataclass(frozen=True)
class AccrualWindow:
    """Inputs a strategy sees: opening principal and the date range"""
    principal: Decimal
    from_date: date
    to_date: date
    year_days: Decimal
    schedule: Optional[EmiSchedule] = None

    @property
    def days(self) -> int:
        return (self.to_date - self.from_date).days

    def extended_to(self, days: int) -> 'AccrualWindow':
        return AccrualWindow(self.principal, self.from_date, self.from_date + timedelta(days=days),
                             self.year_days, self.schedule)


AccrualStrategy = Callable[[AccrualWindow, SchemeRules], Decimal]


def simple_interest(window: AccrualWindow, rules: SchemeRules) -> Decimal:
    return window.principal * rules.annual_rate * Decimal(window.days) / window.year_days


def compound_interest(window: AccrualWindow, rules: SchemeRules) -> Decimal:
    periods_per_year = Decimal(rules.compounding_frequency.periods_per_year)
    periodic_rate = rules.annual_rate / periods_per_year
    periods = Decimal(window.days) / window.year_days * periods_per_year
    return window.principal * ((ONE + periodic_rate) ** periods - ONE)


def emi_interest(window: AccrualWindow, rules: SchemeRules) -> Decimal:
    schedule = window.schedule
    if schedule is None:
        schedule = build_emi_schedule(Money(window.principal), rules, window.from_date)

    scheduled_to = min(window.to_date, schedule.end_date)
    interest = ZERO
    if scheduled_to > window.from_date:
        interest = schedule.cumulative_interest(scheduled_to) - schedule.cumulative_interest(window.from_date)
        # Borrower ahead of schedule owes interest on what is actually outstanding
        expected = schedule.scheduled_balance(window.from_date)
        if expected > ZERO and window.principal < expected:
            interest = interest * window.principal / expected

    # Past the last installment the unpaid principal accrues simple interest
    overrun_from = max(window.from_date, schedule.end_date)
    if window.to_date > overrun_from:
        overrun = AccrualWindow(window.principal, overrun_from, window.to_date, window.year_days)
        interest += simple_interest(overrun, rules)
    return interest


def _slab_count(days: int, slab_days: int, grace_days: int) -> int:
    slabs, remainder = divmod(days, slab_days)
    if remainder > grace_days:
        slabs += 1
    return slabs


def multiple_interest(window: AccrualWindow, rules: SchemeRules) -> Decimal:
    """Whole 30-day months; a remainder beyond grace days bills another month"""
    months = _slab_count(window.days, 30, rules.grace_days)
    return window.principal * rules.annual_rate / TWELVE * Decimal(months)


def vel_bankers_interest(window: AccrualWindow, rules: SchemeRules) -> Decimal:
    """Half-month (15-day) slabs; a remainder beyond grace days bills another slab"""
    slabs = _slab_count(window.days, 15, rules.grace_days)
    return window.principal * rules.annual_rate / Decimal('24') * Decimal(slabs)


def actual_360_interest(window: AccrualWindow, rules: SchemeRules) -> Decimal:
    return window.principal * rules.annual_rate * Decimal(window.days) / Decimal('360')


DEFAULT_STRATEGIES: Dict[InterestMethod, AccrualStrategy] = {
    InterestMethod.SIMPLE: simple_interest,
    InterestMethod.COMPOUND: compound_interest,
    InterestMethod.EMI: emi_interest,
    InterestMethod.MULTIPLE: multiple_interest,
}

DEFAULT_CUSTOMIZED_STYLES: Dict[CustomizedStyle, AccrualStrategy] = {
    CustomizedStyle.VEL_BANKERS: vel_bankers_interest,
    CustomizedStyle.ACTUAL_360: actual_360_interest,
}


class AccrualCalculator:
    """
    Dispatches accrual to the strategy registered for the scheme's method
    and applies the minimum-calculation-days floor uniformly.
    """

    def __init__(self, days_in_year: int = 365, precision: int = 6):
        self.year_days = Decimal(days_in_year)
        self.precision = max(precision, 6)
        self._strategies: Dict[InterestMethod, AccrualStrategy] = dict(DEFAULT_STRATEGIES)
        self._customized_styles: Dict[CustomizedStyle, AccrualStrategy] = dict(DEFAULT_CUSTOMIZED_STYLES)

    def register_strategy(self, method: InterestMethod, strategy: AccrualStrategy) -> None:
        self._strategies[method] = strategy

    def register_customized_style(self, style: CustomizedStyle, strategy: AccrualStrategy) -> None:
        self._customized_styles[style] = strategy

    def strategy_for(self, rules: SchemeRules) -> AccrualStrategy:
        """
        Resolve the strategy for a scheme.

        Raises:
            ConfigurationError: If nothing is registered for the method or style
        """
        if rules.method == InterestMethod.CUSTOMIZED:
            strategy = self._customized_styles.get(rules.customized_style)
            if strategy is None:
                raise ConfigurationError(f"No accrual strategy for customized style {rules.customized_style}")
            return strategy

        strategy = self._strategies.get(rules.method)
        if strategy is None:
            raise ConfigurationError(f"No accrual strategy for method {rules.method.value}")
        return strategy

    def accrue(
        self,
        opening_principal: Money,
        rules: SchemeRules,
        from_date: date,
        to_date: date,
        schedule: Optional[EmiSchedule] = None,
        apply_min_days: bool = True
    ) -> AccrualResult:
        """
        Interest accrued on opening_principal between from_date and to_date.

        A non-positive duration returns (0, 0): the loan is already paid up
        to to_date. When 0 < days < rules.min_calc_days the interest is the
        larger of the natural figure and the figure for min_calc_days.
        """
        currency = opening_principal.currency
        strategy = self.strategy_for(rules)
        duration_days = (to_date - from_date).days

        if duration_days <= 0:
            return AccrualResult(0, Money.zero(currency))
        if not opening_principal.is_positive():
            return AccrualResult(duration_days, Money.zero(currency))

        window = AccrualWindow(
            principal=opening_principal.amount,
            from_date=from_date,
            to_date=to_date,
            year_days=self.year_days,
            schedule=schedule
        )

        with localcontext() as ctx:
            ctx.prec = 28
            interest = strategy(window, rules)
            min_days_applied = False

            if apply_min_days and 0 < duration_days < rules.min_calc_days:
                floor = strategy(window.extended_to(rules.min_calc_days), rules)
                if floor > interest:
                    interest = floor
                    min_days_applied = True

            interest = self._round(interest, currency)

        return AccrualResult(duration_days, Money(interest, currency), min_days_applied)

    def penalty_interest(
        self,
        opening_principal: Money,
        rules: SchemeRules,
        from_date: date,
        to_date: date,
        maturity_date: Optional[date]
    ) -> Money:
        """
        Extra interest for the part of a period that runs past
        maturity_date + penalty_grace_days, at the scheme's penalty rate.
        """
        currency = opening_principal.currency
        if maturity_date is None or rules.penalty_rate_percent <= ZERO or not opening_principal.is_positive():
            return Money.zero(currency)

        penalty_start = max(from_date, maturity_date + timedelta(days=rules.penalty_grace_days))
        days = (to_date - penalty_start).days
        if days <= 0:
            return Money.zero(currency)

        raw = (opening_principal.amount * rules.penalty_rate_percent / Decimal('100')
               * Decimal(days) / self.year_days)
        return Money(self._round(raw, currency), currency)

    def advance_interest(self, principal: Money, rules: SchemeRules) -> Money:
        """Interest collected upfront for the scheme's advance months"""
        raw = principal.amount * rules.annual_rate / TWELVE * Decimal(rules.advance_months)
        return Money(self._round(raw, principal.currency), principal.currency)

    def processing_fee(self, principal: Money, rules: SchemeRules) -> Money:
        raw = principal.amount * rules.processing_fee_percent / Decimal('100')
        return Money(self._round(raw, principal.currency), principal.currency)

    def _round(self, value: Decimal, currency: Currency) -> Decimal:
        value = value.quantize(Decimal(1).scaleb(-self.precision), rounding=ROUND_HALF_UP)
        return round_money(value, currency)


def create_calculator() -> AccrualCalculator:
    """Calculator configured from PledgeConfig"""
    config = get_config()
    return AccrualCalculator(days_in_year=config.days_in_year,
                             precision=config.interest_calculation_precision)
