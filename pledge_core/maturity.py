"""
Maturity date calculation.

Calendar-month addition: the day of month is kept and clamped to the length
of the target month (31 Jan + 1 month = 28/29 Feb).
"""

from datetime import date
import calendar


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def calculate_maturity_date(loan_date: date, validity_months: int) -> date:
    """
    Maturity date of a loan: loan date plus the scheme's validity months.

    Raises:
        ValueError: If validity_months is less than 1
    """
    if validity_months < 1:
        raise ValueError("Validity must be at least one month")
    return add_months(loan_date, validity_months)


def months_between(start_date: date, end_date: date) -> int:
    """Whole calendar months from start_date to end_date (never negative)"""
    if end_date <= start_date:
        return 0
    months = (end_date.year - start_date.year) * 12 + (end_date.month - start_date.month)
    if add_months(start_date, months) > end_date:
        months -= 1
    return months
