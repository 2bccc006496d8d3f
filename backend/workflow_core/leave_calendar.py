"""
Leave-day and fiscal-year arithmetic shared by the HR workflow types.
"""

from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Optional, Union

from .errors import ValidationError

DateLike = Union[date, datetime, str]

HALF_DAY = Decimal('0.5')


def as_date(value: DateLike, field_name: str = "date") -> date:
    """Accept date, datetime or ISO string and return a date."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            raise ValidationError(f"'{field_name}' is not an ISO date: {value!r}")
    raise ValidationError(f"'{field_name}' is required")


def calculate_leave_days(
    start_date: DateLike,
    end_date: DateLike,
    is_half_day: bool = False,
    exclude_weekends: bool = True
) -> Decimal:
    """
    Number of leave days in the inclusive range [start_date, end_date].

    Saturdays and Sundays are skipped unless exclude_weekends is False.
    A half day counts 0.5 and is only valid for a single date.
    """
    start = as_date(start_date, "start_date")
    end = as_date(end_date, "end_date")

    if end < start:
        raise ValidationError("end_date cannot be before start_date")

    if is_half_day:
        if start != end:
            raise ValidationError("Half-day leave can only be for a single day")
        return HALF_DAY

    days = 0
    current = start
    while current <= end:
        # weekday(): 5 = Saturday, 6 = Sunday
        if not exclude_weekends or current.weekday() < 5:
            days += 1
        current += timedelta(days=1)

    return Decimal(days)


def fiscal_year_for(value: DateLike) -> int:
    """Fiscal year runs Jan 1 - Dec 31."""
    return as_date(value).year


def days_until(target: DateLike, today: Optional[date] = None) -> int:
    """Whole calendar days from today until target (negative once passed)."""
    today = today or datetime.utcnow().date()
    return (as_date(target) - today).days
