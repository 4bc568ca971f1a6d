"""
Money and Date Utilities

Integer-cents arithmetic and day-grain date helpers shared by every ledger
component. Amounts are always ``int`` cents; rates and percentages are Decimal.
NEVER uses float for monetary values.
"""

from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, getcontext
from datetime import date, datetime
from typing import Optional, Union
import calendar
import re

from .errors import InvalidAmount, InvalidDate

# Set global decimal context for financial precision
getcontext().prec = 28

PERIOD_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")

DateLike = Union[date, str]
RateLike = Union[Decimal, int, str]


def round_half_up(value: Decimal) -> int:
    """
    Round a Decimal to whole cents, half away from zero.

    This is the single rounding helper for the ledger: late fees and
    amortization interest must both go through it.
    """
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def to_decimal(value: RateLike) -> Decimal:
    """Convert a rate or percentage to Decimal without going through float"""
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise InvalidAmount(f"Invalid numeric value: {value!r}")
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise InvalidAmount(f"Invalid numeric value: {value!r}")


def validate_cents(amount, field_name: str = "amount", allow_zero: bool = False) -> int:
    """
    Validate an amount expressed in integer cents

    Args:
        amount: Value to validate
        field_name: Name used in the error message
        allow_zero: Accept 0 (for component amounts such as interest)

    Returns:
        The amount as int

    Raises:
        InvalidAmount: If the value is not an int, or is negative / not positive
    """
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{field_name} must be an integer number of cents",
                            {"field": field_name, "value": repr(amount)})
    if amount < 0 or (amount == 0 and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise InvalidAmount(f"{field_name} must be {qualifier}",
                            {"field": field_name, "value": amount})
    return amount


def percent_of(amount: int, percent: RateLike) -> int:
    """Percentage of an integer-cent amount, rounded half-up to cents"""
    return round_half_up(Decimal(amount) * to_decimal(percent) / Decimal("100"))


def format_cents(amount: int) -> str:
    """Format cents for display, e.g. 123456 -> '$1,234.56'"""
    sign = "-" if amount < 0 else ""
    dollars, cents = divmod(abs(amount), 100)
    return f"{sign}${dollars:,}.{cents:02d}"


def parse_date(value: DateLike, field_name: str = "date") -> date:
    """
    Parse a day-grain date from a date or ISO string

    Datetimes are truncated to their date. Strings may carry a time part
    ("2024-03-01T00:00:00Z"); only the calendar day is kept.

    Raises:
        InvalidDate: If the value is not a valid calendar day
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str) or not value:
        raise InvalidDate(f"{field_name} must be a date or ISO date string",
                          {"field": field_name, "value": repr(value)})
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        raise InvalidDate(f"{field_name} is not a valid calendar day: {value}",
                          {"field": field_name, "value": value})


def parse_optional_date(value: Optional[DateLike], field_name: str = "date") -> Optional[date]:
    if value is None:
        return None
    return parse_date(value, field_name)


def validate_period(period: str) -> str:
    """Validate a YYYY-MM billing period bucket"""
    match = PERIOD_PATTERN.match(period or "")
    if not match or not 1 <= int(match.group(2)) <= 12:
        raise InvalidDate(f"Period must be YYYY-MM, got {period!r}", {"field": "period"})
    return period


def period_for(day: date) -> str:
    """Billing period bucket for a day"""
    return f"{day.year:04d}-{day.month:02d}"


def days_between(start: date, end: date) -> int:
    """Whole days from start to end (negative if end is earlier)"""
    return (end - start).days


def add_months(start_date: date, months: int, day: Optional[int] = None) -> date:
    """
    Add months to a date, handling month-end edge cases

    Args:
        start_date: Date to move from
        months: Number of months to add
        day: Pin the result to this day of month (clamped to month end)
    """
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    target_day = day if day is not None else start_date.day
    target_day = min(target_day, calendar.monthrange(year, month)[1])
    return date(year, month, target_day)
