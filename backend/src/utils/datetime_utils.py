"""
Datetime utilities for consistent timezone handling across the application.

All business rules ("today", advance notice before a session, FIFO ordering of
bookings) are evaluated against the clinic's local wall clock, which is a
fixed UTC offset configured by CLINIC_UTC_OFFSET_MINUTES.
"""

import logging
from datetime import datetime, timezone, timedelta, date, time
from typing import Optional

from core.config import CLINIC_UTC_OFFSET_MINUTES

logger = logging.getLogger(__name__)

CLINIC_TZ = timezone(timedelta(minutes=CLINIC_UTC_OFFSET_MINUTES))


def clinic_now() -> datetime:
    """
    Get the current clinic-local datetime.

    Returns:
        Current datetime with the clinic timezone attached
    """
    return datetime.now(CLINIC_TZ)


def clinic_today() -> date:
    """Get the current calendar date on the clinic wall clock."""
    return clinic_now().date()


def ensure_clinic_tz(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure a datetime is timezone-aware in the clinic timezone.

    Naive values are assumed to already be clinic-local (SQLite drops tzinfo
    on round trip); aware values are converted.

    Args:
        dt: Datetime to normalize

    Returns:
        Timezone-aware datetime in the clinic timezone, or None if input is None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        return dt.replace(tzinfo=CLINIC_TZ)
    return dt.astimezone(CLINIC_TZ)


def combine_local(day: date, clock: time) -> datetime:
    """Build an aware clinic-local datetime from a date and wall-clock time."""
    return datetime.combine(day, clock).replace(tzinfo=CLINIC_TZ)


def minutes_until(day: date, clock: time, now: Optional[datetime] = None) -> float:
    """
    Minutes from `now` until the wall-clock moment `day` at `clock`.

    Negative when that moment has already passed.
    """
    current = ensure_clinic_tz(now) if now is not None else clinic_now()
    assert current is not None
    return (combine_local(day, clock) - current).total_seconds() / 60


def sunday_based_weekday(day: date) -> int:
    """
    Weekday number with Sunday as 0 and Saturday as 6.

    Recurring templates store days_of_week in this convention, which differs
    from Python's Monday-first date.weekday().
    """
    return (day.weekday() + 1) % 7


def parse_date_string(date_str: str) -> date:
    """
    Parse a date string in YYYY-MM-DD format.

    Single-digit months and days are accepted and normalized.

    Args:
        date_str: Date string in YYYY-MM-DD format

    Returns:
        Date object

    Raises:
        ValueError: If the string is not a real calendar date
    """
    if not date_str or not date_str.strip():
        raise ValueError("Date string cannot be empty")

    parts = date_str.strip().split('-')
    if len(parts) != 3:
        raise ValueError(f"Invalid date format (expected YYYY-MM-DD): {date_str}")

    normalized = f"{parts[0].zfill(4)}-{parts[1].zfill(2)}-{parts[2].zfill(2)}"

    try:
        return datetime.strptime(normalized, '%Y-%m-%d').date()
    except ValueError as e:
        raise ValueError(f"Invalid date format (expected YYYY-MM-DD): {date_str}") from e


def format_date(day: date) -> str:
    """Format a date as YYYY-MM-DD."""
    return day.strftime('%Y-%m-%d')
