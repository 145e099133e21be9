"""
Wall-clock time arithmetic.

Schedules and appointments are expressed as "HH:MM" strings at the service
boundary and as minutes-since-midnight for arithmetic. Both directions are
exact inverses over a single day.
"""

import re
from datetime import datetime, time
from typing import Optional, Union

MINUTES_PER_DAY = 24 * 60

TIME_FORMAT_PATTERN = re.compile(r'^([01]?[0-9]|2[0-3]):[0-5][0-9]$')
DATE_FORMAT_PATTERN = re.compile(r'^\d{4}-\d{2}-\d{2}$')

TIME_FORMAT_HINT = "HH:MM format (24-hour). Example: 09:30, 14:45"
DATE_FORMAT_HINT = "YYYY-MM-DD format. Example: 2024-01-15"


def is_valid_time_format(value: str) -> bool:
    """Check that a value is a 24-hour HH:MM wall-clock string."""
    return isinstance(value, str) and TIME_FORMAT_PATTERN.match(value) is not None


def is_valid_date_format(value: str) -> bool:
    """Check that a value is YYYY-MM-DD and names a real calendar date."""
    if not isinstance(value, str) or DATE_FORMAT_PATTERN.match(value) is None:
        return False
    try:
        datetime.strptime(value, '%Y-%m-%d')
    except ValueError:
        return False
    return True


def to_minutes(value: Union[str, time]) -> int:
    """
    Convert "HH:MM" (or a time) to minutes since midnight.

    Raises:
        ValueError: If a string value is not a valid HH:MM time
    """
    if isinstance(value, time):
        return value.hour * 60 + value.minute
    if not is_valid_time_format(value):
        raise ValueError(f"Invalid time '{value}', expected {TIME_FORMAT_HINT}")
    hours, minutes = value.split(':')
    return int(hours) * 60 + int(minutes)


def from_minutes(total: int) -> str:
    """
    Convert minutes since midnight to a zero-padded "HH:MM" string.

    Raises:
        ValueError: If the value falls outside a single day
    """
    if total < 0 or total >= MINUTES_PER_DAY:
        raise ValueError(f"Minutes out of range for a single day: {total}")
    return f"{total // 60:02d}:{total % 60:02d}"


def parse_time_string(value: str) -> time:
    """Parse "HH:MM" into a time object."""
    minutes = to_minutes(value)
    return time(minutes // 60, minutes % 60)


def format_time(value: time) -> str:
    """Format a time object as zero-padded "HH:MM"."""
    return f"{value.hour:02d}:{value.minute:02d}"


def normalize_time_string(value: str) -> str:
    """Canonicalize "9:05" to "09:05"."""
    return from_minutes(to_minutes(value))


def overlaps(start_a: int, end_a: int, start_b: int, end_b: int) -> bool:
    """Half-open interval overlap test on minute values."""
    return start_a < end_b and end_a > start_b


def time_string_validator(value: Optional[str]) -> Optional[str]:
    """
    Pydantic field validator body for optional "HH:MM" request fields.

    Returns the zero-padded form so services always see "09:05", never "9:05".
    """
    if value is None:
        return None
    if not is_valid_time_format(value):
        raise ValueError(f"Invalid time '{value}', expected {TIME_FORMAT_HINT}")
    return normalize_time_string(value)
