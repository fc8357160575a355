"""Shared datetime utilities for Conductor.

All engine timestamps (execution start/finish, approval expiry, schedule
next-run times) are stored and compared as timezone-aware UTC datetimes.

Usage:
    from Conductor.Core.utils.datetime_helpers import TIMEZONE, now, parse_datetime

    current_time = now()
    dt = parse_datetime("2024-01-15T10:30:00+00:00")
"""
from datetime import datetime
from typing import Optional, Union

import pytz

TIMEZONE: pytz.BaseTzInfo = pytz.utc


def now() -> datetime:
    """
    Get current time in UTC.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(TIMEZONE)


def ensure_aware(dt: datetime) -> datetime:
    """Attach UTC to a naive datetime, leave aware datetimes alone."""
    if dt.tzinfo is None:
        return TIMEZONE.localize(dt)
    return dt


def parse_datetime(dt_str: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse a datetime string in various formats.

    Supports ISO 8601 (as produced by the database layer) and common
    database timestamp formats. Naive results are assumed to be UTC.

    Args:
        dt_str: The datetime string to parse.

    Returns:
        Parsed timezone-aware datetime, or None if parsing fails.
    """
    if dt_str is None:
        return None
    if isinstance(dt_str, datetime):
        return ensure_aware(dt_str)

    try:
        return ensure_aware(datetime.fromisoformat(dt_str))
    except ValueError:
        pass

    formats = [
        "%Y-%m-%dT%H:%M:%S.%f%z",
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%d %H:%M:%S %Z",
        "%Y-%m-%d %H:%M:%S.%f",
        "%Y-%m-%d %H:%M:%S"
    ]
    for fmt in formats:
        try:
            return ensure_aware(datetime.strptime(dt_str, fmt))
        except ValueError:
            continue
    return None


def isoformat(dt: Optional[datetime]) -> Optional[str]:
    """Serialize an optional datetime."""
    return dt.isoformat() if dt else None
