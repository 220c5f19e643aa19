"""
DateTime utility functions - All operations use UTC.
Database storage, internal operations, and API responses all use timezone-aware UTC.
"""
from datetime import datetime, timezone
from typing import Optional

UTC = timezone.utc


def to_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Ensure datetime is in UTC.
    If datetime is naive or in different timezone, convert to UTC.

    Args:
        dt: Datetime object (timezone-aware or naive)

    Returns:
        UTC datetime object, or None if input is None
    """
    if dt is None:
        return None

    # SQLite drops tzinfo on read; everything we store is UTC
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)

    return dt.astimezone(UTC)


def seconds_until(dt: Optional[datetime], now: datetime) -> int:
    """Whole seconds from `now` until `dt`, never negative."""
    target = to_utc(dt)
    if target is None:
        return 0
    return max(0, int((target - to_utc(now)).total_seconds()))


def now_utc() -> datetime:
    """
    Get current UTC datetime (timezone-aware).
    Use this for ALL datetime operations - database storage, internal operations, API responses.
    """
    return datetime.now(UTC)
