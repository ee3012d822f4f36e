"""Datetime utilities with consistent UTC and epoch-millisecond handling.

Task records carry their instants as integer milliseconds since the Unix
epoch. This module centralizes conversion between those values and
timezone-aware datetimes so the rest of the package never deals with
naive datetimes.
"""

from datetime import datetime, timezone, tzinfo
from typing import Optional


MS_PER_SECOND = 1000
MS_PER_MINUTE = 60 * MS_PER_SECOND
MS_PER_HOUR = 60 * MS_PER_MINUTE
MS_PER_DAY = 24 * MS_PER_HOUR


def now_utc() -> datetime:
    """Return current datetime in UTC timezone.

    Returns:
        Current datetime with timezone=UTC
    """
    return datetime.now(timezone.utc)


def now_ms() -> int:
    """Return the current instant as milliseconds since the epoch."""
    return int(now_utc().timestamp() * MS_PER_SECOND)


def ensure_aware(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure datetime is timezone-aware, assuming UTC if naive.

    Args:
        dt: Datetime to check/convert, or None

    Returns:
        Timezone-aware datetime in UTC, or None if input was None
    """
    if dt is None:
        return None

    if dt.tzinfo is None:
        # Naive datetime - assume UTC
        return dt.replace(tzinfo=timezone.utc)

    return dt


def ms_to_datetime(value: Optional[int], tz: Optional[tzinfo] = None) -> Optional[datetime]:
    """Convert epoch milliseconds to an aware datetime.

    Args:
        value: Milliseconds since the epoch, or None
        tz: Target timezone; the system local zone when None

    Returns:
        Aware datetime, or None if input was None
    """
    if value is None:
        return None
    dt = datetime.fromtimestamp(value / MS_PER_SECOND, tz=timezone.utc)
    if tz is None:
        return dt.astimezone()
    return dt.astimezone(tz)


def datetime_to_ms(dt: datetime) -> int:
    """Convert a datetime to epoch milliseconds (naive values are UTC)."""
    return int(ensure_aware(dt).timestamp() * MS_PER_SECOND)


def to_iso_string(dt: Optional[datetime]) -> Optional[str]:
    """Convert datetime to ISO string with timezone info.

    Args:
        dt: Datetime to convert, or None

    Returns:
        ISO format string with timezone, or None if input was None
    """
    if dt is None:
        return None

    aware_dt = ensure_aware(dt)
    return aware_dt.isoformat()


def ms_to_iso_string(value: Optional[int]) -> Optional[str]:
    """Render epoch milliseconds as a UTC ISO-8601 string."""
    if value is None:
        return None
    return to_iso_string(ms_to_datetime(value, timezone.utc))
