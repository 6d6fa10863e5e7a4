"""
Timestamp utilities for consistent time handling across the system.

Timestamps are stored in backend metadata as integer epoch milliseconds so they can be
range-filtered and sorted; in memory they are timezone-aware UTC datetimes.
"""

from datetime import datetime, timezone
from typing import Optional, Union


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def to_millis(value: Optional[datetime] = None) -> int:
    """Convert a datetime to epoch milliseconds.

    Args:
        value: datetime to convert (optional, uses current time if None)

    Returns:
        Milliseconds since the epoch
    """
    if value is None:
        value = utc_now()
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def from_millis(value: Union[int, float, str, None]) -> datetime:
    """Convert epoch milliseconds (or an ISO-8601 string) to an aware UTC datetime."""
    if value is None or value == '':
        return datetime.fromtimestamp(0, tz=timezone.utc)
    if isinstance(value, str):
        try:
            value = float(value)
        except ValueError:
            parsed = datetime.fromisoformat(value)
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(float(value) / 1000.0, tz=timezone.utc)
