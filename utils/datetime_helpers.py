"""
Datetime helper utilities to ensure consistent timezone handling across the application.

All persisted timestamps are timezone-naive UTC (DateTime(timezone=False)).
"""

from datetime import datetime, timezone
from typing import Optional


def ensure_naive_datetime(dt: Optional[datetime]) -> Optional[datetime]:
    """
    Convert timezone-aware datetime to naive UTC datetime.

    Example:
        >>> aware_dt = datetime.now(timezone.utc)
        >>> assert ensure_naive_datetime(aware_dt).tzinfo is None
    """
    if dt is None:
        return None

    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)

    return dt


def utcnow() -> datetime:
    """Current UTC time without timezone info"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def unix_timestamp(dt: datetime) -> int:
    """Seconds since epoch for a naive UTC datetime"""
    return int(dt.replace(tzinfo=timezone.utc).timestamp())
