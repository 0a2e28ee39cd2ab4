"""
Shared utility functions used throughout the scheduling codebase.

Provides:
    - utc_now(): Timezone-aware UTC datetime
    - ensure_utc(dt): Convert any datetime to timezone-aware UTC
    - parse_datetime(value): ISO-8601 string or datetime -> aware UTC datetime
    - to_epoch_ms(dt) / from_epoch_ms(ms): Redis sorted-set score conversion
    - exponential_backoff_ms(): Retry delay for the durable queue
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union


# ===========================================================================
# TIMEZONE UTILITIES
# All timestamps handled by the scheduler are timezone-aware UTC
# ===========================================================================


def utc_now() -> datetime:
    """
    Get current UTC time as timezone-aware datetime.

    ALWAYS use this instead of ``datetime.now()`` or ``datetime.utcnow()``
    so that delays computed against user-supplied times are never skewed
    by the host timezone.

    Returns:
        Timezone-aware datetime in UTC.
    """
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """
    Ensure a datetime is timezone-aware in UTC.

    Args:
        dt: Datetime to convert (naive or aware).

    Returns:
        Timezone-aware datetime in UTC.
    """
    if dt.tzinfo is None:
        # Assume naive datetime is UTC
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_datetime(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Parse an ISO-8601 string (or pass through a datetime) as aware UTC.

    A trailing ``Z`` is accepted, as produced by JavaScript's
    ``Date.toISOString()``.

    Args:
        value: ISO-8601 string, datetime, or ``None``.

    Returns:
        Timezone-aware UTC datetime, or ``None`` when *value* is ``None``
        or an empty string.

    Raises:
        ValueError: If *value* is a non-empty string that cannot be parsed.
        TypeError: If *value* is neither a string nor a datetime.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if not isinstance(value, str):
        raise TypeError(f"Expected ISO-8601 string or datetime, got {type(value).__name__}")

    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return ensure_utc(datetime.fromisoformat(text))


# ===========================================================================
# EPOCH CONVERSION
# Redis sorted-set scores and job timestamps are epoch milliseconds
# ===========================================================================

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def to_epoch_ms(dt: datetime) -> int:
    """Convert a datetime to integer epoch milliseconds."""
    return round(ensure_utc(dt).timestamp() * 1000)


def from_epoch_ms(ms: Union[int, float, str]) -> datetime:
    """Convert epoch milliseconds to an aware UTC datetime."""
    return _EPOCH + timedelta(milliseconds=int(float(ms)))


# ===========================================================================
# BACKOFF
# ===========================================================================


def exponential_backoff_ms(base_delay_ms: int, attempt: int) -> int:
    """
    Compute the exponential backoff delay for a retry attempt.

    Args:
        base_delay_ms: Delay before the first retry.
        attempt: 1-based number of the attempt that just failed.

    Returns:
        ``base_delay_ms * 2 ** (attempt - 1)`` in milliseconds.
    """
    return base_delay_ms * (2 ** (max(attempt, 1) - 1))
