"""Centralized datetime utilities for consistent timezone handling.

All functions return naive UTC datetimes for database compatibility
(SQLAlchemy models store naive UTC). The countdown evaluator never reads
the clock itself; callers obtain `now` here and pass it in.

Usage:
    from app.core.datetime_utils import utc_now, to_naive_utc

    now = utc_now()
    countdown = evaluate(switch.last_check_in, switch.frequency_days, now)
"""

from datetime import UTC, datetime, timedelta


def utc_now() -> datetime:
    """Get current UTC time as naive datetime.

    Replaces deprecated datetime.utcnow().
    """
    return datetime.now(UTC).replace(tzinfo=None)


def to_naive_utc(dt: datetime) -> datetime:
    """Convert a datetime to naive UTC.

    Args:
        dt: Datetime to convert (aware, or naive assumed to be UTC)

    Returns:
        Naive UTC datetime for database compatibility
    """
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(UTC).replace(tzinfo=None)


def to_aware_utc(dt: datetime | None) -> datetime | None:
    """Attach UTC tzinfo to a naive UTC datetime for API responses."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def get_cutoff(hours: int = 0, minutes: int = 0, now: datetime | None = None) -> datetime:
    """Get cutoff datetime for filtering queries.

    Args:
        hours: Hours to subtract
        minutes: Minutes to subtract
        now: Reference time, defaults to the current time

    Returns:
        Naive UTC datetime representing the cutoff point
    """
    reference = to_naive_utc(now) if now is not None else utc_now()
    return reference - timedelta(hours=hours, minutes=minutes)
