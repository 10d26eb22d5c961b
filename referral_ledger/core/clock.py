from datetime import date, datetime, time, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalize a datetime to aware UTC.

    SQLite hands back naive datetimes for DateTime(timezone=True) columns;
    everything we store is UTC, so naive values are tagged rather than shifted.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of(value) -> datetime:
    """Period start: a bare date widens to 00:00:00 UTC."""
    if isinstance(value, datetime):
        return as_utc(value)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def end_of(value) -> datetime:
    """Period end: a bare date widens to the last microsecond of the day."""
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    raise TypeError(f"Expected date or datetime, got {type(value).__name__}")
