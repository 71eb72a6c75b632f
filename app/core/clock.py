"""Time helpers shared by the core and the scheduler."""
from collections.abc import Callable
from datetime import UTC, datetime

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Default clock: the current instant in UTC."""
    return datetime.now(UTC)


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime.

    SQLite hands back naive datetimes even for timezone-aware columns; every
    value written by this app is UTC, so naive values are read as UTC.
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def day_start(value: datetime) -> datetime:
    """Midnight UTC on the day of ``value``; all-day events are stored this way."""
    return as_utc(value).replace(hour=0, minute=0, second=0, microsecond=0)
