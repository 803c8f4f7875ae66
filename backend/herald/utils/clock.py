"""
Time helpers.

All persisted timestamps are naive UTC so that SQLite round-trips compare
cleanly with values produced in Python.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware or naive datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def isoformat_utc(value: datetime) -> str:
    """RFC3339 rendering of a naive UTC datetime."""
    return value.replace(tzinfo=timezone.utc).isoformat(timespec="seconds")
