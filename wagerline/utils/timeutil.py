"""
Utility: naive-UTC timestamps.

All DateTime columns store naive UTC so SQLite and PostgreSQL compare the
same way.  Use these helpers instead of ``datetime.now()`` anywhere a value
is persisted or compared against a persisted value.
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
