"""Small shared type helpers."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """
    Get current UTC time (timezone-aware).

    Default clock for circuit breakers and default_factory for SQLModel fields.
    """
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on round-trip)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
