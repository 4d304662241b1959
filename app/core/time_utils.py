"""
Timestamp helpers.

All persisted timestamps are naive UTC so comparisons behave the same on
PostgreSQL and SQLite.
"""
from datetime import datetime, timezone


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 string (with or without 'Z') to naive UTC; None if unparsable"""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return to_naive_utc(parsed)


def isoformat_z(value: datetime) -> str:
    """Stable ISO representation of a naive UTC timestamp"""
    return to_naive_utc(value).isoformat(timespec="milliseconds") + "Z"
