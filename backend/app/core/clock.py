"""UTC clock helpers. Timestamps are stored as naive UTC."""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_now_ms() -> datetime:
    """Current time as naive UTC, truncated to milliseconds."""
    now = utc_now()
    return now.replace(microsecond=now.microsecond - now.microsecond % 1000)


def to_naive_utc(value: datetime) -> datetime:
    """Convert an aware datetime to naive UTC; naive values pass through."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)
