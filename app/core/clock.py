from datetime import datetime, timezone
from typing import Callable

# All timestamps are stored as naive UTC, matching the DateTime columns.
Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an incoming datetime (aware or naive) to naive UTC"""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value
