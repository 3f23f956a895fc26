"""
UTC time helpers.

All period boundaries are computed on UTC calendar days.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Union


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are assumed to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def start_of_day(now: datetime) -> datetime:
    now = ensure_utc(now)
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_week(now: datetime) -> datetime:
    """Monday 00:00 UTC of the week containing ``now``."""
    day = start_of_day(now)
    return day - timedelta(days=day.weekday())


def start_of_month(now: datetime) -> datetime:
    return start_of_day(now).replace(day=1)


def to_db(value: datetime) -> str:
    """Fixed-width ISO-8601 text so lexical order equals time order."""
    return ensure_utc(value).isoformat(timespec="microseconds")


def from_db(value: str) -> datetime:
    return ensure_utc(datetime.fromisoformat(value))


def parse_timestamp(value: Union[str, int, float, None]) -> Optional[datetime]:
    """Parse a vendor timestamp (RFC 3339 text or unix seconds).

    Returns None when the value cannot be interpreted; callers decide on the
    fallback.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_utc(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None
