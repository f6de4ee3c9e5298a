"""Timestamp helpers"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Return an aware UTC datetime (SQLite hands back naive values)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix(ts) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware datetime"""
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
