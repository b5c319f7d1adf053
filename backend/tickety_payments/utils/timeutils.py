"""Datetime helpers"""
from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def from_timestamp(ts) -> Optional[datetime]:
    """Convert a Stripe unix timestamp to an aware datetime"""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
