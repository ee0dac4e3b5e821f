"""UTC time helpers"""
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to aware UTC (SQLite hands back naive values)"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_unix(ts) -> Optional[datetime]:
    """Provider timestamps are integer seconds since the epoch"""
    if ts is None:
        return None
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)
