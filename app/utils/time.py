"""Time utilities (UTC now, tz normalisation, age formatting)."""
from __future__ import annotations
from datetime import datetime, timezone, timedelta

def utc_now() -> datetime:
    return datetime.now(timezone.utc)

def ensure_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat those as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)

def age_minutes(since: datetime, now: datetime | None = None) -> int:
    delta: timedelta = (now or utc_now()) - ensure_utc(since)
    return int(round(delta.total_seconds() / 60))

def isoformat(value: datetime | None) -> str | None:
    return ensure_utc(value).isoformat() if value is not None else None

__all__ = ["utc_now", "ensure_utc", "age_minutes", "isoformat"]
