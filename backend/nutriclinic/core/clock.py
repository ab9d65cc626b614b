"""Naive-UTC time helpers shared by persistence code."""

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
    return datetime.utcnow()


def as_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """PostgreSQL hands back aware datetimes, SQLite naive ones; compare naive."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt
