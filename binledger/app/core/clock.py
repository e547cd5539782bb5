from __future__ import annotations

from datetime import datetime, timedelta, timezone


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    SQLite rend des datetimes naïfs (stockés en UTC) : on les ré-attache à UTC
    pour pouvoir les comparer aux valeurs aware du code.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hour_window(now: datetime) -> tuple[datetime, datetime]:
    """Start and end of the UTC calendar hour containing `now`."""
    start = as_utc(now).replace(minute=0, second=0, microsecond=0)
    return start, start + timedelta(hours=1)
