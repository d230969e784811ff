from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Server-side 'now' in UTC (naive, canonical)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_z(dt: Optional[datetime]) -> Optional[str]:
    """
    Serializes datetime to ISO-8601 with trailing 'Z'.
    If dt is naive, it is treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt_utc = dt.astimezone(timezone.utc).replace(microsecond=0)
    return dt_utc.isoformat().replace("+00:00", "Z")


def utc_day_window(days_ahead: int, now: Optional[datetime] = None) -> tuple[datetime, datetime]:
    """
    Return [start, end) of the UTC calendar day `days_ahead` days from now.

    Used by the reminder sweeps, which target whole days rather than an
    exact instant so a daily cron run never misses a subscription.
    """
    now = now or utcnow()
    start = (now + timedelta(days=days_ahead)).replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)
