"""Datetime normalization helpers."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

REBALANCE_INTERVALS = {
    "hourly": timedelta(hours=1),
    "daily": timedelta(days=1),
    "weekly": timedelta(days=7),
    "monthly": timedelta(days=30),
}


def now_utc() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def next_rebalance_time(frequency: str, start: datetime | None = None) -> datetime:
    """Add the configured rebalance interval to `start` (defaults to now)."""
    base = start or now_utc()
    return base + REBALANCE_INTERVALS.get(frequency, REBALANCE_INTERVALS["daily"])
