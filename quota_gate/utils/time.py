"""Time utilities (epoch <-> UTC datetimes, billing month)."""
from __future__ import annotations
from datetime import datetime, timezone


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def from_epoch(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, tz=timezone.utc)


def billing_month(ts: float) -> str:
    """Billing month key ('YYYY-MM', UTC) for an epoch timestamp."""
    return from_epoch(ts).strftime("%Y-%m")


__all__ = ["utc_now", "from_epoch", "billing_month"]
