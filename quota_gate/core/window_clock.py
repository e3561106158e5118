"""Window clock: maps an epoch timestamp to fixed-window bucket keys.

Pure arithmetic, no state. ``now`` is always passed in so callers (and tests)
control time. Buckets are aligned to the Unix epoch:

    bucket_index = floor(now / granularity_seconds)

A counter key embeds its bucket index, so a window "resets" simply because the
next bucket uses a different key; the old key is left to expire in the store.
"""
from __future__ import annotations

import math
from typing import NamedTuple

from quota_gate.models.db.enums import Granularity
from quota_gate.utils.time import billing_month as _billing_month

DEFAULT_PREFIX = "quota"
ADMISSION_WINDOWS: tuple[Granularity, ...] = (Granularity.MINUTE, Granularity.HOUR, Granularity.DAY)


class WindowKey(NamedTuple):
    tenant_id: str
    granularity: Granularity
    bucket_index: int

    def render(self, prefix: str = DEFAULT_PREFIX) -> str:
        return f"{prefix}:{self.tenant_id}:{self.granularity.value}:{self.bucket_index}"


def bucket_index(granularity: Granularity, now: float) -> int:
    return int(math.floor(now / granularity.seconds))


def window_key(tenant_id: str, granularity: Granularity, now: float) -> WindowKey:
    return WindowKey(tenant_id, granularity, bucket_index(granularity, now))


def bucket_key(tenant_id: str, granularity: Granularity, now: float, prefix: str = DEFAULT_PREFIX) -> str:
    return window_key(tenant_id, granularity, now).render(prefix)


def next_reset_time(granularity: Granularity, now: float) -> float:
    """Epoch seconds at which the bucket containing ``now`` ends."""
    return float((bucket_index(granularity, now) + 1) * granularity.seconds)


def seconds_until_reset(granularity: Granularity, now: float) -> int:
    return max(1, math.ceil(next_reset_time(granularity, now) - now))


def counter_ttl(granularity: Granularity, grace_seconds: int) -> int:
    return granularity.seconds + max(0, int(grace_seconds))


def cooldown_key(tenant_id: str, prefix: str = DEFAULT_PREFIX) -> str:
    return f"{prefix}:{tenant_id}:cooldown"


def billing_month(now: float) -> str:
    return _billing_month(now)


__all__ = [
    "ADMISSION_WINDOWS",
    "DEFAULT_PREFIX",
    "WindowKey",
    "bucket_index",
    "window_key",
    "bucket_key",
    "next_reset_time",
    "seconds_until_reset",
    "counter_ttl",
    "cooldown_key",
    "billing_month",
]
