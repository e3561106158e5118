"""In-memory counter store.

Single-process substitute for the shared store, suitable for tests and
single-instance deployments. For horizontal scaling use ``RedisCounterStore``
(same interface) so every instance sees the same counters.

Entries are kept as ``{key: CounterEntry(count, expires_at)}``; expiry is lazy
(checked on access) plus an opportunistic sweep every ``sweep_every`` writes.
A ``threading.Lock`` serializes mutation. No await happens while it is held,
so it is safe from any event loop and from worker threads.
"""
from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Sequence

from quota_gate.store.base import CounterStore


@dataclass
class CounterEntry:
    count: int
    expires_at: float


@dataclass
class MarkerEntry:
    value: float
    expires_at: float


class InMemoryCounterStore(CounterStore):
    backend_name = "memory"

    def __init__(self, *, clock: Callable[[], float] = time.time, sweep_every: int = 1000):
        self._clock = clock
        self._entries: Dict[str, CounterEntry] = {}
        self._markers: Dict[str, MarkerEntry] = {}
        self._lock = threading.Lock()
        self._sweep_every = max(1, sweep_every)
        self._writes = 0

    def _live_entry(self, key: str, now: float) -> Optional[CounterEntry]:
        entry = self._entries.get(key)
        if entry is not None and entry.expires_at <= now:
            del self._entries[key]
            return None
        return entry

    def _incr_locked(self, key: str, ttl_seconds: int, now: float) -> int:
        entry = self._live_entry(key, now)
        if entry is None:
            # TTL is only set by the call that creates the key
            entry = CounterEntry(count=0, expires_at=now + ttl_seconds)
            self._entries[key] = entry
        entry.count += 1
        self._writes += 1
        if self._writes % self._sweep_every == 0:
            self._sweep_locked(now)
        return entry.count

    def _sweep_locked(self, now: float) -> None:
        for key in [k for k, e in self._entries.items() if e.expires_at <= now]:
            del self._entries[key]
        for key in [k for k, m in self._markers.items() if m.expires_at <= now]:
            del self._markers[key]

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        with self._lock:
            return self._incr_locked(key, ttl_seconds, self._clock())

    async def increment_many(self, items: Sequence[tuple[str, int]]) -> list[int]:
        with self._lock:
            now = self._clock()
            return [self._incr_locked(key, ttl, now) for key, ttl in items]

    async def get(self, key: str) -> int:
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return entry.count if entry else 0

    async def get_multi(self, keys: Iterable[str]) -> dict[str, int]:
        with self._lock:
            now = self._clock()
            result: dict[str, int] = {}
            for key in keys:
                entry = self._live_entry(key, now)
                result[key] = entry.count if entry else 0
            return result

    async def get_timestamp(self, key: str) -> Optional[float]:
        with self._lock:
            marker = self._markers.get(key)
            if marker is None:
                return None
            if marker.expires_at <= self._clock():
                del self._markers[key]
                return None
            return marker.value

    async def set_timestamp(self, key: str, value: float, ttl_seconds: int) -> None:
        with self._lock:
            now = self._clock()
            current = self._markers.get(key)
            if current is not None and current.expires_at > now and current.value >= value:
                # never move the marker backwards (monotonic per tenant)
                return
            self._markers[key] = MarkerEntry(value=value, expires_at=now + ttl_seconds)

    async def ping(self, timeout: Optional[float] = None) -> bool:
        return True

    # ------------------------------ introspection ------------------------------ #
    def purge(self) -> None:
        with self._lock:
            self._entries.clear()
            self._markers.clear()

    def ttl_of(self, key: str) -> Optional[float]:
        """Seconds until ``key`` expires (None if absent)."""
        with self._lock:
            entry = self._live_entry(key, self._clock())
            return None if entry is None else entry.expires_at - self._clock()

    def snapshot(self) -> dict:
        with self._lock:
            return {"backend": self.backend_name, "keys": len(self._entries), "markers": len(self._markers)}


__all__ = ["InMemoryCounterStore", "CounterEntry"]
