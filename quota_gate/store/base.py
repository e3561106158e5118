"""Counter store contract.

The counter store is the only component touching shared mutable state. Every
method is async so network-backed stores can be awaited on the request path.

Contract:
    increment_and_get(key, ttl) -> int
        Atomic INCR. A key created by this call gets ``ttl`` seconds of life;
        later increments never extend it (otherwise a steady request stream
        would keep a bucket alive forever).
    get(key) -> int
        0 when absent. Never extends expiry.
    get_multi(keys) -> {key: int}
        Batched read, one round-trip.
    increment_many([(key, ttl), ...]) -> [int, ...]
        Batched increment, one round-trip where the backend allows it. Each key
        is atomic on its own; there is no cross-key transaction.
    get_timestamp / set_timestamp
        Cooldown marker storage.

Failures (unreachable, erroring, timed out) raise ``StoreUnavailable``.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterable, Optional, Sequence


class CounterStore(ABC):
    backend_name: str = "abstract"

    @abstractmethod
    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        ...

    @abstractmethod
    async def get(self, key: str) -> int:
        ...

    @abstractmethod
    async def get_multi(self, keys: Iterable[str]) -> dict[str, int]:
        ...

    async def increment_many(self, items: Sequence[tuple[str, int]]) -> list[int]:
        return [await self.increment_and_get(key, ttl) for key, ttl in items]

    @abstractmethod
    async def get_timestamp(self, key: str) -> Optional[float]:
        ...

    @abstractmethod
    async def set_timestamp(self, key: str, value: float, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def ping(self, timeout: Optional[float] = None) -> bool:
        ...

    async def close(self) -> None:
        return None

    def snapshot(self) -> dict:
        return {"backend": self.backend_name}


__all__ = ["CounterStore"]
