"""Redis-backed counter store.

Shared across every process instance, so admission counts hold under
horizontal scaling. Uses the ``redis.asyncio`` client.

Key layout (prefix defaults to ``quota``):
  quota:{tenant}:minute:{bucket}   INCR counter, TTL 60s + grace
  quota:{tenant}:hour:{bucket}     INCR counter, TTL 3600s + grace
  quota:{tenant}:day:{bucket}      INCR counter, TTL 86400s + grace
  quota:{tenant}:cooldown          last admitted epoch seconds (SET EX)

Increment is ``MULTI; INCR key; EXPIRE key ttl NX; EXEC``: the NX flag makes
the TTL apply only to a key that has none yet, i.e. the one just created by
the INCR, so later increments never push expiry out. ``EXPIRE ... NX`` needs
Redis >= 7.0.

Every call runs under ``asyncio.wait_for`` with a short timeout. Timeouts,
connection and protocol errors surface as ``StoreUnavailable``; there is no
fallback at this layer (the admission path fails closed).
"""
from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Iterable, Optional, Sequence

from redis import asyncio as aioredis
from redis.exceptions import RedisError

from quota_gate.errors import StoreUnavailable
from quota_gate.store.base import CounterStore
from quota_gate.utils import get_logger

logger = get_logger(__name__)


def _to_int(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning("Non-integer counter value in store", value_type=type(value).__name__)
        return 0


def _to_float(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode("utf-8")
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class RedisCounterStore(CounterStore):
    backend_name = "redis"

    def __init__(self, client: Optional[aioredis.Redis] = None, *, url: str = "redis://localhost:6379/0", timeout_seconds: float = 0.1):
        self._timeout = timeout_seconds
        self._url = url
        self._client: aioredis.Redis = client if client is not None else aioredis.from_url(
            url,
            socket_timeout=timeout_seconds,
            socket_connect_timeout=timeout_seconds,
        )

    async def _call(self, operation: str, awaitable: Awaitable[Any], *, timeout: Optional[float] = None) -> Any:
        limit = self._timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(awaitable, timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning("Counter store call timed out", operation=operation, timeout_ms=round(limit * 1000))
            raise StoreUnavailable(f"Counter store {operation} timed out") from exc
        except (RedisError, OSError) as exc:
            logger.warning("Counter store call failed", operation=operation, error=str(exc))
            raise StoreUnavailable(f"Counter store {operation} failed: {exc}") from exc

    async def _incr_pipeline(self, items: Sequence[tuple[str, int]]) -> list[int]:
        async with self._client.pipeline(transaction=True) as pipe:
            for key, ttl in items:
                pipe.incr(key)
                pipe.expire(key, int(ttl), nx=True)
            results = await pipe.execute()
        # results alternate [incr, expire, incr, expire, ...]
        return [_to_int(v) for v in results[0::2]]

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        values = await self.increment_many([(key, ttl_seconds)])
        return values[0]

    async def increment_many(self, items: Sequence[tuple[str, int]]) -> list[int]:
        if not items:
            return []
        return await self._call("increment", self._incr_pipeline(items))

    async def get(self, key: str) -> int:
        return _to_int(await self._call("get", self._client.get(key)))

    async def get_multi(self, keys: Iterable[str]) -> dict[str, int]:
        key_list = list(keys)
        if not key_list:
            return {}
        values = await self._call("mget", self._client.mget(key_list))
        return {k: _to_int(v) for k, v in zip(key_list, values)}

    async def get_timestamp(self, key: str) -> Optional[float]:
        return _to_float(await self._call("get", self._client.get(key)))

    async def set_timestamp(self, key: str, value: float, ttl_seconds: int) -> None:
        # last-write-wins
        await self._call("set", self._client.set(key, repr(float(value)), ex=max(1, int(ttl_seconds))))

    async def ping(self, timeout: Optional[float] = None) -> bool:
        try:
            await self._call("ping", self._client.ping(), timeout=timeout)
            return True
        except StoreUnavailable:
            return False

    async def close(self) -> None:
        try:
            await self._client.aclose()
        except (RedisError, OSError) as exc:  # pragma: no cover
            logger.warning("Error closing Redis client", error=str(exc))

    def snapshot(self) -> dict:
        return {"backend": self.backend_name, "redis_url": self._url, "timeout_ms": round(self._timeout * 1000)}


__all__ = ["RedisCounterStore"]
