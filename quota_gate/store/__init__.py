"""Counter store backends and factory."""
from __future__ import annotations

from quota_gate.config import COUNTER_STORE_SETTINGS
from quota_gate.store.base import CounterStore
from quota_gate.store.memory import InMemoryCounterStore
from quota_gate.utils import get_logger

logger = get_logger(__name__)


async def create_counter_store() -> CounterStore:
    """Create the configured counter store.

    Redis is used when ``COUNTER_STORE_SETTINGS['backend'] == 'redis'`` and it
    answers a ping at startup; otherwise the in-memory store is used and a
    warning is logged. This choice is made once: after startup a failing store
    is NOT swapped out, admission fails closed instead.
    """
    backend = str(COUNTER_STORE_SETTINGS.get("backend", "memory")).lower()
    if backend == "redis":
        from quota_gate.store.redis_store import RedisCounterStore

        url = str(COUNTER_STORE_SETTINGS.get("redis_url", "redis://localhost:6379/0"))
        timeout_seconds = float(COUNTER_STORE_SETTINGS.get("timeout_ms", 100)) / 1000.0
        store = RedisCounterStore(url=url, timeout_seconds=timeout_seconds)
        if await store.ping(timeout=float(COUNTER_STORE_SETTINGS.get("health_check_timeout", 2.0))):
            logger.info("Using Redis counter store", url=url)
            return store
        logger.warning("Redis counter store unreachable at startup, using in-memory store", url=url)
        await store.close()
    elif backend != "memory":
        logger.warning("Unknown counter store backend, using in-memory store", backend=backend)

    logger.info("Using in-memory counter store")
    return InMemoryCounterStore()


__all__ = ["CounterStore", "InMemoryCounterStore", "create_counter_store"]
