import asyncio
from concurrent.futures import ThreadPoolExecutor

from quota_gate.store.memory import InMemoryCounterStore


class _Clock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_increment_creates_and_counts():
    store = InMemoryCounterStore(clock=_Clock())
    assert asyncio.run(store.get("k")) == 0
    assert asyncio.run(store.increment_and_get("k", 60)) == 1
    assert asyncio.run(store.increment_and_get("k", 60)) == 2
    assert asyncio.run(store.get("k")) == 2


def test_ttl_is_set_on_create_and_never_extended():
    clock = _Clock()
    store = InMemoryCounterStore(clock=clock)
    asyncio.run(store.increment_and_get("k", 120))
    clock.now += 100
    asyncio.run(store.increment_and_get("k", 120))
    # Second increment did not push expiry out
    assert store.ttl_of("k") == 20
    clock.now += 20
    assert asyncio.run(store.get("k")) == 0
    assert store.ttl_of("k") is None
    # A fresh key starts from zero with a fresh TTL
    assert asyncio.run(store.increment_and_get("k", 120)) == 1
    assert store.ttl_of("k") == 120


def test_get_multi_and_increment_many():
    store = InMemoryCounterStore(clock=_Clock())
    values = asyncio.run(store.increment_many([("a", 60), ("b", 60), ("a", 60)]))
    assert values == [1, 1, 2]
    assert asyncio.run(store.get_multi(["a", "b", "missing"])) == {"a": 2, "b": 1, "missing": 0}


def test_reads_do_not_mutate():
    clock = _Clock()
    store = InMemoryCounterStore(clock=clock)
    asyncio.run(store.increment_and_get("k", 60))
    for _ in range(5):
        asyncio.run(store.get_multi(["k"]))
    assert asyncio.run(store.get("k")) == 1
    assert store.ttl_of("k") == 60


def test_cooldown_marker_is_monotonic_and_expires():
    clock = _Clock()
    store = InMemoryCounterStore(clock=clock)
    assert asyncio.run(store.get_timestamp("m")) is None
    asyncio.run(store.set_timestamp("m", 1_000.0, 30))
    asyncio.run(store.set_timestamp("m", 990.0, 30))
    assert asyncio.run(store.get_timestamp("m")) == 1_000.0
    asyncio.run(store.set_timestamp("m", 1_005.0, 30))
    assert asyncio.run(store.get_timestamp("m")) == 1_005.0
    clock.now += 31
    assert asyncio.run(store.get_timestamp("m")) is None


def test_sweep_drops_expired_entries():
    clock = _Clock()
    store = InMemoryCounterStore(clock=clock, sweep_every=2)
    asyncio.run(store.increment_and_get("old", 10))
    clock.now += 11
    asyncio.run(store.increment_and_get("new", 10))
    assert store.snapshot()["keys"] == 1


def test_purge_and_ping():
    store = InMemoryCounterStore(clock=_Clock())
    asyncio.run(store.increment_and_get("k", 60))
    store.purge()
    assert asyncio.run(store.get("k")) == 0
    assert asyncio.run(store.ping()) is True


def test_concurrent_increments_from_threads_are_exact():
    store = InMemoryCounterStore(clock=_Clock())

    def worker(_):
        return [asyncio.run(store.increment_and_get("k", 60)) for _ in range(200)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = [v for batch in pool.map(worker, range(8)) for v in batch]

    assert asyncio.run(store.get("k")) == 1_600
    # Every increment observed a distinct post-increment value
    assert sorted(results) == list(range(1, 1_601))


def test_concurrent_increment_many_is_exact():
    store = InMemoryCounterStore(clock=_Clock())
    items = [("m", 60), ("h", 3_660), ("d", 86_460)]

    async def run():
        return await asyncio.gather(*(store.increment_many(items) for _ in range(500)))

    results = asyncio.run(run())
    assert asyncio.run(store.get_multi(["m", "h", "d"])) == {"m": 500, "h": 500, "d": 500}
    assert sorted(r[0] for r in results) == list(range(1, 501))
