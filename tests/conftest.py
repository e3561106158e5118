"""Pytest fixtures.

Important: every model module must be imported before Base.metadata.create_all(),
``quota_gate.models.db`` does that on import.
"""
import sys
from pathlib import Path
from typing import Iterable, Optional, Sequence
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure project root on sys.path so 'quota_gate' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

import quota_gate.models.db  # noqa: E402,F401
from quota_gate.database import Base  # noqa: E402
from quota_gate.core.policy import build_policy_table  # noqa: E402
from quota_gate.errors import StoreUnavailable  # noqa: E402
from quota_gate.store.base import CounterStore  # noqa: E402
from quota_gate.store.memory import InMemoryCounterStore  # noqa: E402
from quota_gate import main as main_module  # noqa: E402
from quota_gate.main import app, build_components  # noqa: E402

# 2023-11-14 10:00:05 UTC: 5 seconds into a minute and an hour, 36005 into the day
START_TS = 1_699_956_005.0

# In-memory SQLite shared by every session (one connection); the ledger sync
# and endpoints use it from worker threads too.
engine = create_engine(
    "sqlite+pysqlite:///:memory:",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

APP_STATE_KEYS = (
    "counter_store",
    "policy_table",
    "plan_resolver",
    "usage_ledger",
    "ledger_sync",
    "usage_reporter",
    "admission_controller",
)


class FakeClock:
    """Manually advanced epoch clock."""

    def __init__(self, start: float = START_TS):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FailingStore(CounterStore):
    """Counter store whose every call fails like an unreachable Redis."""
    backend_name = "failing"

    def __init__(self):
        self.calls = 0

    def _fail(self):
        self.calls += 1
        raise StoreUnavailable("store down")

    async def increment_and_get(self, key: str, ttl_seconds: int) -> int:
        self._fail()

    async def increment_many(self, items: Sequence[tuple[str, int]]) -> list[int]:
        self._fail()

    async def get(self, key: str) -> int:
        self._fail()

    async def get_multi(self, keys: Iterable[str]) -> dict[str, int]:
        self._fail()

    async def get_timestamp(self, key: str) -> Optional[float]:
        self._fail()

    async def set_timestamp(self, key: str, value: float, ttl_seconds: int) -> None:
        self._fail()

    async def ping(self, timeout: Optional[float] = None) -> bool:
        return False


@pytest.fixture(autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def session_factory():
    return TestingSessionLocal


@pytest.fixture()
def db_session():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(clock):
    return InMemoryCounterStore(clock=clock)


@pytest.fixture()
def failing_store():
    return FailingStore()


@pytest.fixture()
def policies():
    return build_policy_table()


@pytest.fixture()
def components(store, clock, policies):
    return build_components(store, session_factory=TestingSessionLocal, policies=policies, clock=clock)


@pytest.fixture()
def client(components, monkeypatch):
    """TestClient with app.state wired by hand.

    The production app sets this up in lifespan. Tests bypass lifespan so the
    fake clock, in-memory store and test database are used instead.
    """
    monkeypatch.setattr(main_module, "SessionLocal", TestingSessionLocal)
    for name, component in components.items():
        setattr(app.state, name, component)
    yield TestClient(app)
    for name in APP_STATE_KEYS:
        if hasattr(app.state, name):
            delattr(app.state, name)
