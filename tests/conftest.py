"""
Pytest configuration and shared fixtures.
"""

import random
from collections.abc import AsyncGenerator, Callable
from datetime import datetime
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from prodline.config import Settings
from prodline.db.connection import create_schema, create_session_factory, get_test_engine
from prodline.db.memory import InMemoryItemStore
from prodline.db.store import SqlItemStore
from prodline.engine.simulator import StageEngine
from prodline.engine.timing import ManualClock
from prodline.observability.metrics import MetricsCollector

CALLBACK_URL = "http://receiver.test/hooks/done"


class RecordingNotifier:
    """
    Notifier double that records every delivery attempt.

    Queued outcomes are consumed first: booleans are returned, exceptions
    are raised. Once they run out `default` is returned.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any], float]] = []
        self.outcomes: list[bool | Exception] = []
        self.default = True

    async def deliver(self, url: str, payload: dict[str, Any], timeout_seconds: float) -> bool:
        self.calls.append((url, payload, timeout_seconds))
        if self.outcomes:
            outcome = self.outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if isinstance(self.default, Exception):
            raise self.default
        return self.default

    @property
    def delivered_ids(self) -> list[str]:
        return [payload["id"] for _, payload, _ in self.calls]


@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings.

    Jitter is disabled so stage deadlines are exact: queued 1s, producing 10s,
    shipping 1s, for a 12s pipeline.
    """
    return Settings(
        engine_profile="test",
        engine_jitter_ratio=0.0,
        stage_queued_ms=1_000,
        stage_producing_ms=10_000,
        stage_shipping_ms=1_000,
        stage_delivered_ms=0,
        log_level="DEBUG",
        log_format="console",
        reaper_interval_seconds=1,
    )


@pytest.fixture
def clock() -> ManualClock:
    """Create a clock that only moves when a test advances it."""
    return ManualClock()


@pytest.fixture
def registry() -> CollectorRegistry:
    """Create an isolated metrics registry."""
    return CollectorRegistry()


@pytest.fixture
def metrics(registry: CollectorRegistry) -> MetricsCollector:
    """Create a metrics collector bound to the isolated registry."""
    return MetricsCollector(registry=registry)


@pytest.fixture
def notifier() -> RecordingNotifier:
    """Create a recording callback notifier."""
    return RecordingNotifier()


@pytest.fixture
def memory_store() -> InMemoryItemStore:
    """Create an empty in-memory item store."""
    return InMemoryItemStore()


@pytest.fixture
def make_engine(
    memory_store: InMemoryItemStore,
    notifier: RecordingNotifier,
    clock: ManualClock,
    test_settings: Settings,
    metrics: MetricsCollector,
) -> Callable[..., StageEngine]:
    """Create a factory for engines sharing the test store, clock and notifier."""

    def _make(worker_id: str = "engine-a", **overrides: Any) -> StageEngine:
        options: dict[str, Any] = {
            "store": memory_store,
            "notifier": notifier,
            "clock": clock,
            "settings": test_settings,
            "metrics": metrics,
            "rng": random.Random(7),
        }
        options.update(overrides)
        return StageEngine(worker_id=worker_id, **options)

    return _make


@pytest.fixture
def create_item(memory_store: InMemoryItemStore, clock: ManualClock):
    """Create a factory for pending items stamped with the test clock."""

    async def _create(
        payload: Any = None,
        created_at: datetime | None = None,
        store: Any = None,
    ):
        return await (store or memory_store).create_item(
            payload=payload if payload is not None else {"order": "widget"},
            callback_url=CALLBACK_URL,
            created_at=created_at or clock.now(),
        )

    return _create


@pytest_asyncio.fixture
async def sql_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a file-backed SQLite engine with the schema in place."""
    engine = get_test_engine(f"sqlite+aiosqlite:///{tmp_path / 'prodline.db'}")
    await create_schema(engine)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(sql_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory for the test database."""
    return create_session_factory(sql_engine)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session

        # Rollback any uncommitted changes
        await session.rollback()


@pytest.fixture
def sql_store(session_factory: async_sessionmaker[AsyncSession]) -> SqlItemStore:
    """Create an item store over the test database."""
    return SqlItemStore(session_factory)
