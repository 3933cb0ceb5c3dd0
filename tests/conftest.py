"""Pytest configuration and fixtures."""

import asyncio
import os
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment before importing hookrelay
os.environ["TESTING"] = "1"

from hookrelay.db.base import Base
from hookrelay.webhooks.config import DebounceConfig, DispatcherConfig
from hookrelay.webhooks.store import SQLAlchemyWebhookStore

# Test database URL (in-memory SQLite for speed)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

T0 = datetime(2026, 1, 15, 10, 30, tzinfo=UTC)


class FakeClock:
    """Mutable UTC clock for simulated time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> datetime:
        self.now += delta
        return self.now


class RecordingHandler:
    """httpx.MockTransport handler that records requests and replays responses."""

    def __init__(self, responses: list[httpx.Response] | None = None, clock: FakeClock | None = None):
        self.responses = list(responses or [])
        self.clock = clock
        self.requests: list[httpx.Request] = []
        self.times: list[datetime] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.clock is not None:
            self.times.append(self.clock())
        if not self.responses:
            return httpx.Response(200, text="ok")
        template = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        # A response stream can only be consumed once
        return httpx.Response(template.status_code, content=template.content)


async def wait_until(predicate: Callable[[], object], timeout: float = 3.0) -> None:
    """Poll an async or sync predicate until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(0.01)


@pytest_asyncio.fixture
async def db_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    """Create test session factory."""
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def store(session_factory) -> SQLAlchemyWebhookStore:
    """Webhook store backed by the in-memory database."""
    return SQLAlchemyWebhookStore(session_factory)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def dispatcher_config() -> DispatcherConfig:
    """Dispatcher config with background loops slowed down for tests."""
    return DispatcherConfig(
        workers=2,
        queue_size=10,
        enable_debounce=False,
        debounce=DebounceConfig(interval_seconds=0.05, max_wait_seconds=0.2),
        retry_interval_seconds=3600,
        cleanup_interval_seconds=3600,
        worker_poll_seconds=0.05,
    )
