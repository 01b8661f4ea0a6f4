"""Shared fixtures for the admission engine tests."""

from datetime import datetime, timezone

from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from quotagate.app.db.base import Base
from quotagate.app.services.rate_limit import (
    InMemoryCounterStore,
    RedisCounterStore,
    reset_rate_limit_service,
)


class RecordingSink:
    """Observability sink that keeps every event for assertions."""

    def __init__(self):
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    def kinds(self) -> list[str]:
        return [event.kind for event in self.events]


@pytest.fixture(autouse=True)
def reset_globals():
    """Reset global state before each test."""
    reset_rate_limit_service()
    yield
    reset_rate_limit_service()


@pytest.fixture
def fixed_now():
    """2030-01-01T00:00:30Z, halfway through a minute window."""
    return datetime(2030, 1, 1, 0, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def memory_store():
    return InMemoryCounterStore(max_entries=10_000, key_prefix="test")


@pytest.fixture
def fake_redis():
    """Isolated fake Redis server that executes Lua scripts."""
    return FakeRedis(server=FakeServer())


@pytest.fixture
def redis_store(fake_redis):
    return RedisCounterStore(redis_client=fake_redis, key_prefix="test", timeout=5.0)


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    """File-backed SQLite database with the fallback tables created."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'fallback.db'}",
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, expire_on_commit=False)

    await engine.dispose()
