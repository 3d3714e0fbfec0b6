"""Shared fixtures: a throwaway SQLite store, a recording transport and a fake clock."""
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from config import Settings
from database import Base
from services.chat import ChatService
from services.identity import Identity
from services.store import ChatStore

TEST_SECRET = "test-secret-key"
ADMIN_KEY = "test-admin-key"


class RecordingTransport:
    """Collects everything the engine sends, per connection."""

    def __init__(self):
        self.sent: list[tuple[str, str, object]] = []
        self.failing: set[str] = set()

    async def send(self, connection_id, event, payload):
        if connection_id in self.failing:
            raise ConnectionError("peer went away")
        self.sent.append((connection_id, event, payload))

    def events(self, connection_id, event=None):
        return [p for c, e, p in self.sent if c == connection_id and (event is None or e == event)]

    def names(self, connection_id):
        return [e for c, e, _ in self.sent if c == connection_id]

    def clear(self):
        self.sent.clear()


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "JWT_SECRET_KEY": TEST_SECRET,
        "ADMIN_API_KEY": ADMIN_KEY,
        "STORE_TIMEOUT_SECONDS": 10.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def redis():
    client = AsyncMock()
    client.incr.return_value = 1
    return client


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File database so concurrent sessions get their own connections
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        poolclass=NullPool,
        connect_args={"timeout": 15},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _wal(dbapi_conn, _record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def store(session_factory):
    return ChatStore(session_factory, timeout=10.0)


@pytest_asyncio.fixture
async def chat(session_factory, transport, settings, clock, redis):
    async def redis_factory():
        return redis

    service = ChatService(session_factory, transport, settings, clock=clock, redis_factory=redis_factory)
    await service.start()
    yield service
    await service.close()


async def make_user(chat_or_store, display_name: str, email: str | None = None) -> Identity:
    store = getattr(chat_or_store, "store", chat_or_store)
    user = await store.create_user(display_name, email)
    return Identity(user_id=user.id, display_name=user.display_name, email=user.email)


async def settle(*sessions) -> None:
    """Wait until each session's inbox is drained."""
    for session in sessions:
        await asyncio.wait_for(session.inbox.join(), timeout=10)
