from __future__ import annotations

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from docsync.apps.api import rate_limit
from docsync.core.config import Settings, get_settings
from docsync.domain.models import Base
from docsync.services.sync import SyncCoordinator, reset_sync_coordinator
from docsync.services.telemetry import reset_telemetry
from docsync.tests.utils.fakes import FakeClock, InMemoryBlobStore


@pytest.fixture
async def engine():
    # Fresh in-memory database per test; StaticPool keeps every session on one connection.
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        database_url="sqlite+aiosqlite://",
        storage_backend="local",
        rate_limit_enabled=False,
        cursor_secret="test-cursor-secret",
    )


@pytest.fixture
def coordinator(session_factory, blob_store, settings, clock) -> SyncCoordinator:
    return SyncCoordinator(
        session_factory=session_factory,
        blob_store=blob_store,
        settings=settings,
        time_provider=clock,
    )


@pytest.fixture(autouse=True)
def _reset_process_state() -> None:
    # Clear cached settings, singletons and in-process counters between tests.
    yield
    get_settings.cache_clear()
    rate_limit.reset_rate_limiter_state()
    reset_sync_coordinator()
    reset_telemetry()
