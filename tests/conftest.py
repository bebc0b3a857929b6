import asyncio
import os

# Settings are read once at import time; point them at test backends first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SESSION_BACKEND", "memory")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("NOTIFICATION_WEBHOOK_URL", "")
os.environ.setdefault("IDENTITY_SERVICE_URL", "")

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from cannes.core.errors import AggregateWriteConflict, TierWriteConflict
from cannes.core.retry import RetryConfig
from cannes.core.session_store import MemorySessionStore
from cannes.db import models  # noqa: F401
from cannes.db.database import Base
from cannes.services.aggregate_service import AggregateRatingService
from cannes.services.collaborators import IdentityClient, NotificationDispatcher
from cannes.services.ranking_repository import RankingRepository
from cannes.services.ranking_service import RankingService


class RecordingNotifier(NotificationDispatcher):
    """Keeps events instead of posting them."""

    def __init__(self):
        super().__init__(webhook_url="http://notifications.test/hook")
        self.events = []

    async def _send(self, payload):
        self.events.append(payload)
        return True


class RecordingIdentity(IdentityClient):
    def __init__(self):
        super().__init__(base_url="http://identity.test")
        self.removed = []

    async def remove_user(self, user_id):
        self.removed.append(user_id)
        return True


def fast_retry() -> RetryConfig:
    return RetryConfig(
        max_attempts=3,
        base_delay=0.0,
        max_delay=0.0,
        jitter=0.0,
        retryable_exceptions=(TierWriteConflict, AggregateWriteConflict),
    )


async def make_session_factory(url: str, **engine_options):
    engine = create_async_engine(url, **engine_options)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session_factory(tmp_path):
    engine, factory = await make_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'rankings.db'}")
    yield factory
    await engine.dispose()


@pytest.fixture
def repository(session_factory):
    return RankingRepository(session_factory=session_factory, retry_config=fast_retry())


@pytest.fixture
def aggregates(session_factory):
    return AggregateRatingService(session_factory=session_factory, retry_config=fast_retry())


@pytest.fixture
def store():
    return MemorySessionStore(ttl=600)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def identity():
    return RecordingIdentity()


@pytest.fixture
def service(repository, aggregates, store, notifier, identity):
    return RankingService(
        repository=repository,
        aggregates=aggregates,
        store=store,
        notifier=notifier,
        identity=identity,
    )


@pytest.fixture
def client(tmp_path):
    """TestClient with the ranking service on a throwaway database (lifespan not run)."""
    from fastapi.testclient import TestClient

    from cannes.main import app
    from cannes.services.ranking_service import get_ranking_service

    # Each TestClient request runs on its own event loop, so no pooled connections
    engine, factory = asyncio.run(
        make_session_factory(f"sqlite+aiosqlite:///{tmp_path / 'api.db'}", poolclass=NullPool)
    )
    service = RankingService(
        repository=RankingRepository(session_factory=factory, retry_config=fast_retry()),
        aggregates=AggregateRatingService(session_factory=factory, retry_config=fast_retry()),
        store=MemorySessionStore(ttl=600),
        notifier=RecordingNotifier(),
        identity=RecordingIdentity(),
    )
    app.dependency_overrides[get_ranking_service] = lambda: service
    yield TestClient(app)
    app.dependency_overrides.clear()
    asyncio.run(engine.dispose())
