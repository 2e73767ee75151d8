"""Shared test configuration and fixtures."""

from __future__ import annotations

import os
import sys
from pathlib import Path

# Ensure the project root is on sys.path so `bookrec.main` resolves
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are cached on first use; set the test environment before any import
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("LOG_FORMAT", "console")

import fakeredis  # noqa: E402
import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402

from bookrec.config import RecommendationConfig, Settings  # noqa: E402
from bookrec.container import ServiceContainer  # noqa: E402
from bookrec.database import create_engine, create_session_factory, create_tables  # noqa: E402
from bookrec.services.cache import RecommendationCache  # noqa: E402


@pytest.fixture
def settings(tmp_path):
    return Settings(
        environment="testing",
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'bookrec.db'}",
        redis_url="redis://localhost:6379/15",
        background_workers=1,
        background_max_attempts=2,
        background_retry_wait_max=0,
    )


@pytest.fixture
def config(settings) -> RecommendationConfig:
    return settings.recommendation


@pytest_asyncio.fixture
async def engine(settings):
    engine = create_engine(settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def cache(redis_client) -> RecommendationCache:
    return RecommendationCache(redis_client, ttl_hours=1.0, retention_days=7)


@pytest_asyncio.fixture
async def container(settings, session_factory, redis_client):
    """Fully wired services over SQLite and an in-memory Redis."""
    container = ServiceContainer(settings, session_factory, redis_client)
    await container.start()
    yield container
    await container.queue.stop(drain=True)
