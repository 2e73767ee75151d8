"""Wires stores and services together for one process (API worker or Celery task)."""

from __future__ import annotations

from typing import Optional

import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from bookrec.config import Settings
from bookrec.database import create_engine, create_session_factory
from bookrec.services.background import BackgroundQueue
from bookrec.services.cache import RecommendationCache
from bookrec.services.catalog import SqlBookCatalog
from bookrec.services.event_store import EventStore
from bookrec.services.event_tracker import EventTracker
from bookrec.services.friend_recommendations import FriendRecommendationService
from bookrec.services.preference_store import PreferenceStore
from bookrec.services.profile_builder import ProfileBuilder
from bookrec.services.recommendation_log import RecommendationLogStore
from bookrec.services.recommendation_service import RecommendationService
from bookrec.services.social_graph import SqlSocialGraph

logger = structlog.get_logger()


class ServiceContainer:
    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker[AsyncSession],
        redis_client: redis.Redis,
        engine: Optional[AsyncEngine] = None,
    ):
        config = settings.recommendation
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory
        self.redis = redis_client

        self.catalog = SqlBookCatalog(session_factory)
        self.social_graph = SqlSocialGraph(session_factory)
        self.preferences = PreferenceStore(session_factory)
        self.events = EventStore(session_factory)
        self.log_store = RecommendationLogStore(
            session_factory, config.retention.status_update_window_days
        )
        self.cache = RecommendationCache(
            redis_client, config.cache.ttl_hours, config.cache.retention_days
        )
        self.queue = BackgroundQueue(
            maxsize=settings.background_queue_size,
            workers=settings.background_workers,
            max_attempts=settings.background_max_attempts,
            retry_wait_max=settings.background_retry_wait_max,
        )

        self.profile_builder = ProfileBuilder(
            self.catalog, self.social_graph, self.preferences, config
        )
        self.friends = FriendRecommendationService(
            self.catalog, self.social_graph, self.preferences, config
        )
        self.recommendations = RecommendationService(
            self.catalog,
            self.social_graph,
            self.profile_builder,
            self.friends,
            self.cache,
            self.log_store,
            self.queue,
            config,
        )
        self.tracker = EventTracker(
            self.events, self.profile_builder, self.cache, self.queue, self.log_store
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> ServiceContainer:
        engine = create_engine(settings)
        client = redis.from_url(settings.redis_dsn, decode_responses=True)
        return cls(settings, create_session_factory(engine), client, engine=engine)

    async def start(self) -> None:
        await self.queue.start()

    async def close(self) -> None:
        await self.queue.stop(drain=True)
        await self.redis.aclose()
        if self.engine is not None:
            await self.engine.dispose()
        logger.info("service_container_closed")
