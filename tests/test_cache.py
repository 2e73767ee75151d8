"""
Tests for the per-user recommendation cache: freshness, staleness, and
degraded reads.
"""

from __future__ import annotations

from datetime import timedelta

import fakeredis
import pytest

from bookrec.clock import utcnow
from bookrec.container import ServiceContainer
from bookrec.schemas.recommendation import Recommendation
from bookrec.services import cache as cache_module
from bookrec.services.cache import RecommendationCache, cache_key
from tests.factories import make_book, make_user


def _recs(*book_ids: int) -> list[Recommendation]:
    return [
        Recommendation(book_id=book_id, score=0.9 - i * 0.1, position=i + 1)
        for i, book_id in enumerate(book_ids)
    ]


class TestFreshness:
    @pytest.mark.asyncio
    async def test_cached_entry_is_fresh(self, cache):
        entry = await cache.cache_recommendations(1, _recs(10, 11), _recs(20))
        assert entry is not None
        assert await cache.is_fresh(1)
        assert [r.book_id for r in await cache.get_fresh(1, "home")] == [10, 11]
        assert [r.book_id for r in await cache.get_fresh(1, "friends")] == [20]

    @pytest.mark.asyncio
    async def test_missing_entry(self, cache):
        assert not await cache.is_fresh(2)
        assert await cache.get_fresh(2) is None
        assert await cache.get_stale(2) is None

    @pytest.mark.asyncio
    async def test_stale_unexpired_entry_is_not_fresh(self, cache):
        await cache.cache_recommendations(1, _recs(10))
        await cache.invalidate(1)

        entry = await cache.get_entry(1)
        assert entry.expires_at > utcnow()
        assert entry.is_stale
        assert not await cache.is_fresh(1)
        assert await cache.get_fresh(1) is None

    @pytest.mark.asyncio
    async def test_stale_content_still_readable_for_degraded_path(self, cache):
        await cache.cache_recommendations(1, _recs(10, 11))
        await cache.invalidate(1)
        assert [r.book_id for r in await cache.get_stale(1)] == [10, 11]

    @pytest.mark.asyncio
    async def test_expired_entry_is_marked_stale(self, cache):
        await cache.cache_recommendations(1, _recs(10))
        later = utcnow() + timedelta(hours=2)

        assert not await cache.is_fresh(1, now=later)
        assert (await cache.get_entry(1)).is_stale
        # Once stale, it stays stale even for "earlier" clocks
        assert not await cache.is_fresh(1)

    @pytest.mark.asyncio
    async def test_rewrite_clears_stale_flag(self, cache):
        await cache.cache_recommendations(1, _recs(10))
        await cache.invalidate(1)
        await cache.cache_recommendations(1, _recs(12))
        assert await cache.is_fresh(1)

    @pytest.mark.asyncio
    async def test_empty_slot_is_a_miss(self, cache):
        await cache.cache_recommendations(1, _recs(10), [])
        assert await cache.get_fresh(1, "friends") is None

    @pytest.mark.asyncio
    async def test_limit(self, cache):
        await cache.cache_recommendations(1, _recs(10, 11, 12))
        assert len(await cache.get_fresh(1, limit=2)) == 2

    @pytest.mark.asyncio
    async def test_short_list_generated_for_larger_request_is_served(self, cache):
        await cache.cache_recommendations(1, _recs(10, 11), home_requested=20)
        assert [r.book_id for r in await cache.get_fresh(1, limit=20)] == [10, 11]
        assert [r.book_id for r in await cache.get_fresh(1, limit=5)] == [10, 11]

    @pytest.mark.asyncio
    async def test_short_list_generated_for_smaller_request_is_a_miss(self, cache):
        await cache.cache_recommendations(1, _recs(10, 11), home_requested=2)
        assert await cache.get_fresh(1, limit=20) is None
        assert (await cache.get_entry(1)).home_requested == 2

    @pytest.mark.asyncio
    async def test_friends_slot_tracks_its_own_request_size(self, cache):
        await cache.cache_recommendations(1, _recs(10), _recs(20), friends_requested=30)
        assert [r.book_id for r in await cache.get_fresh(1, "friends", limit=30)] == [20]
        assert await cache.get_fresh(1, "home", limit=30) is None


class TestKeys:
    @pytest.mark.asyncio
    async def test_retention_ttl_set(self, cache, redis_client):
        await cache.cache_recommendations(1, _recs(10))
        ttl = await redis_client.ttl(cache_key(1))
        assert 0 < ttl <= 7 * 24 * 3600

    @pytest.mark.asyncio
    async def test_invalidating_missing_key_creates_nothing(self, cache, redis_client):
        await cache.invalidate_many([5, 6])
        assert await redis_client.exists(cache_key(5), cache_key(6)) == 0

    @pytest.mark.asyncio
    async def test_invalidation_keeps_retention_ttl(self, cache, redis_client):
        await cache.cache_recommendations(1, _recs(10))
        await cache.invalidate_many([1, 2])

        assert (await cache.get_entry(1)).is_stale
        assert 0 < await redis_client.ttl(cache_key(1)) <= 7 * 24 * 3600
        assert await redis_client.exists(cache_key(2)) == 0

    @pytest.mark.asyncio
    async def test_entry_expiring_mid_invalidation_is_not_recreated(
        self, cache, redis_client, monkeypatch
    ):
        await cache.cache_recommendations(1, _recs(10))
        real_pipeline = redis_client.pipeline

        def pipeline_that_expires_key(*args, **kwargs):
            pipe = real_pipeline(*args, **kwargs)
            original = pipe.exists

            async def exists_then_expire(key):
                found = await original(key)
                await redis_client.delete(key)
                return found

            pipe.exists = exists_then_expire
            return pipe

        monkeypatch.setattr(redis_client, "pipeline", pipeline_that_expires_key)
        await cache.invalidate(1)

        assert await redis_client.exists(cache_key(1)) == 0

    @pytest.mark.asyncio
    async def test_users_needing_refresh(self, cache):
        await cache.cache_recommendations(1, _recs(10))
        await cache.cache_recommendations(2, _recs(10))
        await cache.invalidate(2)
        assert await cache.users_needing_refresh([1, 2, 3]) == [2, 3]


class TestRedisUnavailable:
    @pytest.mark.asyncio
    async def test_errors_degrade_to_misses(self):
        server = fakeredis.FakeServer()
        server.connected = False
        cache = RecommendationCache(fakeredis.FakeAsyncRedis(server=server, decode_responses=True))

        assert await cache.cache_recommendations(1, _recs(10)) is None
        assert await cache.get_entry(1) is None
        assert not await cache.is_fresh(1)
        await cache.invalidate(1)


class TestClientOwnership:
    @pytest.mark.asyncio
    async def test_container_owns_the_only_client(self, settings):
        container = ServiceContainer.from_settings(settings)
        try:
            assert container.cache._redis is container.redis
            assert not hasattr(cache_module, "_redis_client")
        finally:
            await container.close()


class TestInvalidationOnEvents:
    @pytest.mark.asyncio
    async def test_five_star_rating_makes_cache_not_fresh(self, container, session_factory):
        user_id = await make_user(session_factory, "rater")
        book_id = await make_book(session_factory, "Loved It", genres=("Mystery",))
        await container.cache.cache_recommendations(user_id, _recs(book_id))
        assert await container.cache.is_fresh(user_id)

        await container.tracker.track_rating(user_id, book_id, 5)

        assert not await container.cache.is_fresh(user_id)

    @pytest.mark.asyncio
    async def test_page_view_does_not_invalidate(self, container, session_factory):
        user_id = await make_user(session_factory, "browser")
        book_id = await make_book(session_factory, "Just Looking")
        await container.cache.cache_recommendations(user_id, _recs(book_id))

        await container.tracker.track_book_view(user_id, book_id, duration=12.5)
        await container.queue.join()

        assert await container.cache.is_fresh(user_id)
