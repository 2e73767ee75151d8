"""
Tests for the periodic maintenance jobs (called directly, without a broker).
"""

from __future__ import annotations

from datetime import timedelta

import pytest

from bookrec.clock import utcnow
from bookrec.models.event import EventType
from bookrec.tasks.maintenance import (
    purge_expired_records_job,
    recompute_stale_profiles_job,
    refresh_active_users_job,
)
from tests.factories import make_book, make_user


class TestRefreshActiveUsers:
    @pytest.mark.asyncio
    async def test_refreshes_only_users_without_fresh_cache(self, container, session_factory):
        active = await make_user(session_factory, "active")
        cached = await make_user(session_factory, "cached")
        await make_book(session_factory, "Crowd Pleaser", read_count=40)
        await container.events.append(EventType.BOOK_VIEWED, active, {"book_id": 1})
        await container.events.append(EventType.BOOK_VIEWED, cached, {"book_id": 1})
        await container.recommendations.refresh_user(cached)

        result = await refresh_active_users_job(container)

        assert result == {"active": 2, "pending": 1, "refreshed": 1, "failed": 0}
        assert await container.cache.is_fresh(active)

    @pytest.mark.asyncio
    async def test_old_activity_is_ignored(self, container, session_factory):
        user_id = await make_user(session_factory, "dormant")
        await container.events.append(
            EventType.BOOK_VIEWED, user_id, {"book_id": 1}, timestamp=utcnow() - timedelta(days=30)
        )
        result = await refresh_active_users_job(container)
        assert result["active"] == 0


class TestRecomputeStaleProfiles:
    @pytest.mark.asyncio
    async def test_rebuilds_never_computed_profiles(self, container, session_factory):
        user_id = await make_user(session_factory, "reader")
        await container.preferences.get_or_create(user_id)

        result = await recompute_stale_profiles_job(container)

        assert result == {"candidates": 1, "rebuilt": 1}
        preference = await container.preferences.get(user_id)
        assert preference.last_computed is not None
        assert await recompute_stale_profiles_job(container) == {"candidates": 0, "rebuilt": 0}


class TestPurgeExpiredRecords:
    @pytest.mark.asyncio
    async def test_retention_windows(self, container):
        now = utcnow()
        await container.events.append(
            EventType.BOOK_VIEWED, 1, {"book_id": 1}, timestamp=now - timedelta(days=120)
        )
        await container.events.append(EventType.BOOK_VIEWED, 1, {"book_id": 2})

        result = await purge_expired_records_job(container, now=now)

        assert result["events"] == 1
        assert result["recommendation_logs"] == 0
        assert len(await container.events.user_events(1)) == 1
