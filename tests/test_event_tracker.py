"""
Tests for event ingestion, the profile signals it triggers, and activity
summaries.
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import OperationalError

from bookrec.models.event import EventType
from bookrec.schemas.event import EventCreate, EventMetadata
from bookrec.services.event_tracker import EventTracker
from tests.factories import make_book, make_user


class TestTrack:
    @pytest.mark.asyncio
    async def test_event_is_persisted(self, container):
        event = await container.tracker.track(
            EventType.BOOK_VIEWED, 1, EventMetadata(book_id=5, duration=3.0), "sess-1"
        )

        assert event is not None
        assert len(event.event_id) == 36
        stored = await container.events.user_events(1)
        assert [e.event_id for e in stored] == [event.event_id]
        assert stored[0].payload == {"book_id": 5, "duration": 3.0}
        assert stored[0].session_id == "sess-1"

    @pytest.mark.asyncio
    async def test_invalid_metadata_is_dropped_not_raised(self, container):
        assert await container.tracker.track_rating(1, 5, rating=6) is None
        assert await container.events.user_events(1) == []

    @pytest.mark.asyncio
    async def test_storage_failure_is_dropped_not_raised(self, container):
        class BrokenStore:
            async def append(self, *args, **kwargs):
                raise OperationalError("INSERT INTO events", {}, Exception("database is down"))

        tracker = EventTracker(
            BrokenStore(), container.profile_builder, container.cache, container.queue
        )
        assert await tracker.track(EventType.BOOK_LIKED, 1, {"book_id": 5}) is None

    @pytest.mark.asyncio
    async def test_batch(self, container):
        items = [
            EventCreate(type=EventType.BOOK_VIEWED, metadata=EventMetadata(book_id=1)),
            EventCreate(type=EventType.SEARCH_PERFORMED, metadata=EventMetadata(query="dune")),
        ]
        events = await container.tracker.track_batch(items, user_id=3)
        assert len(events) == 2
        assert len({e.event_id for e in events}) == 2
        assert await container.events.user_searches(3) == ["dune"]


class TestProfileSignals:
    @pytest.mark.asyncio
    async def test_rating_updates_profile_once(self, container, session_factory):
        user_id = await make_user(session_factory, "rater")
        book_id = await make_book(session_factory, "Whodunit", genres=("Mystery",), authors=("Ann Clue",))

        event = await container.tracker.track_rating(user_id, book_id, 5)
        await container.queue.join()

        preference = await container.preferences.get(user_id)
        assert preference.genre_weights["mystery"] == pytest.approx(2.0)

        # Redelivery of the same event changes nothing
        applied = await container.profile_builder.incremental_update(
            user_id, book_id, "rated", rating=5, event_id=event.event_id
        )
        assert not applied
        preference = await container.preferences.get(user_id)
        assert preference.genre_weights["mystery"] == pytest.approx(2.0)

    @pytest.mark.asyncio
    async def test_shelf_add_uses_rating_multiplier(self, container, session_factory):
        user_id = await make_user(session_factory, "shelver")
        book_id = await make_book(session_factory, "Slow Burn", genres=("Romance",))

        await container.tracker.track_add_to_shelf(user_id, book_id, "shelf", rating=4)
        await container.queue.join()

        preference = await container.preferences.get(user_id)
        assert preference.genre_weights["romance"] == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_search_recorded_on_profile(self, container, session_factory):
        user_id = await make_user(session_factory, "seeker")
        await container.tracker.track_search(user_id, "cozy mystery", results_count=12)
        await container.queue.join()

        preference = await container.preferences.get(user_id)
        assert preference.recent_searches[0]["query"] == "cozy mystery"


class TestWrappers:
    @pytest.mark.asyncio
    async def test_recommendation_click_emits_two_events(self, container):
        await container.tracker.track_recommendation_click(
            4, 77, source="similar", position=2, algorithm="similar-books"
        )
        types = {e.type for e in await container.events.user_events(4)}
        assert types == {EventType.BOOK_CLICKED_FROM_SIMILAR, EventType.RECOMMENDATION_CLICKED}

    @pytest.mark.asyncio
    async def test_unlike_and_unfollow(self, container):
        await container.tracker.track_like(4, 77, liked=False)
        await container.tracker.track_follow(4, 9, followed=False)
        types = {e.type for e in await container.events.user_events(4)}
        assert types == {EventType.BOOK_UNLIKED, EventType.USER_UNFOLLOWED}

    @pytest.mark.asyncio
    async def test_shelf_names_map_to_event_types(self, container):
        await container.tracker.track_add_to_shelf(4, 77, "currently_reading")
        await container.tracker.track_add_to_shelf(4, 78, "custom-shelf")
        types = {e.type for e in await container.events.user_events(4)}
        assert types == {EventType.BOOK_STARTED_READING, EventType.BOOK_ADDED_TO_SHELF}

    @pytest.mark.asyncio
    async def test_onboarding_event(self, container):
        event = await container.tracker.track_onboarding_completed(4, ["Mystery"], ["Agatha Christie"])
        assert event.payload == {"genres": ["Mystery"], "authors": ["Agatha Christie"]}


class TestActivity:
    @pytest.mark.asyncio
    async def test_recent_activity_and_engagement(self, container):
        tracker = container.tracker
        await tracker.track(EventType.BOOK_RATED, 8, {"book_id": 1, "rating": 4})
        await tracker.track(EventType.BOOK_LIKED, 8, {"book_id": 2})
        await tracker.track(EventType.BOOK_VIEWED, 8, {"book_id": 3})
        await tracker.track(EventType.BOOK_ADDED_TO_TBR, 8, {"book_id": 4})

        activity = await tracker.get_recent_activity(8)

        assert (activity.rated, activity.liked, activity.viewed, activity.added) == (1, 1, 1, 1)
        # 10 + 5 + 1 + 8 weighted actions out of 200
        assert await tracker.calculate_engagement_score(8) == 12.0
        assert await tracker.is_active_user(8)
        assert not await tracker.is_active_user(9)

    @pytest.mark.asyncio
    async def test_views_alone_are_not_activity(self, container):
        await container.tracker.track(EventType.BOOK_VIEWED, 8, {"book_id": 3})
        assert not await container.tracker.is_active_user(8)


class TestEventStoreQueries:
    @pytest.mark.asyncio
    async def test_book_stats_counts_each_event_type(self, container):
        tracker = container.tracker
        await tracker.track(EventType.BOOK_VIEWED, 8, {"book_id": 3})
        await tracker.track(EventType.BOOK_VIEWED, 9, {"book_id": 3})
        await tracker.track(EventType.BOOK_SHARED, 9, {"book_id": 3})
        await tracker.track(EventType.BOOK_VIEWED, 8, {"book_id": 4})

        assert await container.events.book_stats(3) == {"book.viewed": 2, "book.shared": 1}
        assert await container.events.book_stats(5) == {}
