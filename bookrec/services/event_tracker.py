"""
Event tracker: ingestion entry point for user interaction events.

Tracking never raises to the caller: the user's primary action (liking a
book, rating it) must succeed even when analytics storage does not. After an
event is stored:
- preference-relevant events queue an incremental profile update, keyed by
  the event id so redelivery cannot double-count;
- significant events mark the user's recommendation cache stale.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import timedelta
from typing import Optional, Union

import structlog
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError

from bookrec.clock import utcnow
from bookrec.metrics import EVENTS_TRACKED
from bookrec.models.event import PROFILE_SIGNALS, SIGNIFICANT_EVENTS, Event, EventType
from bookrec.schemas.event import ActivitySummary, EventCreate, EventMetadata
from bookrec.services.background import BackgroundQueue
from bookrec.services.cache import RecommendationCache
from bookrec.services.event_store import EventStore
from bookrec.services.profile_builder import ProfileBuilder
from bookrec.services.recommendation_log import RecommendationLogStore

logger = structlog.get_logger()

MetadataInput = Union[EventMetadata, dict, None]

SHELF_EVENTS: dict[str, EventType] = {
    "tbr": EventType.BOOK_ADDED_TO_TBR,
    "currently_reading": EventType.BOOK_STARTED_READING,
    "shelf": EventType.BOOK_FINISHED_READING,
    "favorites": EventType.BOOK_ADDED_TO_FAVORITES,
    "top": EventType.BOOK_ADDED_TO_TOP,
}

CLICK_EVENTS: dict[str, EventType] = {
    "recommendation": EventType.BOOK_CLICKED_FROM_RECOMMENDATION,
    "similar": EventType.BOOK_CLICKED_FROM_SIMILAR,
    "friends": EventType.BOOK_CLICKED_FROM_FRIENDS,
    "search": EventType.BOOK_CLICKED_FROM_SEARCH,
}

ADDED_EVENTS = frozenset(
    {
        EventType.BOOK_ADDED_TO_SHELF,
        EventType.BOOK_ADDED_TO_TBR,
        EventType.BOOK_FINISHED_READING,
    }
)
FOLLOW_EVENTS = frozenset({EventType.USER_FOLLOWED, EventType.USER_UNFOLLOWED})


def _payload(metadata: MetadataInput) -> dict:
    if metadata is None:
        return {}
    if not isinstance(metadata, EventMetadata):
        metadata = EventMetadata.model_validate(metadata)
    return metadata.model_dump(exclude_none=True)


class EventTracker:
    def __init__(
        self,
        events: EventStore,
        profile_builder: ProfileBuilder,
        cache: RecommendationCache,
        queue: BackgroundQueue,
        log_store: Optional[RecommendationLogStore] = None,
    ):
        self.events = events
        self.profile_builder = profile_builder
        self.cache = cache
        self.queue = queue
        self.log_store = log_store

    async def track(
        self,
        event_type: EventType,
        user_id: int,
        metadata: MetadataInput = None,
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        try:
            payload = _payload(metadata)
            event = await self.events.append(event_type, user_id, payload, session_id)
        except (ValidationError, SQLAlchemyError, OSError) as exc:
            logger.error(
                "event_track_failed",
                event_type=event_type.value,
                user_id=user_id,
                error=str(exc),
            )
            return None
        EVENTS_TRACKED.labels(type=event_type.value).inc()
        await self._after_persist(event)
        return event

    async def track_batch(self, items: Iterable[EventCreate], user_id: int) -> list[Event]:
        try:
            rows = [
                {
                    "event_type": item.type,
                    "user_id": user_id,
                    "payload": _payload(item.metadata),
                    "session_id": item.session_id,
                }
                for item in items
            ]
            events = await self.events.append_many(rows)
        except (ValidationError, SQLAlchemyError, OSError) as exc:
            logger.error("event_batch_track_failed", user_id=user_id, error=str(exc))
            return []
        for event in events:
            EVENTS_TRACKED.labels(type=event.type.value).inc()
            await self._after_persist(event)
        return events

    async def _after_persist(self, event: Event) -> None:
        action = PROFILE_SIGNALS.get(event.type)
        if action is not None and event.book_id is not None:
            self.queue.submit(
                "profile_incremental_update",
                lambda: self._apply_signal(event, action),
                user_id=event.user_id,
                event_id=event.event_id,
            )
        if event.type in SIGNIFICANT_EVENTS:
            await self.cache.invalidate(event.user_id)

    async def _apply_signal(self, event: Event, action: str) -> None:
        applied = await self.profile_builder.incremental_update(
            event.user_id,
            event.book_id,
            action,
            rating=event.payload.get("rating"),
            event_id=event.event_id,
        )
        if applied:
            # A request may have re-cached from the old profile in between
            await self.cache.invalidate(event.user_id)

    # ── Typed convenience wrappers ──

    async def track_book_view(
        self,
        user_id: int,
        book_id: int,
        duration: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        event = await self.track(
            EventType.BOOK_VIEWED,
            user_id,
            EventMetadata(book_id=book_id, duration=duration),
            session_id,
        )
        self.queue.submit(
            "record_view",
            lambda: self.profile_builder.record_view(user_id, book_id, duration, session_id),
            user_id=user_id,
        )
        return event

    async def track_rating(
        self, user_id: int, book_id: int, rating: int, session_id: Optional[str] = None
    ) -> Optional[Event]:
        return await self.track(
            EventType.BOOK_RATED, user_id, {"book_id": book_id, "rating": rating}, session_id
        )

    async def track_like(
        self, user_id: int, book_id: int, liked: bool = True, session_id: Optional[str] = None
    ) -> Optional[Event]:
        event_type = EventType.BOOK_LIKED if liked else EventType.BOOK_UNLIKED
        return await self.track(event_type, user_id, EventMetadata(book_id=book_id), session_id)

    async def track_add_to_shelf(
        self,
        user_id: int,
        book_id: int,
        shelf: str,
        rating: Optional[int] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        event_type = SHELF_EVENTS.get(shelf, EventType.BOOK_ADDED_TO_SHELF)
        return await self.track(
            event_type,
            user_id,
            {"book_id": book_id, "shelf": shelf, "rating": rating},
            session_id,
        )

    async def track_search(
        self,
        user_id: int,
        query: str,
        results_count: int = 0,
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        event = await self.track(
            EventType.SEARCH_PERFORMED,
            user_id,
            EventMetadata(query=query, results_count=results_count),
            session_id,
        )
        self.queue.submit(
            "record_search",
            lambda: self.profile_builder.record_search(user_id, query),
            user_id=user_id,
        )
        return event

    async def track_recommendation_click(
        self,
        user_id: int,
        book_id: int,
        source: str = "recommendation",
        position: Optional[int] = None,
        algorithm: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        """Emits the source-specific click plus a generic recommendation click."""
        metadata = EventMetadata(book_id=book_id, source=source, position=position, algorithm=algorithm)
        click_type = CLICK_EVENTS.get(source, EventType.BOOK_CLICKED_FROM_RECOMMENDATION)
        await self.track(click_type, user_id, metadata, session_id)
        event = await self.track(EventType.RECOMMENDATION_CLICKED, user_id, metadata, session_id)
        if self.log_store is not None:
            log_store = self.log_store
            self.queue.submit(
                "mark_recommendation_clicked",
                lambda: log_store.update_status(user_id, book_id, "clicked"),
                user_id=user_id,
                book_id=book_id,
            )
        return event

    async def track_follow(
        self,
        user_id: int,
        target_user_id: int,
        followed: bool = True,
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        event_type = EventType.USER_FOLLOWED if followed else EventType.USER_UNFOLLOWED
        return await self.track(
            event_type, user_id, EventMetadata(target_user_id=target_user_id), session_id
        )

    async def track_onboarding_completed(
        self,
        user_id: int,
        genres: list[str],
        authors: list[str],
        session_id: Optional[str] = None,
    ) -> Optional[Event]:
        return await self.track(
            EventType.ONBOARDING_COMPLETED,
            user_id,
            EventMetadata(genres=genres, authors=authors),
            session_id,
        )

    # ── Activity summaries ──

    async def get_recent_activity(self, user_id: int, days: int = 7) -> ActivitySummary:
        counts = await self.events.count_by_type(user_id, utcnow() - timedelta(days=days))
        return ActivitySummary(
            user_id=user_id,
            days=days,
            viewed=counts.get(EventType.BOOK_VIEWED, 0),
            rated=counts.get(EventType.BOOK_RATED, 0),
            liked=counts.get(EventType.BOOK_LIKED, 0),
            added=sum(counts.get(t, 0) for t in ADDED_EVENTS),
            searches=counts.get(EventType.SEARCH_PERFORMED, 0),
            follows=sum(counts.get(t, 0) for t in FOLLOW_EVENTS),
        )

    async def calculate_engagement_score(self, user_id: int, days: int = 30) -> float:
        """0-100; 200 weighted actions in the window saturate the score."""
        activity = await self.get_recent_activity(user_id, days)
        weighted = (
            activity.rated * 10
            + activity.liked * 5
            + activity.added * 8
            + activity.searches * 2
            + activity.viewed
            + activity.follows * 3
        )
        return min(100.0, round(weighted / 200 * 100, 2))

    async def is_active_user(self, user_id: int, days: int = 7) -> bool:
        activity = await self.get_recent_activity(user_id, days)
        return activity.rated + activity.liked + activity.added + activity.searches > 0
