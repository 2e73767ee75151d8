"""Interaction event ORM model (append-only, 90-day retention)."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from bookrec.clock import utcnow
from bookrec.database import Base


class EventType(str, enum.Enum):
    # Book interactions
    BOOK_VIEWED = "book.viewed"
    BOOK_RATED = "book.rated"
    BOOK_LIKED = "book.liked"
    BOOK_UNLIKED = "book.unliked"
    BOOK_ADDED_TO_SHELF = "book.added_to_shelf"
    BOOK_REMOVED_FROM_SHELF = "book.removed_from_shelf"
    BOOK_ADDED_TO_TBR = "book.added_to_tbr"
    BOOK_REMOVED_FROM_TBR = "book.removed_from_tbr"
    BOOK_STARTED_READING = "book.started_reading"
    BOOK_FINISHED_READING = "book.finished_reading"
    BOOK_ADDED_TO_FAVORITES = "book.added_to_favorites"
    BOOK_ADDED_TO_TOP = "book.added_to_top"
    BOOK_REVIEWED = "book.reviewed"
    BOOK_SHARED = "book.shared"
    BOOK_CLICKED_FROM_SEARCH = "book.clicked_from_search"
    BOOK_CLICKED_FROM_RECOMMENDATION = "book.clicked_from_recommendation"
    BOOK_CLICKED_FROM_SIMILAR = "book.clicked_from_similar"
    BOOK_CLICKED_FROM_FRIENDS = "book.clicked_from_friends"

    SEARCH_PERFORMED = "search.performed"

    # Social
    USER_FOLLOWED = "user.followed"
    USER_UNFOLLOWED = "user.unfollowed"
    USER_PROFILE_VIEWED = "user.profile_viewed"

    # Lists
    LIST_CREATED = "list.created"
    LIST_UPDATED = "list.updated"
    LIST_DELETED = "list.deleted"
    BOOK_ADDED_TO_LIST = "book.added_to_list"
    BOOK_REMOVED_FROM_LIST = "book.removed_from_list"

    # Recommendation feedback
    RECOMMENDATION_VIEWED = "recommendation.viewed"
    RECOMMENDATION_CLICKED = "recommendation.clicked"
    RECOMMENDATION_DISMISSED = "recommendation.dismissed"
    RECOMMENDATION_CONVERTED = "recommendation.converted"

    # Onboarding
    ONBOARDING_STARTED = "onboarding.started"
    ONBOARDING_COMPLETED = "onboarding.completed"
    GENRE_SELECTED = "genre.selected"
    AUTHOR_SELECTED = "author.selected"


# Actions that can change what we would recommend; they mark the cache stale.
SIGNIFICANT_EVENTS: frozenset[EventType] = frozenset(
    {
        EventType.BOOK_RATED,
        EventType.BOOK_LIKED,
        EventType.BOOK_ADDED_TO_SHELF,
        EventType.BOOK_FINISHED_READING,
        EventType.BOOK_ADDED_TO_TBR,
        EventType.BOOK_ADDED_TO_FAVORITES,
        EventType.BOOK_ADDED_TO_TOP,
        EventType.USER_FOLLOWED,
        EventType.USER_UNFOLLOWED,
    }
)

# Event type -> incremental profile action
PROFILE_SIGNALS: dict[EventType, str] = {
    EventType.BOOK_RATED: "rated",
    EventType.BOOK_LIKED: "liked",
    EventType.BOOK_FINISHED_READING: "added_to_shelf",
    EventType.BOOK_ADDED_TO_SHELF: "added_to_shelf",
    EventType.BOOK_ADDED_TO_TBR: "added_to_tbr",
}


class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        Index("ix_events_user_type_ts", "user_id", "type", "timestamp"),
        Index("ix_events_type_ts", "type", "timestamp"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    event_id: Mapped[str] = mapped_column(String(36), unique=True, nullable=False)
    type: Mapped[EventType] = mapped_column(
        Enum(EventType, values_callable=lambda e: [x.value for x in e], native_enum=False, length=64),
        nullable=False,
    )
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    # "metadata" is reserved on declarative classes
    payload: Mapped[dict] = mapped_column("metadata", JSON, default=dict)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )

    @property
    def book_id(self) -> Optional[int]:
        value = (self.payload or {}).get("book_id")
        return int(value) if value is not None else None

    def __repr__(self) -> str:
        return f"<Event id={self.event_id} type={self.type.value} user={self.user_id}>"
