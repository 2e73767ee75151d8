"""Event ingestion and activity schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from bookrec.models.event import EventType


class EventMetadata(BaseModel):
    """Variant payload; only the fields relevant to an event kind are set."""

    model_config = ConfigDict(extra="allow")

    book_id: Optional[int] = None
    rating: Optional[int] = Field(None, ge=1, le=5)
    query: Optional[str] = None
    results_count: Optional[int] = None
    target_user_id: Optional[int] = None
    algorithm: Optional[str] = None
    position: Optional[int] = None
    source: Optional[str] = None
    shelf: Optional[str] = None
    duration: Optional[float] = None
    genres: Optional[list[str]] = None
    authors: Optional[list[str]] = None


class EventCreate(BaseModel):
    type: EventType
    metadata: EventMetadata = Field(default_factory=EventMetadata)
    session_id: Optional[str] = None


class EventResponse(BaseModel):
    model_config = {"from_attributes": True}

    event_id: str
    type: EventType
    user_id: int
    session_id: Optional[str]
    timestamp: datetime


class ActivitySummary(BaseModel):
    user_id: int
    days: int
    viewed: int = 0
    rated: int = 0
    liked: int = 0
    added: int = 0
    searches: int = 0
    follows: int = 0
    engagement_score: Optional[float] = None
    is_active: Optional[bool] = None


class OnboardingGenre(BaseModel):
    genre: str = Field(min_length=1)
    weight: float = Field(1.0, ge=0)


class OnboardingRequest(BaseModel):
    genres: list[OnboardingGenre] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
