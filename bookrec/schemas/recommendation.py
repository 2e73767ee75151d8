"""Recommendation schemas: scored items, request context, and cached entries."""

from __future__ import annotations

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field

from bookrec.schemas.book import BookRecord

TimeOfDay = Literal["morning", "afternoon", "evening", "night"]
Source = Literal["cache", "fresh", "trending", "stale", "empty"]


def clamp01(value: float) -> float:
    return min(1.0, max(0.0, float(value)))


class ScoreBreakdown(BaseModel):
    genre: float = Field(0.0, ge=0, le=1)
    author: float = Field(0.0, ge=0, le=1)
    quality: float = Field(0.0, ge=0, le=1)
    friends: float = Field(0.0, ge=0, le=1)
    trending: float = Field(0.0, ge=0, le=1)
    recency: float = Field(0.0, ge=0, le=1)
    diversity: float = Field(0.0, ge=0, le=1)


class Recommendation(BaseModel):
    book_id: int
    score: float = Field(ge=0, le=1)
    score_breakdown: ScoreBreakdown = Field(default_factory=ScoreBreakdown)
    reason: str = ""
    algorithm: str = "hybrid"
    position: int = 0
    book: Optional[BookRecord] = None

    def cache_payload(self) -> dict:
        return self.model_dump(mode="json", exclude={"book"})


class RecommendationContext(BaseModel):
    page: str = "home"
    session_id: Optional[str] = None
    time_of_day: Optional[TimeOfDay] = None
    recent_activity: bool = False


def time_of_day_for_hour(hour: int) -> TimeOfDay:
    if 6 <= hour < 12:
        return "morning"
    if 12 <= hour < 17:
        return "afternoon"
    if 17 <= hour < 21:
        return "evening"
    return "night"


class RecommendationBatch(BaseModel):
    user_id: int
    recommendations: list[Recommendation]
    source: Source


class CacheEntry(BaseModel):
    user_id: int
    home: list[Recommendation] = Field(default_factory=list)
    friends: list[Recommendation] = Field(default_factory=list)
    algorithm: str = "hybrid"
    generated_at: datetime
    expires_at: datetime
    is_stale: bool = False
    # Sizes the lists were generated for; a shorter list means the pipeline ran dry
    home_requested: int = 0
    friends_requested: int = 0

    def is_fresh(self, now: datetime) -> bool:
        return not self.is_stale and self.expires_at > now

    def covers(self, slot: str, n: int) -> bool:
        """True if the slot holds ``n`` items or was generated for at least ``n``."""
        items = self.home if slot == "home" else self.friends
        requested = self.home_requested if slot == "home" else self.friends_requested
        return len(items) >= n or requested >= n


class FeedbackRequest(BaseModel):
    book_id: int
    action: Literal["shown", "clicked", "converted", "dismissed"]
    converted_action: Optional[
        Literal["rated", "added_to_shelf", "liked", "added_to_tbr", "started_reading"]
    ] = None


class AlgorithmMetrics(BaseModel):
    algorithm: str
    impressions: int = 0
    clicks: int = 0
    conversions: int = 0
    dismissals: int = 0
    ctr: float = 0.0
    conversion_rate: float = 0.0


class AlgorithmComparison(BaseModel):
    a: AlgorithmMetrics
    b: AlgorithmMetrics
    winner: Optional[str] = None


class TopPerformer(BaseModel):
    book_id: int
    impressions: int
    clicks: int
    ctr: float
