"""User preference profile ORM model."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import (
    JSON,
    DateTime,
    Float,
    Integer,
    String,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, validates

from bookrec.clock import ensure_utc, utcnow
from bookrec.database import Base
from bookrec.services.weights import WeightMap


class UserPreference(Base):
    __tablename__ = "user_preferences"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, unique=True, nullable=False, index=True)
    genre_weights: Mapped[dict] = mapped_column(JSON, default=dict)
    author_weights: Mapped[dict] = mapped_column(JSON, default=dict)
    avg_page_length: Mapped[float] = mapped_column(Float, default=350.0)
    diversity_score: Mapped[float] = mapped_column(Float, default=0.0)
    reading_velocity: Mapped[float] = mapped_column(Float, default=0.0)
    last_computed: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    # {"genres": {"mystery": 1.0}, "authors": ["Agatha Christie"], "completed_at": iso}
    onboarding: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    recent_views: Mapped[list] = mapped_column(JSON, default=list)
    recent_searches: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    @validates("diversity_score")
    def _clamp_diversity(self, key, value):
        return min(1.0, max(0.0, float(value or 0.0)))

    # JSON columns are reassigned whole so the ORM sees the change.
    @property
    def genres(self) -> WeightMap:
        return WeightMap(self.genre_weights or {})

    @genres.setter
    def genres(self, weights: WeightMap) -> None:
        self.genre_weights = weights.as_dict()

    @property
    def authors(self) -> WeightMap:
        return WeightMap(self.author_weights or {})

    @authors.setter
    def authors(self, weights: WeightMap) -> None:
        self.author_weights = weights.as_dict()

    def top_genres(self, n: int = 5) -> list[str]:
        return [name for name, _ in self.genres.top(n)]

    def top_authors(self, n: int = 5) -> list[str]:
        return [name for name, _ in self.authors.top(n)]

    def needs_recomputation(self, max_age_hours: int = 24, now: Optional[datetime] = None) -> bool:
        last = ensure_utc(self.last_computed)
        if last is None:
            return True
        now = now or utcnow()
        return now - last >= timedelta(hours=max_age_hours)

    def record_view(
        self,
        book_id: int,
        duration: Optional[float] = None,
        session_id: Optional[str] = None,
        max_items: int = 100,
    ) -> None:
        entry = {
            "book_id": book_id,
            "timestamp": utcnow().isoformat(),
            "duration": duration,
            "session_id": session_id,
        }
        self.recent_views = ([entry] + list(self.recent_views or []))[:max_items]

    def record_search(self, query: str, results_clicked: Optional[list[int]] = None, max_items: int = 50) -> None:
        entry = {
            "query": query,
            "timestamp": utcnow().isoformat(),
            "results_clicked": list(results_clicked or []),
        }
        self.recent_searches = ([entry] + list(self.recent_searches or []))[:max_items]

    def __repr__(self) -> str:
        return f"<UserPreference user={self.user_id} genres={len(self.genre_weights or {})}>"


class ProfileSignalReceipt(Base):
    """One row per event already folded into a profile incrementally."""

    __tablename__ = "profile_signal_receipts"
    __table_args__ = (UniqueConstraint("user_id", "event_id", name="uq_signal_receipt"),)

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(36), nullable=False)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True
    )
