"""Recommendation impression / outcome logging and algorithm analytics.

Rows are written once per (user, book, generation) and only their outcome
flags change afterwards. Nothing in the ranking path reads them back.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Literal, Optional

import structlog
from sqlalchemy import Integer, case, delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookrec.clock import utcnow
from bookrec.models.recommendation_log import RecommendationLog
from bookrec.schemas.recommendation import (
    AlgorithmComparison,
    AlgorithmMetrics,
    Recommendation,
    RecommendationContext,
    TopPerformer,
)

logger = structlog.get_logger()

OutcomeAction = Literal["shown", "clicked", "converted", "dismissed"]
CONVERTED_ACTIONS = frozenset({"rated", "added_to_shelf", "liked", "added_to_tbr", "started_reading"})


def _flag_sum(column):
    return func.coalesce(func.sum(case((column.is_(True), 1), else_=0)), 0).cast(Integer)


def _percent(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


class RecommendationLogStore:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        status_window_days: int = 7,
    ):
        self._session_factory = session_factory
        self.status_window_days = status_window_days

    async def log_recommendations(
        self,
        user_id: int,
        recommendations: list[Recommendation],
        context: Optional[RecommendationContext] = None,
        variant: Optional[str] = None,
    ) -> int:
        if not recommendations:
            return 0
        context = context or RecommendationContext()
        now = utcnow()
        rows = [
            RecommendationLog(
                user_id=user_id,
                book_id=rec.book_id,
                algorithm=rec.algorithm,
                score=rec.score,
                score_breakdown=rec.score_breakdown.model_dump(),
                reason=rec.reason,
                position=rec.position,
                page=context.page or "home",
                session_id=context.session_id or "unknown",
                variant=variant,
                shown=True,
                shown_at=now,
                created_at=now,
            )
            for rec in recommendations
        ]
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(rows)
        return len(rows)

    async def update_status(
        self,
        user_id: int,
        book_id: int,
        action: OutcomeAction,
        converted_action: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Flag the most recent log row for (user, book) inside the status window."""
        if converted_action is not None and converted_action not in CONVERTED_ACTIONS:
            raise ValueError(f"unknown converted action: {converted_action}")
        now = now or utcnow()
        since = now - timedelta(days=self.status_window_days)
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    select(RecommendationLog)
                    .where(
                        RecommendationLog.user_id == user_id,
                        RecommendationLog.book_id == book_id,
                        RecommendationLog.created_at >= since,
                    )
                    .order_by(desc(RecommendationLog.created_at), desc(RecommendationLog.id))
                    .limit(1)
                )
                row = result.scalar_one_or_none()
                if row is None:
                    return False
                if action == "shown":
                    row.shown, row.shown_at = True, now
                elif action == "clicked":
                    row.clicked, row.clicked_at = True, now
                elif action == "converted":
                    row.converted, row.converted_at = True, now
                    row.converted_action = converted_action
                elif action == "dismissed":
                    row.dismissed, row.dismissed_at = True, now
                else:
                    raise ValueError(f"unknown outcome action: {action}")
        logger.info("recommendation_status_updated", user_id=user_id, book_id=book_id, action=action)
        return True

    async def algorithm_metrics(self, algorithm: str, days: int = 30) -> AlgorithmMetrics:
        since = utcnow() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(
                    func.count(RecommendationLog.id),
                    _flag_sum(RecommendationLog.clicked),
                    _flag_sum(RecommendationLog.converted),
                    _flag_sum(RecommendationLog.dismissed),
                ).where(
                    RecommendationLog.algorithm == algorithm,
                    RecommendationLog.created_at >= since,
                )
            )
            impressions, clicks, conversions, dismissals = result.one()
        return AlgorithmMetrics(
            algorithm=algorithm,
            impressions=impressions,
            clicks=clicks,
            conversions=conversions,
            dismissals=dismissals,
            ctr=_percent(clicks, impressions),
            conversion_rate=_percent(conversions, impressions),
        )

    async def compare_algorithms(self, a: str, b: str, days: int = 30) -> AlgorithmComparison:
        """A winner needs a click-through rate more than 10% above the other's."""
        metrics_a = await self.algorithm_metrics(a, days)
        metrics_b = await self.algorithm_metrics(b, days)
        winner = None
        if metrics_a.ctr > metrics_b.ctr * 1.1:
            winner = a
        elif metrics_b.ctr > metrics_a.ctr * 1.1:
            winner = b
        return AlgorithmComparison(a=metrics_a, b=metrics_b, winner=winner)

    async def top_performers(
        self, days: int = 30, limit: int = 10, min_impressions: int = 10
    ) -> list[TopPerformer]:
        since = utcnow() - timedelta(days=days)
        impressions = func.count(RecommendationLog.id)
        clicks = _flag_sum(RecommendationLog.clicked)
        async with self._session_factory() as session:
            result = await session.execute(
                select(RecommendationLog.book_id, impressions, clicks)
                .where(RecommendationLog.created_at >= since)
                .group_by(RecommendationLog.book_id)
                .having(impressions >= min_impressions)
            )
            rows = result.all()
        performers = [
            TopPerformer(book_id=book_id, impressions=n, clicks=c, ctr=_percent(c, n))
            for book_id, n, c in rows
        ]
        performers.sort(key=lambda p: (-p.ctr, -p.impressions, p.book_id))
        return performers[:limit]

    async def was_recently_recommended(self, user_id: int, book_id: int, days: int = 7) -> bool:
        since = utcnow() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(RecommendationLog.id)
                .where(
                    RecommendationLog.user_id == user_id,
                    RecommendationLog.book_id == book_id,
                    RecommendationLog.created_at >= since,
                )
                .limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def user_history(self, user_id: int, limit: int = 50) -> list[RecommendationLog]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(RecommendationLog)
                .where(RecommendationLog.user_id == user_id)
                .order_by(desc(RecommendationLog.created_at), RecommendationLog.position)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def purge_older_than(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(RecommendationLog).where(RecommendationLog.created_at < cutoff)
                )
        return result.rowcount or 0
