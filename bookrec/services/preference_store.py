"""Persistence for user preference profiles.

Every write is a locked read-modify-write in its own transaction, so two
concurrent updates for one user serialize instead of overwriting each other.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from datetime import timedelta
from typing import Optional

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookrec.clock import utcnow
from bookrec.models.preference import ProfileSignalReceipt, UserPreference

logger = structlog.get_logger()


class PreferenceStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get(self, user_id: int) -> Optional[UserPreference]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserPreference).where(UserPreference.user_id == user_id)
            )
            return result.scalar_one_or_none()

    async def get_many(self, user_ids: Iterable[int]) -> dict[int, UserPreference]:
        ids = sorted(set(user_ids))
        if not ids:
            return {}
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserPreference).where(UserPreference.user_id.in_(ids))
            )
            return {p.user_id: p for p in result.scalars().all()}

    async def get_or_create(self, user_id: int) -> UserPreference:
        existing = await self.get(user_id)
        if existing is not None:
            return existing
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    preference = UserPreference(
                        user_id=user_id,
                        genre_weights={},
                        author_weights={},
                        avg_page_length=350.0,
                        diversity_score=0.0,
                        reading_velocity=0.0,
                        recent_views=[],
                        recent_searches=[],
                    )
                    session.add(preference)
            logger.info("preference_profile_created", user_id=user_id)
            return preference
        except IntegrityError:
            # Another request created it first
            logger.info("preference_profile_create_race", user_id=user_id)
            existing = await self.get(user_id)
            if existing is None:
                raise
            return existing

    async def update(
        self,
        user_id: int,
        mutate: Callable[[UserPreference], None],
        *,
        event_id: Optional[str] = None,
        action: Optional[str] = None,
    ) -> Optional[UserPreference]:
        """Apply ``mutate`` to the user's profile under a row lock.

        With ``event_id`` the change is recorded in the receipt table in the
        same transaction; a second delivery of that event is a no-op and
        returns None.
        """
        await self.get_or_create(user_id)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    if event_id is not None:
                        session.add(
                            ProfileSignalReceipt(
                                user_id=user_id, event_id=event_id, action=action or "unknown"
                            )
                        )
                        await session.flush()
                    result = await session.execute(
                        select(UserPreference)
                        .where(UserPreference.user_id == user_id)
                        .with_for_update()
                    )
                    preference = result.scalar_one()
                    mutate(preference)
            return preference
        except IntegrityError:
            if event_id is None:
                raise
            logger.info("profile_signal_already_applied", user_id=user_id, event_id=event_id)
            return None

    async def users_needing_recomputation(self, max_age_hours: int = 24, limit: int = 100) -> list[int]:
        cutoff = utcnow() - timedelta(hours=max_age_hours)
        async with self._session_factory() as session:
            result = await session.execute(
                select(UserPreference.user_id)
                .where(
                    or_(
                        UserPreference.last_computed.is_(None),
                        UserPreference.last_computed <= cutoff,
                    )
                )
                .order_by(UserPreference.last_computed.is_(None).desc(), UserPreference.last_computed)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def purge_receipts_older_than(self, cutoff) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(
                    delete(ProfileSignalReceipt).where(ProfileSignalReceipt.created_at < cutoff)
                )
        return result.rowcount or 0
