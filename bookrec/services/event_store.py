"""Append-only event log queries."""

from __future__ import annotations

import uuid
from collections.abc import Iterable
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookrec.clock import utcnow
from bookrec.models.event import Event, EventType


class EventStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _build(
        event_type: EventType,
        user_id: int,
        payload: Optional[dict] = None,
        session_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        return Event(
            event_id=str(uuid.uuid4()),
            type=event_type,
            user_id=user_id,
            session_id=session_id,
            payload=payload or {},
            timestamp=timestamp or utcnow(),
        )

    async def append(
        self,
        event_type: EventType,
        user_id: int,
        payload: Optional[dict] = None,
        session_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> Event:
        event = self._build(event_type, user_id, payload, session_id, timestamp)
        async with self._session_factory() as session:
            async with session.begin():
                session.add(event)
        return event

    async def append_many(self, items: Iterable[dict]) -> list[Event]:
        events = [self._build(**item) for item in items]
        if not events:
            return []
        async with self._session_factory() as session:
            async with session.begin():
                session.add_all(events)
        return events

    async def user_events(
        self,
        user_id: int,
        *,
        types: Optional[Iterable[EventType]] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> list[Event]:
        stmt = select(Event).where(Event.user_id == user_id)
        if types is not None:
            stmt = stmt.where(Event.type.in_(list(types)))
        if since is not None:
            stmt = stmt.where(Event.timestamp >= since)
        stmt = stmt.order_by(desc(Event.timestamp), desc(Event.id)).limit(limit)
        async with self._session_factory() as session:
            return list((await session.execute(stmt)).scalars().all())

    async def count_by_type(self, user_id: int, since: datetime) -> dict[EventType, int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Event.type, func.count(Event.id))
                .where(Event.user_id == user_id, Event.timestamp >= since)
                .group_by(Event.type)
            )
            return {event_type: count for event_type, count in result.all()}

    async def book_stats(self, book_id: int, days: int = 30) -> dict[str, int]:
        since = utcnow() - timedelta(days=days)
        async with self._session_factory() as session:
            result = await session.execute(
                select(Event.type, func.count(Event.id))
                .where(
                    Event.payload["book_id"].as_integer() == book_id,
                    Event.timestamp >= since,
                )
                .group_by(Event.type)
            )
            return {event_type.value: count for event_type, count in result.all()}

    async def user_searches(self, user_id: int, limit: int = 20) -> list[str]:
        events = await self.user_events(user_id, types=[EventType.SEARCH_PERFORMED], limit=limit)
        return [e.payload.get("query") for e in events if e.payload.get("query")]

    async def active_user_ids(self, since: datetime, limit: int = 1000) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Event.user_id)
                .where(Event.timestamp >= since)
                .group_by(Event.user_id)
                .order_by(desc(func.max(Event.timestamp)))
                .limit(limit)
            )
            return list(result.scalars().all())

    async def purge_older_than(self, cutoff: datetime) -> int:
        async with self._session_factory() as session:
            async with session.begin():
                result = await session.execute(delete(Event).where(Event.timestamp < cutoff))
        return result.rowcount or 0
