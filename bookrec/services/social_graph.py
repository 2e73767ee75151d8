"""Social graph access: follow lists and per-user book collections."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookrec.clock import ensure_utc
from bookrec.models.user import Collection, Follow, User, UserBook
from bookrec.schemas.library import ShelfEntry, UserLibrary


class SocialGraph(Protocol):
    async def get_library(self, user_id: int) -> Optional[UserLibrary]: ...

    async def get_libraries(self, user_ids: Iterable[int]) -> dict[int, UserLibrary]: ...

    async def get_following(self, user_id: int) -> list[int]: ...


_COLLECTION_FIELDS = {
    Collection.LIKED: "liked",
    Collection.TBR: "tbr",
    Collection.CURRENTLY_READING: "currently_reading",
    Collection.FAVORITES: "favorites",
    Collection.TOP: "top_picks",
}


class SqlSocialGraph:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_library(self, user_id: int) -> Optional[UserLibrary]:
        return (await self.get_libraries([user_id])).get(user_id)

    async def get_libraries(self, user_ids: Iterable[int]) -> dict[int, UserLibrary]:
        """Load several users in three queries regardless of how many are asked for."""
        ids = sorted(set(user_ids))
        if not ids:
            return {}

        async with self._session_factory() as session:
            users = (await session.execute(select(User).where(User.id.in_(ids)))).scalars().all()
            follows = (
                await session.execute(
                    select(Follow.follower_id, Follow.followee_id)
                    .where(Follow.follower_id.in_(ids))
                    .order_by(Follow.id)
                )
            ).all()
            memberships = (
                await session.execute(
                    select(UserBook)
                    .where(UserBook.user_id.in_(ids))
                    .order_by(UserBook.added_at, UserBook.id)
                )
            ).scalars().all()

        libraries = {u.id: UserLibrary(user_id=u.id, name=u.name) for u in users}
        for follower_id, followee_id in follows:
            if follower_id in libraries:
                libraries[follower_id].following.append(followee_id)
        for row in memberships:
            library = libraries.get(row.user_id)
            if library is None:
                continue
            if row.collection == Collection.SHELF:
                library.shelf.append(
                    ShelfEntry(
                        book_id=row.book_id,
                        rating=row.rating,
                        finished_on=ensure_utc(row.finished_on),
                    )
                )
            else:
                getattr(library, _COLLECTION_FIELDS[row.collection]).append(row.book_id)
        return libraries

    async def get_following(self, user_id: int) -> list[int]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(Follow.followee_id).where(Follow.follower_id == user_id).order_by(Follow.id)
            )
            return list(result.scalars().all())
