"""Book catalog access.

The catalog is owned by the ingestion pipeline; the recommender only reads it.
``BookCatalog`` is the contract, ``SqlBookCatalog`` the Postgres-backed
implementation over the ``books`` / ``book_genres`` / ``book_authors`` tables.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Optional, Protocol

from sqlalchemy import desc, or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookrec.models.book import Book, BookAuthor, BookGenre
from bookrec.schemas.book import BookRecord


class BookCatalog(Protocol):
    async def get_books(self, book_ids: Iterable[int]) -> dict[int, BookRecord]: ...

    async def get_book(self, book_id: int) -> Optional[BookRecord]: ...

    async def find_by_genres(
        self, genre_keys: list[str], *, limit: int, min_pages: int, min_rating: float
    ) -> list[BookRecord]: ...

    async def find_by_authors(
        self, author_keys: list[str], *, limit: int, min_pages: int
    ) -> list[BookRecord]: ...

    async def find_related(
        self,
        genre_keys: list[str],
        author_keys: list[str],
        *,
        limit: int,
        exclude_ids: Iterable[int] = (),
    ) -> list[BookRecord]: ...

    async def trending(
        self, *, limit: int, min_pages: int, exclude_ids: Iterable[int] = ()
    ) -> list[BookRecord]: ...


class SqlBookCatalog:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def _fetch(self, stmt) -> list[BookRecord]:
        async with self._session_factory() as session:
            result = await session.execute(stmt)
            return [BookRecord.from_orm_book(b) for b in result.scalars().unique().all()]

    async def get_books(self, book_ids: Iterable[int]) -> dict[int, BookRecord]:
        ids = sorted(set(book_ids))
        if not ids:
            return {}
        books = await self._fetch(select(Book).where(Book.id.in_(ids)))
        return {b.id: b for b in books}

    async def get_book(self, book_id: int) -> Optional[BookRecord]:
        return (await self.get_books([book_id])).get(book_id)

    async def find_by_genres(
        self, genre_keys: list[str], *, limit: int, min_pages: int, min_rating: float
    ) -> list[BookRecord]:
        if not genre_keys:
            return []
        matching = select(BookGenre.book_id).where(BookGenre.normalized.in_(genre_keys))
        stmt = (
            select(Book)
            .where(
                Book.id.in_(matching),
                Book.page_count >= min_pages,
                or_(Book.internal_rating >= min_rating, Book.external_rating >= min_rating),
            )
            .order_by(desc(Book.internal_rating), desc(Book.read_count), Book.id)
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def find_by_authors(
        self, author_keys: list[str], *, limit: int, min_pages: int
    ) -> list[BookRecord]:
        if not author_keys:
            return []
        matching = select(BookAuthor.book_id).where(BookAuthor.key.in_(author_keys))
        stmt = (
            select(Book)
            .where(Book.id.in_(matching), Book.page_count >= min_pages)
            .order_by(desc(Book.external_rating), Book.id)
            .limit(limit)
        )
        return await self._fetch(stmt)

    async def find_related(
        self,
        genre_keys: list[str],
        author_keys: list[str],
        *,
        limit: int,
        exclude_ids: Iterable[int] = (),
    ) -> list[BookRecord]:
        clauses = []
        if genre_keys:
            clauses.append(
                Book.id.in_(select(BookGenre.book_id).where(BookGenre.normalized.in_(genre_keys)))
            )
        if author_keys:
            clauses.append(
                Book.id.in_(select(BookAuthor.book_id).where(BookAuthor.key.in_(author_keys)))
            )
        if not clauses:
            return []
        stmt = select(Book).where(or_(*clauses))
        excluded = list(set(exclude_ids))
        if excluded:
            stmt = stmt.where(Book.id.not_in(excluded))
        stmt = stmt.order_by(desc(Book.internal_rating), Book.id).limit(limit)
        return await self._fetch(stmt)

    async def trending(
        self, *, limit: int, min_pages: int, exclude_ids: Iterable[int] = ()
    ) -> list[BookRecord]:
        stmt = select(Book).where(Book.page_count >= min_pages)
        excluded = list(set(exclude_ids))
        if excluded:
            stmt = stmt.where(Book.id.not_in(excluded))
        stmt = stmt.order_by(
            desc(Book.internal_rating * Book.read_count),
            desc(Book.internal_rating),
            Book.id,
        ).limit(limit)
        return await self._fetch(stmt)
