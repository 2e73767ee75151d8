"""Catalog book record as consumed by the recommender."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from bookrec.services.genres import normalize_genres, sanitize_author


class BookRecord(BaseModel):
    model_config = {"from_attributes": True}

    id: int
    title: str
    genres: list[str] = Field(default_factory=list)
    authors: list[str] = Field(default_factory=list)
    page_count: Optional[int] = None
    published_date: Optional[str] = None
    internal_rating: float = 0.0
    internal_rating_count: int = 0
    external_rating: float = 0.0
    external_rating_count: int = 0
    read_count: int = 0
    like_count: int = 0
    tbr_count: int = 0

    @classmethod
    def from_orm_book(cls, book) -> BookRecord:
        return cls(
            id=book.id,
            title=book.title,
            genres=[g.name for g in book.genres],
            authors=[a.name for a in book.authors],
            page_count=book.page_count,
            published_date=book.published_date,
            internal_rating=book.internal_rating or 0.0,
            internal_rating_count=book.internal_rating_count or 0,
            external_rating=book.external_rating or 0.0,
            external_rating_count=book.external_rating_count or 0,
            read_count=book.read_count or 0,
            like_count=book.like_count or 0,
            tbr_count=book.tbr_count or 0,
        )

    def genre_keys(self, mapping: Optional[dict[str, list[str]]] = None) -> list[str]:
        return normalize_genres(self.genres, mapping)

    def author_keys(self) -> list[str]:
        return [key for key in (sanitize_author(a) for a in self.authors) if key]

    @property
    def primary_author(self) -> str:
        return self.authors[0] if self.authors else ""
