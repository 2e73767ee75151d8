"""Book catalog ORM models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Float, ForeignKey, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bookrec.database import Base
from bookrec.services.genres import normalize_genre, sanitize_author


class Book(Base):
    __tablename__ = "books"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    page_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    published_date: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    internal_rating: Mapped[float] = mapped_column(Float, default=0.0, server_default="0.0")
    internal_rating_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    external_rating: Mapped[float] = mapped_column(Float, default=0.0, server_default="0.0")
    external_rating_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    read_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    like_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    tbr_count: Mapped[int] = mapped_column(Integer, default=0, server_default="0")
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    genres: Mapped[list[BookGenre]] = relationship(
        back_populates="book", cascade="all, delete-orphan", lazy="selectin", order_by="BookGenre.position"
    )
    authors: Mapped[list[BookAuthor]] = relationship(
        back_populates="book", cascade="all, delete-orphan", lazy="selectin", order_by="BookAuthor.position"
    )

    def set_genres(self, names: list[str], mapping: Optional[dict[str, list[str]]] = None) -> None:
        self.genres = [
            BookGenre(name=name, normalized=normalize_genre(name, mapping), position=i)
            for i, name in enumerate(names)
        ]

    def set_authors(self, names: list[str]) -> None:
        self.authors = [
            BookAuthor(name=name, key=sanitize_author(name), position=i)
            for i, name in enumerate(names)
        ]

    def __repr__(self) -> str:
        return f"<Book id={self.id} title={self.title!r}>"


class BookGenre(Base):
    __tablename__ = "book_genres"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    book_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    normalized: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    book: Mapped[Book] = relationship(back_populates="genres")


class BookAuthor(Base):
    __tablename__ = "book_authors"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    book_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("books.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)

    book: Mapped[Book] = relationship(back_populates="authors")
