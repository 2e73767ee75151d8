"""A user's social-graph slice: who they follow and what is in their collections."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class ShelfEntry(BaseModel):
    book_id: int
    rating: Optional[int] = Field(None, ge=1, le=5)
    finished_on: Optional[datetime] = None


class UserLibrary(BaseModel):
    user_id: int
    name: str = ""
    following: list[int] = Field(default_factory=list)
    shelf: list[ShelfEntry] = Field(default_factory=list)
    liked: list[int] = Field(default_factory=list)
    tbr: list[int] = Field(default_factory=list)
    currently_reading: list[int] = Field(default_factory=list)
    favorites: list[int] = Field(default_factory=list)
    top_picks: list[int] = Field(default_factory=list)

    def owned_book_ids(self) -> set[int]:
        owned = {entry.book_id for entry in self.shelf}
        for ids in (self.liked, self.tbr, self.currently_reading, self.favorites, self.top_picks):
            owned.update(ids)
        return owned

    def all_book_ids(self) -> list[int]:
        return sorted(self.owned_book_ids())

    def loved_book_ids(self, min_rating: int = 4) -> list[int]:
        """Highly rated shelf entries plus favorites, in that order, deduped."""
        loved = [e.book_id for e in self.shelf if e.rating is not None and e.rating >= min_rating]
        loved.extend(self.favorites)
        return list(dict.fromkeys(loved))

    def follows(self, user_id: int) -> bool:
        return user_id in self.following
