"""
Friend-based recommendations.

Each followed user contributes the books they loved (4-5 stars on the shelf,
favorites, top picks), weighted by how strong the friendship is. Strength
blends mutual following, shared friends, and genre-taste similarity.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

import structlog
from pydantic import BaseModel

from bookrec.config import FriendshipSettings, RecommendationConfig
from bookrec.models.preference import UserPreference
from bookrec.schemas.book import BookRecord
from bookrec.schemas.library import UserLibrary
from bookrec.schemas.recommendation import Recommendation, ScoreBreakdown, clamp01
from bookrec.services.catalog import BookCatalog
from bookrec.services.preference_store import PreferenceStore
from bookrec.services.social_graph import SocialGraph
from bookrec.services.weights import cosine_similarity

logger = structlog.get_logger()

ALGORITHM = "friend-activity"


def friendship_strength(
    is_mutual: bool,
    mutual_friend_count: int,
    taste_similarity: float,
    settings: FriendshipSettings,
) -> float:
    strength = settings.base_strength
    if is_mutual:
        strength += settings.mutual_follow_bonus
    strength += min(mutual_friend_count * settings.mutual_friend_weight, settings.max_mutual_friend_bonus)
    strength += clamp01(taste_similarity) * settings.taste_similarity_weight
    return clamp01(strength)


def taste_similarity(a: Optional[UserPreference], b: Optional[UserPreference]) -> float:
    if a is None or b is None:
        return 0.0
    return cosine_similarity(a.genre_weights or {}, b.genre_weights or {})


def loved_books(library: UserLibrary, min_rating: int = 4) -> dict[int, int]:
    """book id -> effective rating; favorites and top picks count as 5 stars."""
    loved: dict[int, int] = {}
    for entry in library.shelf:
        if entry.rating is not None and entry.rating >= min_rating:
            loved[entry.book_id] = max(loved.get(entry.book_id, 0), entry.rating)
    for book_id in [*library.favorites, *library.top_picks]:
        loved[book_id] = 5
    return loved


def attribution(names: list[str], fallback: str) -> str:
    """'X loved this', 'X and Y loved this', 'X, Y and N others loved this'."""
    if not names:
        return fallback
    if len(names) == 1:
        return f"{names[0]} loved this"
    if len(names) == 2:
        return f"{names[0]} and {names[1]} loved this"
    others = len(names) - 2
    return f"{names[0]}, {names[1]} and {others} other{'s' if others > 1 else ''} loved this"


@dataclass
class FriendVote:
    friend_id: int
    name: str
    strength: float
    rating: int


@dataclass
class FriendBookAggregate:
    book_id: int
    friends: list[FriendVote] = field(default_factory=list)
    total_strength: float = 0.0
    highest_rating: int = 0

    def add(self, vote: FriendVote) -> None:
        self.friends.append(vote)
        self.total_strength += vote.strength
        self.highest_rating = max(self.highest_rating, vote.rating)

    def score(self) -> tuple[float, ScoreBreakdown]:
        strength_term = min(self.total_strength / 3, 1.0)
        count_term = min(len(self.friends) / 5, 1.0)
        rating_term = self.highest_rating / 5
        friends = 0.5 * strength_term + 0.3 * count_term
        breakdown = ScoreBreakdown(friends=clamp01(friends), quality=clamp01(rating_term))
        return clamp01(friends + 0.2 * rating_term), breakdown

    def ranked_names(self) -> list[str]:
        votes = sorted(self.friends, key=lambda v: (-v.strength, v.name))
        return [v.name for v in votes]


class FriendActivity(BaseModel):
    friend_id: int
    friend_name: str
    book: BookRecord


class FriendRecommendationService:
    def __init__(
        self,
        catalog: BookCatalog,
        social_graph: SocialGraph,
        preferences: PreferenceStore,
        config: RecommendationConfig,
    ):
        self.catalog = catalog
        self.social_graph = social_graph
        self.preferences = preferences
        self.config = config

    def _strength(
        self,
        user: UserLibrary,
        friend: UserLibrary,
        preferences: dict[int, UserPreference],
    ) -> float:
        is_mutual = user.follows(friend.user_id) and friend.follows(user.user_id)
        shared = (set(user.following) & set(friend.following)) - {user.user_id, friend.user_id}
        similarity = taste_similarity(preferences.get(user.user_id), preferences.get(friend.user_id))
        return friendship_strength(is_mutual, len(shared), similarity, self.config.friendship)

    async def calculate_friendship_strength(self, user_id: int, friend_id: int) -> float:
        libraries = await self.social_graph.get_libraries([user_id, friend_id])
        if user_id not in libraries or friend_id not in libraries:
            return 0.0
        preferences = await self.preferences.get_many([user_id, friend_id])
        return self._strength(libraries[user_id], libraries[friend_id], preferences)

    async def get_friend_recommendations(self, user_id: int, limit: int = 20) -> list[Recommendation]:
        if not self.config.features.enable_friend_recommendations:
            return []
        library = await self.social_graph.get_library(user_id)
        if library is None or not library.following:
            return []

        friend_libraries = await self.social_graph.get_libraries(library.following)
        preferences = await self.preferences.get_many([user_id, *friend_libraries])
        min_rating = self.config.friendship.min_loved_rating

        aggregates: dict[int, FriendBookAggregate] = {}
        for friend_id in library.following:
            friend = friend_libraries.get(friend_id)
            if friend is None:
                continue
            strength = self._strength(library, friend, preferences)
            for book_id, rating in loved_books(friend, min_rating).items():
                aggregate = aggregates.setdefault(book_id, FriendBookAggregate(book_id=book_id))
                aggregate.add(FriendVote(friend_id, friend.name, strength, rating))

        owned = library.owned_book_ids()
        for book_id in owned:
            aggregates.pop(book_id, None)
        if not aggregates:
            return []

        books = await self.catalog.get_books(aggregates)
        fallback = self.config.explanations.friends_fallback
        scored = []
        for book_id, aggregate in aggregates.items():
            book = books.get(book_id)
            if book is None:
                continue
            score, breakdown = aggregate.score()
            scored.append(
                Recommendation(
                    book_id=book_id,
                    score=score,
                    score_breakdown=breakdown,
                    reason=attribution(aggregate.ranked_names(), fallback),
                    algorithm=ALGORITHM,
                    book=book,
                )
            )
        scored.sort(key=lambda r: (-r.score, r.book_id))
        selected = scored[:limit]
        for position, rec in enumerate(selected, start=1):
            rec.position = position
        logger.info(
            "friend_recommendations_generated",
            user_id=user_id,
            friends=len(friend_libraries),
            candidates=len(scored),
            returned=len(selected),
        )
        return selected

    async def books_friends_loved_together(
        self, user_id: int, friend_ids: list[int], limit: int = 10
    ) -> list[BookRecord]:
        """Books loved by at least two of the given friends and not owned by the user."""
        libraries = await self.social_graph.get_libraries([user_id, *friend_ids])
        user = libraries.get(user_id)
        owned = user.owned_book_ids() if user else set()
        min_rating = self.config.friendship.min_loved_rating

        counts: dict[int, int] = {}
        for friend_id in dict.fromkeys(friend_ids):
            friend = libraries.get(friend_id)
            if friend is None or friend_id == user_id:
                continue
            for book_id in loved_books(friend, min_rating):
                counts[book_id] = counts.get(book_id, 0) + 1
        shared = sorted(
            (book_id for book_id, count in counts.items() if count >= 2 and book_id not in owned),
            key=lambda book_id: (-counts[book_id], book_id),
        )[:limit]
        books = await self.catalog.get_books(shared)
        return [books[book_id] for book_id in shared if book_id in books]

    async def _friend_activity(self, user_id: int, limit: int, collection: str) -> list[FriendActivity]:
        library = await self.social_graph.get_library(user_id)
        if library is None or not library.following:
            return []
        friends = await self.social_graph.get_libraries(library.following)
        pairs: list[tuple[UserLibrary, int]] = []
        for friend_id in library.following:
            friend = friends.get(friend_id)
            if friend is None:
                continue
            # collections are ordered oldest first; newest activity first here
            for book_id in reversed(getattr(friend, collection)):
                pairs.append((friend, book_id))
        books = await self.catalog.get_books(book_id for _, book_id in pairs)
        activity = [
            FriendActivity(friend_id=friend.user_id, friend_name=friend.name, book=books[book_id])
            for friend, book_id in pairs
            if book_id in books
        ]
        return activity[:limit]

    async def friends_currently_reading(self, user_id: int, limit: int = 10) -> list[FriendActivity]:
        return await self._friend_activity(user_id, limit, "currently_reading")

    async def friends_recent_favorites(self, user_id: int, limit: int = 10) -> list[FriendActivity]:
        return await self._friend_activity(user_id, limit, "favorites")
