"""
Recommendation service: the hybrid ranking pipeline.

Request flow:
1. Serve the cached home list if it is fresh.
2. Otherwise (once per user at a time) ensure the profile is recent, pull
   candidates from genre / author / similar-to-liked queries, drop owned
   books, score, apply context, re-rank for diversity, explain.
3. Cache the result and log the impressions in the background.

New users without any signal fall through to a trending list.
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Optional

import structlog

from bookrec.clock import utcnow
from bookrec.config import RecommendationConfig
from bookrec.metrics import RECOMMENDATION_LATENCY
from bookrec.models.preference import UserPreference
from bookrec.schemas.book import BookRecord
from bookrec.schemas.library import UserLibrary
from bookrec.schemas.recommendation import (
    CacheEntry,
    Recommendation,
    RecommendationBatch,
    RecommendationContext,
    ScoreBreakdown,
)
from bookrec.services.background import BackgroundQueue
from bookrec.services.cache import RecommendationCache
from bookrec.services.catalog import BookCatalog
from bookrec.services.friend_recommendations import FriendRecommendationService
from bookrec.services.profile_builder import ProfileBuilder
from bookrec.services.recommendation_log import RecommendationLogStore
from bookrec.services.scoring import (
    ProfileSignals,
    apply_context,
    explain,
    quality_score,
    score_book,
    select_diverse,
)
from bookrec.services.singleflight import SingleFlight
from bookrec.services.social_graph import SocialGraph

logger = structlog.get_logger()

_WHITESPACE = re.compile(r"\s+")


def _dedupe_key(book: BookRecord) -> tuple[str, str]:
    title = _WHITESPACE.sub(" ", book.title or "").strip().lower()
    return title, book.primary_author.strip().lower()


def rank_score(index: int) -> float:
    return max(0.0, round(1 - index * 0.01, 4))


class RecommendationService:
    def __init__(
        self,
        catalog: BookCatalog,
        social_graph: SocialGraph,
        profile_builder: ProfileBuilder,
        friends: FriendRecommendationService,
        cache: RecommendationCache,
        log_store: RecommendationLogStore,
        queue: BackgroundQueue,
        config: RecommendationConfig,
    ):
        self.catalog = catalog
        self.social_graph = social_graph
        self.profile_builder = profile_builder
        self.friends = friends
        self.cache = cache
        self.log_store = log_store
        self.queue = queue
        self.config = config
        self._flight = SingleFlight()

    # ── Public API ──

    async def get_recommendations(
        self,
        user_id: int,
        n: int = 20,
        context: Optional[RecommendationContext] = None,
        use_cache: bool = True,
    ) -> list[Recommendation]:
        batch = await self.get_recommendations_with_source(user_id, n, context, use_cache)
        return batch.recommendations

    async def get_recommendations_with_source(
        self,
        user_id: int,
        n: int = 20,
        context: Optional[RecommendationContext] = None,
        use_cache: bool = True,
    ) -> RecommendationBatch:
        context = context or RecommendationContext()
        if n <= 0:
            return RecommendationBatch(user_id=user_id, recommendations=[], source="empty")

        if use_cache:
            cached = await self.cache.get_fresh(user_id, "home", limit=n)
            if cached is not None:
                hydrated = await self._hydrate(cached)
                logger.info("recommendation_cache_hit", user_id=user_id, count=len(hydrated))
                return RecommendationBatch(user_id=user_id, recommendations=hydrated, source="cache")

        return await self._flight.do(
            ("home", user_id, n, context.page, context.time_of_day, context.recent_activity),
            lambda: self._generate_and_cache(user_id, n, context),
        )

    async def get_friend_recommendations(
        self, user_id: int, limit: int = 20, use_cache: bool = True
    ) -> list[Recommendation]:
        if use_cache:
            cached = await self.cache.get_fresh(user_id, "friends", limit=limit)
            if cached is not None:
                return await self._hydrate(cached)
        return await self.friends.get_friend_recommendations(user_id, limit)

    async def refresh_user(self, user_id: int) -> Optional[CacheEntry]:
        """Recompute and cache both lists for one user (bulk precompute path)."""
        count = self.config.cache.recommendation_count
        home, source = await self._generate(user_id, count, RecommendationContext(page="precompute"))
        if source == "empty":
            return None
        friends: list[Recommendation] = []
        friends_requested = 0
        if self.config.features.enable_friend_recommendations:
            friends_requested = self.config.candidates.friend_activity
            friends = await self.friends.get_friend_recommendations(user_id, friends_requested)
        algorithm = "trending" if source == "trending" else "hybrid"
        return await self.cache.cache_recommendations(
            user_id,
            home,
            friends,
            algorithm=algorithm,
            home_requested=count,
            friends_requested=friends_requested,
        )

    async def get_similar_books(self, book_id: int, limit: int = 20) -> list[Recommendation]:
        """Books sharing a genre or author with ``book_id``, best rated first.

        Near-duplicates (same title and primary author from different
        ingestion sources) are collapsed, including copies of the seed book.
        """
        book = await self.catalog.get_book(book_id)
        if book is None or limit <= 0:
            return []
        genre_keys = set(book.genre_keys(self.config.genre_mapping))
        author_keys = set(book.author_keys())
        related = await self.catalog.find_related(
            sorted(genre_keys), sorted(author_keys), limit=limit * 2, exclude_ids=[book_id]
        )

        seen = {_dedupe_key(book)}
        results: list[Recommendation] = []
        for candidate in related:
            key = _dedupe_key(candidate)
            if key in seen:
                continue
            seen.add(key)
            index = len(results)
            breakdown = ScoreBreakdown(
                genre=1.0 if genre_keys & set(candidate.genre_keys(self.config.genre_mapping)) else 0.0,
                author=1.0 if author_keys & set(candidate.author_keys()) else 0.0,
                quality=quality_score(candidate),
            )
            results.append(
                Recommendation(
                    book_id=candidate.id,
                    score=rank_score(index),
                    score_breakdown=breakdown,
                    reason=self.config.explanations.similar,
                    algorithm="similar-books",
                    position=index + 1,
                    book=candidate,
                )
            )
            if len(results) >= limit:
                break
        return results

    # ── Pipeline ──

    async def _generate_and_cache(
        self, user_id: int, n: int, context: RecommendationContext
    ) -> RecommendationBatch:
        try:
            recommendations, source = await self._generate(user_id, n, context)
        except Exception as exc:
            logger.error("recommendation_generation_failed", user_id=user_id, error=str(exc))
            return await self._degraded(user_id, n)

        if source != "empty":
            algorithm = "trending" if source == "trending" else "hybrid"
            await self.cache.cache_recommendations(
                user_id, recommendations, [], algorithm=algorithm, home_requested=n
            )
        return RecommendationBatch(user_id=user_id, recommendations=recommendations, source=source)

    async def _generate(
        self, user_id: int, n: int, context: RecommendationContext
    ) -> tuple[list[Recommendation], str]:
        start_time = time.time()
        config = self.config.for_user(user_id)
        variant = self.config.variant_for_user(user_id)

        library = await self.social_graph.get_library(user_id)
        if library is None:
            logger.warning("recommendations_unknown_user", user_id=user_id)
            return [], "empty"

        preference = await self._ensure_profile(user_id)
        profile = ProfileSignals.from_preference(preference)
        owned = library.owned_book_ids()

        candidates = await self.generate_candidates(library, profile, config)
        max_pages = config.quality.max_page_count
        candidates = [
            book
            for book in candidates
            if book.id not in owned and (book.page_count or 0) <= max_pages
        ]
        if not candidates:
            trending = await self.get_trending_books(n, exclude_ids=owned, config=config)
            logger.info("recommendations_trending_fallback", user_id=user_id, count=len(trending))
            RECOMMENDATION_LATENCY.labels(algorithm="trending").observe(time.time() - start_time)
            return trending, "trending"

        now = utcnow()
        scored: list[Recommendation] = []
        for book in candidates:
            score, breakdown = score_book(book, profile, config, now)
            score = apply_context(score, book, context, profile.reading_velocity, config)
            scored.append(
                Recommendation(
                    book_id=book.id,
                    score=score,
                    score_breakdown=breakdown,
                    algorithm="hybrid",
                    book=book,
                )
            )
        scored.sort(key=lambda r: (-r.score, r.book_id))

        if config.features.enable_diversity_injection:
            genre_sets = {b.id: set(b.genre_keys(config.genre_mapping)) for b in candidates}
            selected = select_diverse(scored, n, config.diversity.pure_quality_ratio, genre_sets)
        else:
            selected = scored[:n]

        for position, rec in enumerate(selected, start=1):
            rec.position = position
            rec.reason = explain(rec.score_breakdown, rec.book, profile, config)

        latency = time.time() - start_time
        RECOMMENDATION_LATENCY.labels(algorithm="hybrid").observe(latency)
        logger.info(
            "recommendations_generated",
            user_id=user_id,
            candidates=len(candidates),
            count=len(selected),
            variant=variant.name if variant else None,
            latency_ms=round(latency * 1000, 2),
        )
        self._log_in_background(user_id, selected, context, variant.name if variant else None)
        return selected, "fresh"

    async def _ensure_profile(self, user_id: int) -> UserPreference:
        return await self._flight.do(
            ("profile", user_id), lambda: self.profile_builder.ensure_profile(user_id)
        )

    async def generate_candidates(
        self,
        library: UserLibrary,
        profile: ProfileSignals,
        config: Optional[RecommendationConfig] = None,
    ) -> list[BookRecord]:
        """Merged, de-duplicated candidates from the three sources (owned books not yet removed)."""
        config = config or self.config
        limits = config.candidates
        quality = config.quality
        results = await asyncio.gather(
            self.catalog.find_by_genres(
                profile.top_genres(limits.top_genres),
                limit=limits.genre_based,
                min_pages=quality.min_page_count,
                min_rating=quality.min_rating,
            ),
            self.catalog.find_by_authors(
                profile.top_authors(limits.top_authors),
                limit=limits.author_based,
                min_pages=quality.min_page_count,
            ),
            self._similar_to_liked(library, config),
        )
        merged: dict[int, BookRecord] = {}
        for source in results:
            for book in source:
                merged.setdefault(book.id, book)
        return list(merged.values())

    async def _similar_to_liked(self, library: UserLibrary, config: RecommendationConfig) -> list[BookRecord]:
        loved_ids = library.loved_book_ids(config.friendship.min_loved_rating)[:10]
        if not loved_ids:
            return []
        loved = await self.catalog.get_books(loved_ids)
        genre_keys: dict[str, None] = {}
        author_keys: dict[str, None] = {}
        for book in loved.values():
            genre_keys.update(dict.fromkeys(book.genre_keys(config.genre_mapping)))
            author_keys.update(dict.fromkeys(book.author_keys()))
        return await self.catalog.find_related(
            list(genre_keys),
            list(author_keys),
            limit=config.candidates.similar_to_liked,
            exclude_ids=loved_ids,
        )

    async def get_trending_books(
        self,
        limit: int,
        exclude_ids: Optional[set[int]] = None,
        config: Optional[RecommendationConfig] = None,
    ) -> list[Recommendation]:
        config = config or self.config
        books = await self.catalog.trending(
            limit=limit,
            min_pages=config.quality.min_page_count,
            exclude_ids=exclude_ids or (),
        )
        return [
            Recommendation(
                book_id=book.id,
                score=rank_score(index),
                score_breakdown=ScoreBreakdown(quality=1.0, trending=1.0),
                reason=config.explanations.trending_fallback,
                algorithm="trending",
                position=index + 1,
                book=book,
            )
            for index, book in enumerate(books)
        ]

    # ── Helpers ──

    async def _hydrate(self, recommendations: list[Recommendation]) -> list[Recommendation]:
        """Attach catalog records; entries whose book has left the catalog are dropped."""
        books = await self.catalog.get_books(r.book_id for r in recommendations)
        return [
            r.model_copy(update={"book": books[r.book_id]})
            for r in recommendations
            if r.book_id in books
        ]

    async def _degraded(self, user_id: int, n: int) -> RecommendationBatch:
        try:
            stale = await self.cache.get_stale(user_id, "home")
            if stale:
                hydrated = await self._hydrate(stale[:n])
                logger.warning("recommendations_served_stale", user_id=user_id, count=len(hydrated))
                return RecommendationBatch(user_id=user_id, recommendations=hydrated, source="stale")
            trending = await self.get_trending_books(n)
            logger.warning("recommendations_served_trending", user_id=user_id, count=len(trending))
            return RecommendationBatch(user_id=user_id, recommendations=trending, source="trending")
        except Exception as exc:
            logger.error("recommendation_fallback_failed", user_id=user_id, error=str(exc))
            return RecommendationBatch(user_id=user_id, recommendations=[], source="empty")

    def _log_in_background(
        self,
        user_id: int,
        recommendations: list[Recommendation],
        context: RecommendationContext,
        variant: Optional[str],
    ) -> None:
        if not recommendations:
            return
        snapshot = [r.model_copy(update={"book": None}) for r in recommendations]
        self.queue.submit(
            "log_recommendations",
            lambda: self.log_store.log_recommendations(user_id, snapshot, context, variant),
            user_id=user_id,
            count=len(snapshot),
        )
