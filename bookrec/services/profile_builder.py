"""
Profile builder: derives a user's preference profile from their collections.

Two entry points:
- build_profile: full recompute from every collection, one batched catalog
  fetch per build.
- incremental_update: folds a single new signal into the stored profile,
  deduplicated by the id of the event that produced it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import structlog

from bookrec.clock import ensure_utc, utcnow
from bookrec.config import RecommendationConfig
from bookrec.models.preference import UserPreference
from bookrec.schemas.book import BookRecord
from bookrec.schemas.library import UserLibrary
from bookrec.services.catalog import BookCatalog
from bookrec.services.genres import normalize_genre, sanitize_author
from bookrec.services.preference_store import PreferenceStore
from bookrec.services.social_graph import SocialGraph
from bookrec.services.weights import WeightMap, shannon_diversity

logger = structlog.get_logger()

INCREMENTAL_ACTIONS = ("rated", "liked", "added_to_shelf", "added_to_tbr")


@dataclass
class ComputedProfile:
    genres: WeightMap = field(default_factory=WeightMap)
    authors: WeightMap = field(default_factory=WeightMap)
    avg_page_length: float = 350.0
    diversity_score: float = 0.0
    reading_velocity: float = 0.0


def reading_velocity(finish_dates: list[datetime]) -> float:
    """Books per month between the first and last finish date."""
    if not finish_dates:
        return 0.0
    dates = sorted(ensure_utc(d) for d in finish_dates)
    span_months = (dates[-1] - dates[0]).days / 30
    if span_months < 0.5:
        return float(len(dates))
    return len(dates) / span_months


def _seed_onboarding(
    genres: WeightMap,
    authors: WeightMap,
    onboarding: Optional[dict],
    config: RecommendationConfig,
) -> None:
    if not onboarding:
        return
    settings = config.profile
    for genre, weight in (onboarding.get("genres") or {}).items():
        genres.add(normalize_genre(genre, config.genre_mapping), float(weight) * settings.onboarding_genre_multiplier)
    for author in onboarding.get("authors") or []:
        authors.add(sanitize_author(author), settings.onboarding_author_weight)


def compute_profile(
    library: UserLibrary,
    books: dict[int, BookRecord],
    config: RecommendationConfig,
    onboarding: Optional[dict] = None,
) -> ComputedProfile:
    """Pure recompute: onboarding seeds first, then every collection entry."""
    signals = config.signals
    multipliers = config.rating_multipliers
    genres, authors = WeightMap(), WeightMap()
    _seed_onboarding(genres, authors, onboarding, config)

    def accumulate(book_id: int, weight: float) -> None:
        book = books.get(book_id)
        if book is None:
            return
        for key in book.genre_keys(config.genre_mapping):
            genres.add(key, weight)
        for key in book.author_keys():
            authors.add(key, weight)

    for entry in library.shelf:
        accumulate(entry.book_id, signals.bookshelf_read * multipliers.for_rating(entry.rating))
    for book_id in library.liked:
        accumulate(book_id, signals.liked)
    for book_id in library.tbr:
        accumulate(book_id, signals.tbr_added)
    for book_id in library.currently_reading:
        accumulate(book_id, signals.currently_reading)
    for book_id in library.favorites:
        accumulate(book_id, signals.favorite_book)
    for book_id in library.top_picks:
        accumulate(book_id, signals.top_book)

    page_counts = [
        books[book_id].page_count
        for book_id in [e.book_id for e in library.shelf] + list(library.favorites)
        if book_id in books and books[book_id].page_count
    ]
    avg_page_length = (
        float(round(sum(page_counts) / len(page_counts)))
        if page_counts
        else config.profile.default_avg_page_length
    )

    velocity = reading_velocity([e.finished_on for e in library.shelf if e.finished_on])
    if velocity == 0 and onboarding:
        velocity = config.profile.default_reading_velocity

    return ComputedProfile(
        genres=genres,
        authors=authors,
        avg_page_length=avg_page_length,
        diversity_score=shannon_diversity(genres),
        reading_velocity=velocity,
    )


class ProfileBuilder:
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

    async def build_profile(self, user_id: int) -> Optional[UserPreference]:
        """Full recompute. Returns None for unknown users."""
        library = await self.social_graph.get_library(user_id)
        if library is None:
            logger.warning("profile_build_unknown_user", user_id=user_id)
            return None

        preference, computed, book_count = await self._recompute(user_id, library)
        logger.info(
            "profile_built",
            user_id=user_id,
            books=book_count,
            genres=len(computed.genres),
            authors=len(computed.authors),
            diversity_score=round(computed.diversity_score, 3),
        )
        return preference

    async def _recompute(
        self, user_id: int, library: UserLibrary, onboarding: Optional[dict] = None
    ) -> tuple[UserPreference, ComputedProfile, int]:
        """Re-derive every weight from ``library`` under the profile's row lock.

        ``onboarding`` replaces the stored questionnaire answers first. The
        answers on the row are the base layer either way, so a rebuild and an
        onboarding merge always agree.
        """
        # One batched fetch; the lookup table lives only for this build
        books = await self.catalog.get_books(library.all_book_ids())
        computed_at = utcnow()
        results: list[ComputedProfile] = []

        def apply(preference: UserPreference) -> None:
            if onboarding is not None:
                preference.onboarding = onboarding
            computed = compute_profile(library, books, self.config, preference.onboarding)
            preference.genres = computed.genres
            preference.authors = computed.authors
            preference.avg_page_length = computed.avg_page_length
            preference.diversity_score = computed.diversity_score
            preference.reading_velocity = computed.reading_velocity
            preference.last_computed = computed_at
            results.append(computed)

        preference = await self.preferences.update(user_id, apply)
        return preference, results[-1], len(books)

    async def ensure_profile(self, user_id: int) -> UserPreference:
        """Existing profile if recent enough, otherwise a rebuilt one."""
        preference = await self.preferences.get(user_id)
        if preference is not None and not preference.needs_recomputation(
            self.config.profile.recompute_after_hours
        ):
            return preference
        rebuilt = await self.build_profile(user_id)
        if rebuilt is not None:
            return rebuilt
        return preference or await self.preferences.get_or_create(user_id)

    async def merge_onboarding_preferences(
        self,
        user_id: int,
        genres: dict[str, float],
        authors: list[str],
    ) -> Optional[UserPreference]:
        """Store the onboarding answers and recompute the profile on top of them.

        The answers replace any earlier submission and are the base layer of
        every full rebuild, so submitting the same answers twice, or a rebuild
        with no new signal, leaves the weights unchanged.
        """
        record = {
            "genres": {g: float(w) for g, w in genres.items()},
            "authors": list(authors),
            "completed_at": utcnow().isoformat(),
        }
        library = await self.social_graph.get_library(user_id) or UserLibrary(user_id=user_id)
        preference, _, _ = await self._recompute(user_id, library, onboarding=record)
        logger.info("onboarding_merged", user_id=user_id, genres=len(genres), authors=len(authors))
        return preference

    def signal_weight(self, action: str, rating: Optional[int] = None) -> Optional[float]:
        signals = self.config.signals
        multipliers = self.config.rating_multipliers
        if action == "rated":
            return multipliers.for_rating(rating) if rating is not None else None
        if action == "liked":
            return signals.liked
        if action == "added_to_shelf":
            return signals.bookshelf_read * (multipliers.for_rating(rating) if rating is not None else 1.0)
        if action == "added_to_tbr":
            return signals.tbr_added
        return None

    async def incremental_update(
        self,
        user_id: int,
        book_id: int,
        action: str,
        rating: Optional[int] = None,
        event_id: Optional[str] = None,
    ) -> bool:
        """Add one signal's weight to the stored profile.

        Returns True when applied, False when the signal is unusable or the
        event was already applied.
        """
        weight = self.signal_weight(action, rating)
        if weight is None:
            logger.warning("profile_signal_ignored", user_id=user_id, action=action, rating=rating)
            return False
        book = await self.catalog.get_book(book_id)
        if book is None:
            logger.warning("profile_signal_unknown_book", user_id=user_id, book_id=book_id)
            return False

        genre_keys = book.genre_keys(self.config.genre_mapping)
        author_keys = book.author_keys()

        def apply(preference: UserPreference) -> None:
            genre_weights = preference.genres
            for key in genre_keys:
                genre_weights.add(key, weight)
            author_weights = preference.authors
            for key in author_keys:
                author_weights.add(key, weight)
            preference.genres = genre_weights
            preference.authors = author_weights
            preference.diversity_score = shannon_diversity(genre_weights)

        applied = await self.preferences.update(user_id, apply, event_id=event_id, action=action)
        if applied is None:
            return False
        logger.info(
            "profile_signal_applied",
            user_id=user_id,
            book_id=book_id,
            action=action,
            weight=weight,
            event_id=event_id,
        )
        return True

    async def record_view(
        self,
        user_id: int,
        book_id: int,
        duration: Optional[float] = None,
        session_id: Optional[str] = None,
    ) -> None:
        limit = self.config.profile.max_recent_views
        await self.preferences.update(
            user_id, lambda p: p.record_view(book_id, duration, session_id, max_items=limit)
        )

    async def record_search(
        self, user_id: int, query: str, results_clicked: Optional[list[int]] = None
    ) -> None:
        limit = self.config.profile.max_recent_searches
        await self.preferences.update(
            user_id, lambda p: p.record_search(query, results_clicked, max_items=limit)
        )
