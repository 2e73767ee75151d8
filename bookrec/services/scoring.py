"""
Multi-factor scoring, context adjustment, diversity re-ranking and
explanations for the hybrid recommender.

Every factor is normalized to [0, 1]; the combined score is a weighted sum
clamped to [0, 1]. Nothing here does I/O.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Optional

from bookrec.config import RecommendationConfig
from bookrec.schemas.book import BookRecord
from bookrec.schemas.recommendation import (
    Recommendation,
    RecommendationContext,
    ScoreBreakdown,
    clamp01,
)
from bookrec.services.genres import display_genre, sanitize_author
from bookrec.services.weights import WeightMap, jaccard

EXPLAINED_FACTORS = ("genre", "author", "quality", "trending", "recency", "diversity")


@dataclass(frozen=True)
class ProfileSignals:
    """Read-only view of a preference profile used while scoring one request."""

    genres: WeightMap = field(default_factory=WeightMap)
    authors: WeightMap = field(default_factory=WeightMap)
    diversity_score: float = 0.0
    reading_velocity: float = 0.0

    @classmethod
    def from_preference(cls, preference) -> ProfileSignals:
        if preference is None:
            return cls()
        return cls(
            genres=preference.genres,
            authors=preference.authors,
            diversity_score=preference.diversity_score or 0.0,
            reading_velocity=preference.reading_velocity or 0.0,
        )

    def top_genres(self, n: int = 3) -> list[str]:
        return [name for name, _ in self.genres.top(n)]

    def top_authors(self, n: int = 5) -> list[str]:
        return [name for name, _ in self.authors.top(n)]

    @property
    def is_empty(self) -> bool:
        return self.genres.total() == 0 and self.authors.total() == 0


# ── Individual factors ──


def genre_score(genre_keys: list[str], weights: WeightMap, ceiling: float, multi_bonus: float) -> float:
    matched = [weights.get(key, 0.0) for key in genre_keys if weights.get(key, 0.0) > 0]
    if not matched:
        return 0.0
    score = max(matched) / ceiling
    if len(matched) >= 2:
        score += multi_bonus
    return clamp01(score)


def author_score(author_keys: list[str], weights: WeightMap, ceiling: float) -> float:
    matched = [weights.get(key, 0.0) for key in author_keys]
    if not matched:
        return 0.0
    return clamp01(max(matched) / ceiling)


def quality_score(book: BookRecord) -> float:
    """Rating scaled by a confidence factor that saturates at 100 ratings.

    Unrated books get a neutral 0.5.
    """
    if book.internal_rating > 0:
        rating, count = book.internal_rating, book.internal_rating_count
    else:
        rating, count = book.external_rating, book.external_rating_count
    if not rating or rating <= 0:
        return 0.5
    confidence = min(count / 100, 1.0)
    return clamp01((rating / 5) * (0.7 + 0.3 * confidence))


def trending_score(book: BookRecord) -> float:
    raw = book.read_count * 2 + book.like_count * 1.5 + book.tbr_count
    return clamp01(raw / 100)


def parse_published_date(value: Optional[str]) -> Optional[date]:
    """Accepts YYYY, YYYY-MM or YYYY-MM-DD (the shapes catalog sources emit)."""
    if not value:
        return None
    text = value.strip()
    for length, fmt in ((10, "%Y-%m-%d"), (7, "%Y-%m"), (4, "%Y")):
        try:
            return datetime.strptime(text[:length], fmt).date()
        except ValueError:
            continue
    return None


def recency_score(published_date: Optional[str], now: datetime, window_months: int = 24) -> float:
    published = parse_published_date(published_date)
    if published is None:
        return 0.0
    age_days = (now.date() - published).days
    if age_days < 0:
        return 0.0
    age_months = age_days / 30
    return clamp01(1 - age_months / window_months)


def diversity_bonus(genre_keys: list[str], top_genres: list[str], diversity_score: float) -> float:
    if not genre_keys:
        return 0.0
    if any(key in top_genres for key in genre_keys):
        return 0.0
    return clamp01(diversity_score)


# ── Combination ──


def score_book(
    book: BookRecord,
    profile: ProfileSignals,
    config: RecommendationConfig,
    now: datetime,
) -> tuple[float, ScoreBreakdown]:
    scoring = config.scoring
    features = config.features
    genre_keys = book.genre_keys(config.genre_mapping)

    breakdown = ScoreBreakdown(
        genre=genre_score(genre_keys, profile.genres, scoring.genre_weight_ceiling, scoring.multi_genre_bonus),
        author=author_score(book.author_keys(), profile.authors, scoring.author_weight_ceiling),
        quality=quality_score(book),
        friends=0.0,
        trending=trending_score(book) if features.enable_trending_boost else 0.0,
        recency=(
            recency_score(book.published_date, now, scoring.recency_window_months)
            if features.enable_recency_boost
            else 0.0
        ),
        diversity=(
            diversity_bonus(genre_keys, profile.top_genres(3), profile.diversity_score)
            if features.enable_diversity_injection
            else 0.0
        ),
    )
    combined = (
        breakdown.genre * scoring.genre_match
        + breakdown.author * scoring.author_match
        + breakdown.quality * scoring.quality_score
        + breakdown.friends * scoring.friend_activity
        + breakdown.trending * scoring.trending_bonus
        + breakdown.recency * scoring.recency_bonus
        + breakdown.diversity * scoring.diversity_bonus
    )
    return clamp01(combined), breakdown


def apply_context(
    score: float,
    book: BookRecord,
    context: RecommendationContext,
    reading_velocity: float,
    config: RecommendationConfig,
) -> float:
    if not config.features.enable_contextual_filters:
        return score
    settings = config.context
    pages = book.page_count or 0

    if context.time_of_day == "morning" and 0 < pages < settings.morning_light_book_threshold:
        score *= settings.morning_light_book_boost
    if context.recent_activity:
        score *= settings.recent_activity_boost_multiplier
    if reading_velocity < settings.slow_reader_threshold and pages > settings.slow_reader_page_limit:
        score *= settings.slow_reader_long_book_penalty
    return clamp01(score)


# ── Diversity-aware selection ──


def select_diverse(
    ranked: list[Recommendation],
    n: int,
    pure_quality_ratio: float,
    genre_sets: dict[int, set[str]],
) -> list[Recommendation]:
    """Two-phase selection over a list already sorted by score, descending.

    The first ``ceil(n * ratio)`` items are taken as ranked. The rest are
    filled greedily with the candidate maximizing
    ``score * (1 - mean Jaccard genre overlap with everything selected)``.
    """
    if n <= 0:
        return []
    if len(ranked) <= n:
        return list(ranked)

    pure_count = min(n, math.ceil(round(n * pure_quality_ratio, 9)))
    selected = list(ranked[:pure_count])
    pool = list(ranked[pure_count:])

    while len(selected) < n and pool:
        best_index, best_value = 0, -1.0
        for index, candidate in enumerate(pool):
            candidate_genres = genre_sets.get(candidate.book_id, set())
            if selected:
                overlap = sum(
                    jaccard(candidate_genres, genre_sets.get(s.book_id, set())) for s in selected
                ) / len(selected)
            else:
                overlap = 0.0
            value = candidate.score * (1 - overlap)
            if value > best_value:
                best_index, best_value = index, value
        selected.append(pool.pop(best_index))
    return selected


# ── Explanations ──


def _matched_genre(genre_keys: list[str], profile: ProfileSignals) -> Optional[str]:
    matched = [(profile.genres.get(k, 0.0), k) for k in genre_keys if profile.genres.get(k, 0.0) > 0]
    if matched:
        return max(matched, key=lambda item: item[0])[1]
    return genre_keys[0] if genre_keys else None


def _matched_author(book: BookRecord, profile: ProfileSignals) -> str:
    best_name, best_weight = book.primary_author, 0.0
    for name in book.authors:
        weight = profile.authors.get(sanitize_author(name), 0.0)
        if weight > best_weight:
            best_name, best_weight = name, weight
    return best_name


def explain(
    breakdown: ScoreBreakdown,
    book: BookRecord,
    profile: ProfileSignals,
    config: RecommendationConfig,
) -> str:
    """Fill the template of the single strongest factor (ties go to the earlier factor)."""
    templates = config.explanations
    top_factor, top_value = None, 0.0
    for factor in EXPLAINED_FACTORS:
        value = getattr(breakdown, factor)
        if value > top_value:
            top_factor, top_value = factor, value
    if top_factor is None:
        return templates.fallback

    genre_key = _matched_genre(book.genre_keys(config.genre_mapping), profile)
    genre = display_genre(genre_key) if genre_key else "your favorite genre"

    if top_factor == "genre":
        return templates.genre.format(genre=genre)
    if top_factor == "author":
        return templates.author.format(author=_matched_author(book, profile) or "an author you love")
    if top_factor == "quality":
        return templates.quality
    if top_factor == "trending":
        return templates.trending.format(genre=genre)
    if top_factor == "recency":
        return templates.recency.format(genre=genre)
    return templates.diversity
