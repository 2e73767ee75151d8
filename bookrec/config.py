"""
Application configuration: loads from the environment or .env.

Recommendation tuning is a nested model so any value can be overridden with
double-underscore variables, e.g. RECOMMENDATION__CACHE__TTL_HOURS=2.
"""

from __future__ import annotations

import hashlib
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class SignalWeights(BaseModel):
    """Base weight per collection membership / interaction kind."""

    bookshelf_read: float = 1.0
    liked: float = 1.5
    tbr_added: float = 0.7
    currently_reading: float = 0.8
    favorite_book: float = 1.8
    top_book: float = 2.0
    viewed_book: float = 0.3
    shared_book: float = 1.8
    added_to_list: float = 0.9


class RatingMultipliers(BaseModel):
    """Per-star multipliers. Positive and non-decreasing in the star count."""

    one_star: float = Field(0.1, ge=0)
    two_star: float = Field(0.25, ge=0)
    three_star: float = Field(0.5, ge=0)
    four_star: float = Field(1.0, ge=0)
    five_star: float = Field(2.0, ge=0)

    def table(self) -> dict[int, float]:
        return {
            1: self.one_star,
            2: self.two_star,
            3: self.three_star,
            4: self.four_star,
            5: self.five_star,
        }

    @model_validator(mode="after")
    def check_monotonic(self) -> RatingMultipliers:
        values = list(self.table().values())
        if any(low > high for low, high in zip(values, values[1:])):
            raise ValueError(f"rating multipliers must not decrease with stars, got {values}")
        return self

    def for_rating(self, rating: Optional[int]) -> float:
        if rating is None:
            return 1.0
        return self.table().get(int(rating), 1.0)


class ScoringWeights(BaseModel):
    genre_match: float = 0.40
    author_match: float = 0.20
    quality_score: float = 0.15
    friend_activity: float = 0.10
    trending_bonus: float = 0.08
    recency_bonus: float = 0.05
    diversity_bonus: float = 0.02
    genre_weight_ceiling: float = 20.0
    author_weight_ceiling: float = 10.0
    multi_genre_bonus: float = 0.2
    recency_window_months: int = 24


class QualityThresholds(BaseModel):
    min_rating: float = 3.5
    min_page_count: int = 50
    max_page_count: int = 1000


class CandidateLimits(BaseModel):
    genre_based: int = 50
    author_based: int = 30
    similar_to_liked: int = 30
    trending: int = 20
    friend_activity: int = 30
    top_genres: int = 5
    top_authors: int = 5


class ContextSettings(BaseModel):
    morning_light_book_threshold: int = 300
    morning_start_hour: int = 6
    morning_end_hour: int = 12
    morning_light_book_boost: float = 1.1
    recent_activity_boost_multiplier: float = 1.5
    slow_reader_threshold: float = 1.0
    slow_reader_page_limit: int = 400
    slow_reader_long_book_penalty: float = 0.7


class DiversitySettings(BaseModel):
    pure_quality_ratio: float = Field(0.7, ge=0, le=1)


class FriendshipSettings(BaseModel):
    base_strength: float = 0.3
    mutual_follow_bonus: float = 0.2
    mutual_friend_weight: float = 0.03
    max_mutual_friend_bonus: float = 0.3
    taste_similarity_weight: float = 0.2
    min_loved_rating: int = 4


class CacheSettings(BaseModel):
    ttl_hours: float = 1.0
    batch_size: int = 50
    recommendation_count: int = 20
    retention_days: int = 7


class RetentionSettings(BaseModel):
    event_days: int = 90
    log_days: int = 180
    status_update_window_days: int = 7


class ProfileSettings(BaseModel):
    recompute_after_hours: int = 24
    onboarding_genre_multiplier: float = 3.0
    onboarding_author_weight: float = 2.0
    default_avg_page_length: float = 350.0
    default_reading_velocity: float = 2.0
    max_recent_views: int = 100
    max_recent_searches: int = 50


class FeatureFlags(BaseModel):
    enable_trending_boost: bool = True
    enable_recency_boost: bool = True
    enable_diversity_injection: bool = True
    enable_contextual_filters: bool = True
    enable_friend_recommendations: bool = True


class ExplanationTemplates(BaseModel):
    genre: str = "Popular in {genre}"
    author: str = "By {author}, one of your favorite authors"
    quality: str = "Highly rated by readers"
    trending: str = "Trending in {genre}"
    recency: str = "New release in {genre}"
    diversity: str = "Something different you might enjoy"
    fallback: str = "Recommended for you"
    trending_fallback: str = "Popular right now"
    similar: str = "Readers also enjoyed"
    friends_fallback: str = "Popular with your friends"


DEFAULT_GENRE_MAPPING: dict[str, list[str]] = {
    "Science Fiction": ["Sci-Fi", "SciFi", "Science Fiction & Fantasy", "SF"],
    "Fantasy": ["Epic Fantasy", "Urban Fantasy", "High Fantasy"],
    "Mystery": ["Detective", "Crime", "Whodunit"],
    "Thriller": ["Suspense", "Psychological Thriller"],
    "Romance": ["Romantic Fiction", "Love Story"],
    "Horror": ["Gothic", "Supernatural"],
    "Historical Fiction": ["Historical"],
    "Biography": ["Memoir", "Autobiography"],
    "Self-Help": ["Personal Development", "Self Improvement"],
    "Business": ["Economics", "Management"],
    "Fiction": ["Literary Fiction", "Contemporary Fiction", "General Fiction"],
    "Non-Fiction": ["Nonfiction"],
    "Young Adult": ["YA", "Teen"],
    "Children": ["Kids", "Juvenile"],
}


class ABVariant(BaseModel):
    name: str
    percent: int = Field(ge=0, le=100)
    # section name -> field overrides, e.g. {"scoring": {"genre_match": 0.5}}
    overrides: dict[str, dict] = Field(default_factory=dict)


class ABTestingConfig(BaseModel):
    enabled: bool = False
    variants: list[ABVariant] = Field(default_factory=list)


class RecommendationConfig(BaseModel):
    signals: SignalWeights = Field(default_factory=SignalWeights)
    rating_multipliers: RatingMultipliers = Field(default_factory=RatingMultipliers)
    scoring: ScoringWeights = Field(default_factory=ScoringWeights)
    quality: QualityThresholds = Field(default_factory=QualityThresholds)
    candidates: CandidateLimits = Field(default_factory=CandidateLimits)
    context: ContextSettings = Field(default_factory=ContextSettings)
    diversity: DiversitySettings = Field(default_factory=DiversitySettings)
    friendship: FriendshipSettings = Field(default_factory=FriendshipSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)
    retention: RetentionSettings = Field(default_factory=RetentionSettings)
    profile: ProfileSettings = Field(default_factory=ProfileSettings)
    features: FeatureFlags = Field(default_factory=FeatureFlags)
    explanations: ExplanationTemplates = Field(default_factory=ExplanationTemplates)
    genre_mapping: dict[str, list[str]] = Field(
        default_factory=lambda: {k: list(v) for k, v in DEFAULT_GENRE_MAPPING.items()}
    )
    ab_testing: ABTestingConfig = Field(default_factory=ABTestingConfig)

    def variant_for_user(self, user_id: int) -> Optional[ABVariant]:
        """Deterministic bucket (0-99) per user, walked against cumulative percents."""
        if not self.ab_testing.enabled or not self.ab_testing.variants:
            return None
        digest = hashlib.md5(str(user_id).encode("utf-8")).hexdigest()
        bucket = int(digest, 16) % 100
        cumulative = 0
        for variant in self.ab_testing.variants:
            cumulative += variant.percent
            if bucket < cumulative:
                return variant
        return None

    def for_user(self, user_id: int) -> RecommendationConfig:
        """Effective config for a user, with any A/B variant overrides applied."""
        variant = self.variant_for_user(user_id)
        if variant is None:
            return self
        update = {}
        for section, values in variant.overrides.items():
            current = getattr(self, section, None)
            if isinstance(current, BaseModel):
                update[section] = type(current).model_validate({**current.model_dump(), **values})
        return self.model_copy(update=update)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        env_nested_delimiter="__",
    )

    # ── Environment ──
    environment: str = "development"

    # ── Postgres ──
    postgres_user: str = "bookrec_user"
    postgres_password: str = "changeme"
    postgres_db: str = "bookrec"
    postgres_host: str = "postgres"
    postgres_port: int = 5432
    database_url: Optional[str] = None
    database_pool_size: int = 20
    database_max_overflow: int = 10

    # ── Redis ──
    redis_host: str = "redis"
    redis_port: int = 6379
    redis_password: str = "changeme"
    redis_url: Optional[str] = None

    # ── Celery ──
    celery_broker_url: str = "redis://redis:6379/1"
    celery_result_backend: str = "redis://redis:6379/2"

    # ── Background queue ──
    background_queue_size: int = 1000
    background_workers: int = 2
    background_max_attempts: int = 3
    background_retry_wait_max: float = 5.0

    # ── Monitoring ──
    enable_metrics: bool = True
    log_level: str = "INFO"
    log_format: str = "json"

    # ── CORS ──
    cors_origins: str = "http://localhost:3000,http://localhost:8080"

    # ── Recommendation tuning ──
    recommendation: RecommendationConfig = Field(default_factory=RecommendationConfig)

    @property
    def database_dsn(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"postgresql+asyncpg://{self.postgres_user}:{self.postgres_password}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def redis_dsn(self) -> str:
        if self.redis_url:
            return self.redis_url
        return f"redis://:{self.redis_password}@{self.redis_host}:{self.redis_port}/0"

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
