"""Prometheus metrics shared across the service."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint"],
)
RECOMMENDATION_LATENCY = Histogram(
    "recommendation_generation_seconds",
    "Recommendation generation latency",
    ["algorithm"],
)
CACHE_LOOKUPS = Counter(
    "recommendation_cache_lookups_total",
    "Recommendation cache lookups",
    ["slot", "result"],
)
EVENTS_TRACKED = Counter(
    "events_tracked_total",
    "User interaction events persisted",
    ["type"],
)
BACKGROUND_JOBS = Counter(
    "background_jobs_total",
    "Background job outcomes",
    ["job", "status"],
)
