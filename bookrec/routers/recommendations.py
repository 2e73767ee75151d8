"""Recommendation endpoints: home feed, friends, similar books, feedback, metrics."""

from __future__ import annotations

import time
from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from bookrec.clock import utcnow
from bookrec.container import ServiceContainer
from bookrec.dependencies import get_container, get_user_id
from bookrec.models.event import EventType
from bookrec.schemas.recommendation import (
    AlgorithmComparison,
    AlgorithmMetrics,
    FeedbackRequest,
    Recommendation,
    RecommendationBatch,
    RecommendationContext,
    TopPerformer,
    time_of_day_for_hour,
)

logger = structlog.get_logger()
router = APIRouter(prefix="/recommendations", tags=["Recommendations"])

FEEDBACK_EVENTS = {
    "shown": EventType.RECOMMENDATION_VIEWED,
    "clicked": EventType.RECOMMENDATION_CLICKED,
    "converted": EventType.RECOMMENDATION_CONVERTED,
    "dismissed": EventType.RECOMMENDATION_DISMISSED,
}


@router.get("/home", response_model=RecommendationBatch)
async def home_recommendations(
    limit: int = Query(20, ge=1, le=50),
    refresh: bool = Query(False),
    session_id: Optional[str] = Query(None, max_length=64),
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """Personalized home feed; served from cache while fresh unless refresh=true."""
    start_time = time.time()
    recent_activity = await container.tracker.is_active_user(user_id, days=1)
    context = RecommendationContext(
        page="home",
        session_id=session_id,
        time_of_day=time_of_day_for_hour(utcnow().hour),
        recent_activity=recent_activity,
    )
    batch = await container.recommendations.get_recommendations_with_source(
        user_id, limit, context, use_cache=not refresh
    )
    latency_ms = (time.time() - start_time) * 1000
    logger.info(
        "recommendation_served",
        user_id=user_id,
        n=limit,
        source=batch.source,
        latency_ms=round(latency_ms, 2),
    )
    return batch


@router.get("/friends", response_model=list[Recommendation])
async def friend_recommendations(
    limit: int = Query(20, ge=1, le=50),
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    return await container.recommendations.get_friend_recommendations(user_id, limit)


@router.get("/similar/{book_id}", response_model=list[Recommendation])
async def similar_books(
    book_id: int,
    limit: int = Query(10, ge=1, le=50),
    container: ServiceContainer = Depends(get_container),
):
    book = await container.catalog.get_book(book_id)
    if book is None:
        raise HTTPException(status_code=404, detail="Book not found")
    return await container.recommendations.get_similar_books(book_id, limit)


@router.post("/feedback", status_code=status.HTTP_202_ACCEPTED)
async def recommendation_feedback(
    data: FeedbackRequest,
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """Record an outcome (shown / clicked / converted / dismissed) for a served book."""
    if data.action == "converted" and data.converted_action is None:
        raise HTTPException(status_code=422, detail="converted_action is required for conversions")
    updated = await container.log_store.update_status(
        user_id, data.book_id, data.action, data.converted_action
    )
    await container.tracker.track(
        FEEDBACK_EVENTS[data.action],
        user_id,
        {"book_id": data.book_id},
    )
    return {"updated": updated}


@router.get("/metrics/{algorithm}", response_model=AlgorithmMetrics)
async def algorithm_metrics(
    algorithm: str,
    days: int = Query(30, ge=1, le=180),
    container: ServiceContainer = Depends(get_container),
):
    return await container.log_store.algorithm_metrics(algorithm, days)


@router.get("/compare", response_model=AlgorithmComparison)
async def compare_algorithms(
    a: str = Query(...),
    b: str = Query(...),
    days: int = Query(30, ge=1, le=180),
    container: ServiceContainer = Depends(get_container),
):
    return await container.log_store.compare_algorithms(a, b, days)


@router.get("/top-performers", response_model=list[TopPerformer])
async def top_performers(
    days: int = Query(30, ge=1, le=180),
    limit: int = Query(10, ge=1, le=100),
    container: ServiceContainer = Depends(get_container),
):
    return await container.log_store.top_performers(days, limit)
