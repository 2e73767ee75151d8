"""Event ingestion and onboarding routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, status

from bookrec.container import ServiceContainer
from bookrec.dependencies import get_container, get_user_id
from bookrec.schemas.event import (
    ActivitySummary,
    EventCreate,
    EventResponse,
    OnboardingRequest,
)

router = APIRouter(tags=["Events"])


@router.post("/events", status_code=status.HTTP_202_ACCEPTED)
async def track_event(
    data: EventCreate,
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """Store an interaction event. Never fails the caller on storage errors."""
    event = await container.tracker.track(data.type, user_id, data.metadata, data.session_id)
    if event is None:
        return {"tracked": False}
    return {"tracked": True, "event": EventResponse.model_validate(event)}


@router.post("/events/batch", status_code=status.HTTP_202_ACCEPTED)
async def track_events(
    data: list[EventCreate],
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    events = await container.tracker.track_batch(data, user_id)
    return {"tracked": len(events)}


@router.get("/events/activity", response_model=ActivitySummary)
async def recent_activity(
    days: int = Query(7, ge=1, le=90),
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    summary = await container.tracker.get_recent_activity(user_id, days)
    summary.engagement_score = await container.tracker.calculate_engagement_score(user_id)
    summary.is_active = await container.tracker.is_active_user(user_id)
    return summary


@router.post("/onboarding", status_code=status.HTTP_200_OK)
async def complete_onboarding(
    data: OnboardingRequest,
    user_id: int = Depends(get_user_id),
    container: ServiceContainer = Depends(get_container),
):
    """Seed the profile from onboarding answers and drop any cached feed."""
    genres = {g.genre: g.weight for g in data.genres}
    preference = await container.profile_builder.merge_onboarding_preferences(
        user_id, genres, data.authors
    )
    await container.tracker.track_onboarding_completed(user_id, list(genres), data.authors)
    await container.cache.invalidate(user_id)
    return {
        "user_id": user_id,
        "top_genres": preference.top_genres(5) if preference else [],
        "top_authors": preference.top_authors(5) if preference else [],
    }
