"""
Periodic maintenance tasks.

- refresh_active_users: precompute home + friends lists for recently active
  users whose cached lists are no longer fresh.
- recompute_stale_profiles: full profile rebuild for profiles older than the
  recompute window.
- purge_expired_records: enforce event / receipt / log retention.

Each Celery task builds its own service container around one event loop and
delegates to an async job function that tests can call directly.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta
from typing import Optional, TypeVar

import structlog

from bookrec.celery_app import celery
from bookrec.clock import utcnow
from bookrec.config import get_settings
from bookrec.container import ServiceContainer

logger = structlog.get_logger()

T = TypeVar("T")


async def refresh_active_users_job(
    container: ServiceContainer, days: int = 7, max_users: int = 1000
) -> dict:
    config = container.settings.recommendation
    since = utcnow() - timedelta(days=days)
    active = await container.events.active_user_ids(since, limit=max_users)
    pending = await container.cache.users_needing_refresh(active)

    refreshed, failed = 0, 0
    batch_size = max(1, config.cache.batch_size)
    for offset in range(0, len(pending), batch_size):
        batch = pending[offset : offset + batch_size]
        for user_id in batch:
            try:
                entry = await container.recommendations.refresh_user(user_id)
            except Exception as exc:
                failed += 1
                logger.error("user_refresh_failed", user_id=user_id, error=str(exc))
                continue
            if entry is not None:
                refreshed += 1
        logger.info("refresh_batch_done", offset=offset, size=len(batch))

    return {"active": len(active), "pending": len(pending), "refreshed": refreshed, "failed": failed}


async def recompute_stale_profiles_job(container: ServiceContainer, limit: int = 100) -> dict:
    max_age = container.settings.recommendation.profile.recompute_after_hours
    user_ids = await container.preferences.users_needing_recomputation(max_age, limit)
    rebuilt = 0
    for user_id in user_ids:
        if await container.profile_builder.build_profile(user_id) is not None:
            rebuilt += 1
    return {"candidates": len(user_ids), "rebuilt": rebuilt}


async def purge_expired_records_job(
    container: ServiceContainer, now: Optional[datetime] = None
) -> dict:
    retention = container.settings.recommendation.retention
    now = now or utcnow()
    event_cutoff = now - timedelta(days=retention.event_days)
    return {
        "events": await container.events.purge_older_than(event_cutoff),
        "signal_receipts": await container.preferences.purge_receipts_older_than(event_cutoff),
        "recommendation_logs": await container.log_store.purge_older_than(
            now - timedelta(days=retention.log_days)
        ),
    }


def _run_with_container(job: Callable[[ServiceContainer], Awaitable[T]]) -> T:
    async def runner() -> T:
        container = ServiceContainer.from_settings(get_settings())
        await container.start()
        try:
            return await job(container)
        finally:
            await container.close()

    return asyncio.run(runner())


@celery.task(
    name="bookrec.tasks.maintenance.refresh_active_users",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
)
def refresh_active_users(self):
    """Bulk precompute for active users with stale or missing caches."""
    task_id = self.request.id
    start_time = time.time()
    logger.info("refresh_active_users_started", task_id=task_id)
    try:
        result = _run_with_container(refresh_active_users_job)
    except Exception as exc:
        logger.error("refresh_active_users_failed", task_id=task_id, error=str(exc))
        raise self.retry(exc=exc)
    logger.info(
        "refresh_active_users_completed",
        task_id=task_id,
        duration=round(time.time() - start_time, 2),
        **result,
    )
    return result


@celery.task(
    name="bookrec.tasks.maintenance.recompute_stale_profiles",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
)
def recompute_stale_profiles(self):
    task_id = self.request.id
    try:
        result = _run_with_container(recompute_stale_profiles_job)
    except Exception as exc:
        logger.error("recompute_stale_profiles_failed", task_id=task_id, error=str(exc))
        raise self.retry(exc=exc)
    logger.info("recompute_stale_profiles_completed", task_id=task_id, **result)
    return result


@celery.task(
    name="bookrec.tasks.maintenance.purge_expired_records",
    bind=True,
    max_retries=2,
    default_retry_delay=300,
)
def purge_expired_records(self):
    """Events and receipts after 90 days, recommendation logs after 180."""
    task_id = self.request.id
    try:
        result = _run_with_container(purge_expired_records_job)
    except Exception as exc:
        logger.error("purge_expired_records_failed", task_id=task_id, error=str(exc))
        raise self.retry(exc=exc)
    logger.info("purge_expired_records_completed", task_id=task_id, **result)
    return result
