"""Celery application configuration."""

from celery import Celery

from bookrec.config import get_settings

settings = get_settings()

celery = Celery(
    "bookrec",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["bookrec.tasks.maintenance"],
)

celery.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    beat_schedule={
        "refresh-active-users": {
            "task": "bookrec.tasks.maintenance.refresh_active_users",
            "schedule": 900.0,  # 15 minutes
        },
        "recompute-stale-profiles": {
            "task": "bookrec.tasks.maintenance.recompute_stale_profiles",
            "schedule": 3600.0,  # hourly
        },
        "purge-expired-records": {
            "task": "bookrec.tasks.maintenance.purge_expired_records",
            "schedule": 86400.0,  # daily
        },
    },
)
