"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "parkshare",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone=settings.SWEEPER_TIMEZONE,
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "sweep-expired-state": {
        "task": "app.workers.tasks.run_expiry_sweep",
        "schedule": settings.SWEEP_INTERVAL_SECONDS,
    },
    "publish-change-feed": {
        "task": "app.workers.tasks.publish_outbox_events",
        "schedule": settings.OUTBOX_PUBLISH_INTERVAL_SECONDS,
    },
    "cleanup-published-events-daily": {
        "task": "app.workers.tasks.cleanup_published_events",
        "schedule": crontab(hour="4", minute="0"),
    },
}
