"""
Celery Application Configuration
"""
from celery import Celery
from celery.schedules import crontab

from app.core.config import settings

celery_app = Celery(
    "fieldops_sync",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.workers.tasks"]
)

# Celery configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_time_limit=300,  # 5 minutes
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    "sweep-dead-letter-queue-every-minute": {
        "task": "app.workers.tasks.sweep_dead_letter_queue",
        "schedule": 60.0,
    },
    # Pending rows the in-process queue missed (crash, restart, other instance)
    "recover-stalled-webhook-events-every-minute": {
        "task": "app.workers.tasks.recover_stalled_webhook_events",
        "schedule": 60.0,
    },
    "cleanup-write-source-markers-daily": {
        "task": "app.workers.tasks.cleanup_write_source_markers",
        "schedule": crontab(hour="3", minute="30"),
    },
}
