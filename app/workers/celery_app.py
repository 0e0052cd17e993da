"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "order_dispatch",
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

# Beat schedule - רשת ביטחון למנוע שרץ בתוך ה-API
celery_app.conf.beat_schedule = {
    # משלוחים שה-due שלהם הגיע ואין להם טיימר חי (למשל אחרי restart)
    "scan-due-dispatches-every-minute": {
        "task": "app.workers.tasks.scan_due_dispatches",
        "schedule": settings.DISPATCH_SCAN_INTERVAL_SECONDS,
    },
    # אירועים שנשארו pending/processing אחרי קריסה
    "replay-stalled-webhook-events-every-5-minutes": {
        "task": "app.workers.tasks.replay_stalled_webhook_events",
        "schedule": 300.0,
    },
    "cleanup-old-webhook-events-daily": {
        "task": "app.workers.tasks.cleanup_old_webhook_events",
        "schedule": 86400.0,  # 24 hours
    },
}

if settings.ORDER_POLLING_ENABLED:
    celery_app.conf.beat_schedule["poll-platform-orders"] = {
        "task": "app.workers.tasks.poll_platform_orders",
        "schedule": settings.ORDER_POLLING_INTERVAL_SECONDS,
    }
