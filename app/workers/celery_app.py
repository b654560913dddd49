"""
Celery Application Configuration
"""
from celery import Celery

from app.core.config import settings

celery_app = Celery(
    "cydex",
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
    # אירועים שהסליקה שלהם נכשלה או לא רצה inline
    "settle-pending-events-every-10-seconds": {
        "task": "app.workers.tasks.settle_pending_events",
        "schedule": 10.0,
    },
    "expire-stale-deliveries-every-minute": {
        "task": "app.workers.tasks.expire_stale_deliveries",
        "schedule": 60.0,
    },
    "reconcile-wallets-hourly": {
        "task": "app.workers.tasks.reconcile_wallets",
        "schedule": 3600.0,
    },
}
