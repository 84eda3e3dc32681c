"""
Celery Application Configuration
"""

from celery import Celery
from celery.schedules import crontab

from core.config import get_settings

settings = get_settings()

celery_app = Celery(
    "fieldaudit",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["workers.audit"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    worker_prefetch_multiplier=1,
    task_routes={
        "workers.audit.*": {"queue": "audit"},
    },
    # ── Celery Beat Schedule ─────────────────────────────────────────
    beat_schedule={
        # Previous calendar month, once the month has closed
        "fraud-audit-monthly": {
            "task": "workers.audit.run_fraud_audit",
            "schedule": crontab(hour=2, minute=0, day_of_month=1),
            "options": {"queue": "audit"},
        },
    },
)
