"""Celery tasks for matchflow.

This module configures Celery and registers all periodic tasks.
"""

from celery import Celery

from app.config import get_settings

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "matchflow",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "app.tasks.automation",
    ],
)

# Celery configuration
celery_app.conf.update(
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Timezone
    timezone="UTC",
    enable_utc=True,
    # Task behavior
    task_track_started=True,
    # Heavy budget (840s) + one in-flight call (300s) + a light call (30s) + slack
    task_time_limit=1320,  # 22 minute hard limit
    task_soft_time_limit=1260,
    # Result expiration
    result_expires=3600,  # 1 hour
    # Worker settings
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)

# Beat schedule for periodic tasks
celery_app.conf.beat_schedule = {
    # Automation run - every 5 minutes
    "run-automation": {
        "task": "app.tasks.automation.run_automation",
        "schedule": 300.0,  # 5 minutes
        "options": {"expires": 280},  # Expire before next run
    },
}
