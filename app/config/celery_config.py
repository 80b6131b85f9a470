# app/config/celery_config.py
"""Celery configuration, task routing and the periodic sync schedule"""
from datetime import timedelta

from celery import Celery
from kombu import Queue

from app.config.settings import get_settings

settings = get_settings()


def create_celery_app() -> Celery:
    """Create and configure Celery application"""

    celery_app = Celery(
        "calendar_sync",
        broker=settings.CELERY_BROKER_URL,
        backend=settings.CELERY_RESULT_BACKEND,
    )

    celery_app.conf.update(
        task_serializer=settings.CELERY_TASK_SERIALIZER,
        accept_content=["json"],
        result_serializer="json",
        timezone="UTC",
        enable_utc=True,

        # Task routing
        task_routes={
            "app.tasks.calendar_tasks.*": {"queue": "calendar"},
        },

        # Queue definitions
        task_queues=(
            Queue("calendar", routing_key="calendar"),
        ),

        # Periodic reconciliation, triggered from outside the sync engine
        beat_schedule={
            "sync-all-integrations": {
                "task": "app.tasks.calendar_tasks.sync_all_integrations",
                "schedule": timedelta(minutes=settings.SYNC_INTERVAL_MINUTES),
            },
            "renew-webhook-subscriptions": {
                "task": "app.tasks.calendar_tasks.renew_webhook_subscriptions",
                "schedule": timedelta(hours=12),
            },
        },

        # Worker settings
        worker_max_tasks_per_child=1000,
        worker_prefetch_multiplier=1,
        task_acks_late=True,

        # Retry settings
        task_retry_max_retries=settings.MAX_RETRY_ATTEMPTS,
        task_retry_delay=60,  # 1 minute

        broker_connection_retry_on_startup=True,
    )

    # Process-level collaborators shared by every task in this worker
    from app.services.calendar.adapter_registry import ProviderAdapterFactory
    from app.services.notification.notifier import build_notifier

    celery_app.adapter_factory = ProviderAdapterFactory(settings)
    celery_app.notifier = build_notifier(settings)

    # Auto-discover tasks
    celery_app.autodiscover_tasks([
        "app.tasks.calendar_tasks",
    ])

    return celery_app


# Create the Celery app instance
celery_app = create_celery_app()
