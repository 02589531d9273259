"""Celery application — broker/backend from settings, periodic outbox drain."""

from celery import Celery

from churnpilot.config import get_settings

settings = get_settings()

celery_app = Celery(
    "churnpilot",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["churnpilot.tasks.outbox_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    beat_schedule={
        "deliver-outbox": {
            "task": "churnpilot.tasks.outbox_tasks.deliver_outbox_task",
            "schedule": float(settings.outbox_poll_seconds),
        },
    },
)
