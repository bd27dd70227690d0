"""Celery application configuration."""

from celery import Celery
from celery.schedules import crontab

from loopkeeper.core.config import settings

# Create Celery app
app = Celery("loopkeeper")

# Configure Celery
app.conf.update(
    # Broker configuration
    broker_url=settings.celery_broker_url,
    broker_connection_retry_on_startup=True,
    broker_connection_retry=True,
    broker_connection_max_retries=10,
    # Result backend - disabled (state tracked in the tasks table)
    result_backend=None,
    # Serialization
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    # Task execution
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    # Task routing
    task_routes={
        "loopkeeper.tasks.maintenance.*": {"queue": "maintenance"},
    },
    # Periodic jobs (celery beat)
    timezone="UTC",
    beat_schedule={
        "sweep-old-tasks": {
            "task": "loopkeeper.tasks.maintenance.sweep_old_tasks",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)

# Auto-discover tasks from loopkeeper.tasks module
app.autodiscover_tasks(["loopkeeper.tasks"], related_name="maintenance")
