"""Maintenance Celery tasks."""

import logging

from loopkeeper.celery_app import app
from loopkeeper.core.config import settings
from loopkeeper.services import TaskService

logger = logging.getLogger(__name__)


@app.task(
    name="loopkeeper.tasks.maintenance.sweep_old_tasks",
    autoretry_for=(Exception,),
    max_retries=3,
    retry_backoff=5,
    retry_jitter=True,
)
def sweep_old_tasks(retention_days: int | None = None) -> int:
    """Delete finished tasks older than the retention window.

    Args:
        retention_days: Override for TASK_RETENTION_DAYS

    Returns:
        Number of deleted tasks
    """
    days = settings.task_retention_days if retention_days is None else retention_days
    deleted = TaskService.sweep(days)
    logger.info(f"Retention sweep removed {deleted} tasks older than {days} days")
    return deleted
