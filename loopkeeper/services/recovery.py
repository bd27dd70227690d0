"""Startup recovery of interrupted tasks."""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from loopkeeper.core.config import settings
from loopkeeper.core.errors import InvalidTransitionError, NotFoundError
from loopkeeper.models import Task
from loopkeeper.services.supervisor import Supervisor, get_supervisor
from loopkeeper.services.task import TaskService

logger = logging.getLogger(__name__)


@dataclass
class RecoveryReport:
    recovered: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0


class RecoveryService:
    """Re-enters every non-terminal task through the supervisor.

    Tasks are restarted one at a time with a pacing delay between spawns. A
    task whose worker is already live in this process is left alone, so
    running the sweep twice does not double-spawn.
    """

    def __init__(
        self,
        supervisor: Supervisor | None = None,
        pacing_seconds: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.supervisor = supervisor or get_supervisor()
        self.pacing_seconds = (
            settings.recovery_pacing_seconds if pacing_seconds is None else pacing_seconds
        )
        self.sleep = sleep

    def recover_all(self) -> RecoveryReport:
        tasks = TaskService.list_for_recovery()
        report = RecoveryReport(total=len(tasks))
        logger.info(f"Found {len(tasks)} tasks to recover")

        attempted = 0
        for task in tasks:
            if self.supervisor.live_worker_for_task(task.id) is not None:
                logger.info(f"Task {task.id} already has a live worker, skipping")
                report.skipped += 1
                continue

            if attempted and self.pacing_seconds > 0:
                self.sleep(self.pacing_seconds)
            attempted += 1

            try:
                result = self.supervisor.recover(task.id)
            except Exception as e:
                # One bad task must not stop the rest from recovering
                logger.error(f"Failed to recover task {task.id}: {e}")
                self._mark_failed(task, e)
                report.failed += 1
                continue

            if result is None:
                # Superseded or picked up while we were pacing
                report.skipped += 1
                continue

            logger.info(f"Recovered task {task.id} as {result.handle}")
            report.recovered += 1

        logger.info(
            f"Recovery finished: {report.recovered} recovered, "
            f"{report.failed} failed, {report.skipped} skipped"
        )
        return report

    @staticmethod
    def _mark_failed(task: Task, error: Exception) -> None:
        try:
            TaskService.fail(task.id, f"Recovery failed: {error}")
        except (InvalidTransitionError, NotFoundError) as e:
            logger.error(f"Could not mark task {task.id} failed: {e}")
