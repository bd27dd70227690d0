"""Task record store."""

import logging
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlmodel import select

from loopkeeper.core.database import get_session
from loopkeeper.core.errors import (
    ConflictExistsError,
    InvalidTransitionError,
    NotFoundError,
)
from loopkeeper.models import (
    ACTIVE_STATES,
    HANDLE_STATES,
    TERMINAL_STATES,
    Task,
    TaskKind,
    TaskState,
)

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.IDLE: frozenset({TaskState.PENDING}),
    TaskState.PENDING: frozenset(
        {TaskState.RUNNING, TaskState.COMPLETED, TaskState.FAILED}
    ),
    # running -> running hands the task to a fresh worker on recovery
    TaskState.RUNNING: frozenset(
        {TaskState.RUNNING, TaskState.PAUSED, TaskState.COMPLETED, TaskState.FAILED}
    ),
    TaskState.PAUSED: frozenset(
        {TaskState.RUNNING, TaskState.COMPLETED, TaskState.FAILED}
    ),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
}

_ACTIVE = [state.value for state in ACTIVE_STATES]
_TERMINAL = [state.value for state in TERMINAL_STATES]


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _next_timestamp(previous: datetime | None) -> datetime:
    """Current time, nudged forward so it is strictly after ``previous``."""
    now = datetime.now(UTC)
    if previous is None:
        return now
    return max(now, _aware(previous) + timedelta(microseconds=1))


def _active_task(session: Session, character: str) -> Task | None:
    statement = select(Task).where(
        Task.character == character, Task.state.in_(_ACTIVE)
    )
    return session.execute(statement).scalars().first()


class TaskService:
    """Service for task persistence and state transitions.

    Every method runs in its own short transaction.
    """

    @staticmethod
    def create(
        character: str,
        kind: str | TaskKind,
        worker_name: str,
        worker_args: list[str],
        progress: dict[str, Any] | None = None,
    ) -> Task:
        """Create a pending task for a character.

        Raises:
            ConflictExistsError: If the character already has a non-terminal task
        """
        with get_session() as session:
            existing = _active_task(session, character)
            if existing is not None:
                raise ConflictExistsError(
                    f"Character {character} already has active task {existing.id}"
                )

            now = datetime.now(UTC)
            task = Task(
                character=character,
                kind=TaskKind(kind).value,
                worker_name=worker_name,
                worker_args=list(worker_args),
                state=TaskState.PENDING.value,
                progress=dict(progress or {}),
                created_at=now,
                updated_at=now,
            )
            session.add(task)
            try:
                session.flush()
            except IntegrityError as e:
                # Lost a race against a concurrent insert
                raise ConflictExistsError(
                    f"Character {character} already has an active task"
                ) from e

            session.refresh(task)
            logger.info(f"Created task {task.id} for {character}: {worker_name}")
            return task

    @staticmethod
    def transition(
        task_id: int,
        new_state: str | TaskState,
        worker_handle: str | None = None,
        progress: dict[str, Any] | None = None,
        error_text: str | None = None,
    ) -> Task:
        """Move a task to ``new_state``.

        Running and paused tasks keep a worker handle (the patched one or the
        one already on the row); all other states clear it. ``progress`` is
        merged into the stored payload.

        Raises:
            NotFoundError: If the task does not exist
            InvalidTransitionError: If the move is not allowed from the current
                state, or no handle is available for running/paused
            ConflictExistsError: If reactivating would give the character a
                second non-terminal task
        """
        new_state = TaskState(new_state)

        with get_session() as session:
            statement = select(Task).where(Task.id == task_id).with_for_update()
            task = session.execute(statement).scalar_one_or_none()

            if task is None:
                raise NotFoundError(f"Task with id {task_id} not found")

            current = TaskState(task.state)
            if new_state not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Task {task_id} cannot move from {current} to {new_state}"
                )

            if new_state in HANDLE_STATES:
                handle = worker_handle or task.worker_handle
                if not handle:
                    raise InvalidTransitionError(
                        f"Task {task_id} needs a worker handle to become {new_state}"
                    )
                task.worker_handle = handle
            else:
                task.worker_handle = None

            if new_state == TaskState.RUNNING and task.started_at is None:
                task.started_at = datetime.now(UTC)
            if progress:
                task.progress = {**(task.progress or {}), **progress}
            if error_text is not None:
                task.error_text = error_text

            task.state = new_state.value
            task.updated_at = _next_timestamp(task.updated_at)

            session.add(task)
            try:
                session.flush()
            except IntegrityError as e:
                raise ConflictExistsError(
                    f"Character {task.character} already has an active task"
                ) from e

            session.refresh(task)
            logger.debug(f"Task {task_id}: {current} -> {new_state}")
            return task

    @staticmethod
    def get_task_by_id(task_id: int) -> Task:
        """Get task by ID."""
        with get_session() as session:
            statement = select(Task).where(Task.id == task_id)
            task = session.execute(statement).scalar_one_or_none()

            if task is None:
                raise NotFoundError(f"Task with id {task_id} not found")

            return task

    @staticmethod
    def running_for(character: str) -> Task | None:
        """Get the character's non-terminal task, if any."""
        with get_session() as session:
            return _active_task(session, character)

    @staticmethod
    def find_by_handle(worker_handle: str) -> Task | None:
        """Get the newest task currently owned by a worker handle."""
        with get_session() as session:
            statement = (
                select(Task)
                .where(Task.worker_handle == worker_handle)
                .order_by(Task.id.desc())
            )
            return session.execute(statement).scalars().first()

    @staticmethod
    def list_for_recovery() -> list[Task]:
        """List non-terminal tasks, most recently updated first."""
        with get_session() as session:
            statement = (
                select(Task)
                .where(Task.state.in_(_ACTIVE))
                .order_by(Task.updated_at.desc(), Task.id.desc())
            )
            return list(session.execute(statement).scalars().all())

    @staticmethod
    def list_tasks(
        character: str | None = None, limit: int = 100, offset: int = 0
    ) -> tuple[list[Task], int]:
        """List tasks with pagination, newest first."""
        with get_session() as session:
            count_statement = select(func.count()).select_from(Task)
            statement = select(Task)
            if character:
                count_statement = count_statement.where(Task.character == character)
                statement = statement.where(Task.character == character)

            total = session.execute(count_statement).scalar()
            statement = statement.order_by(Task.id.desc()).offset(offset).limit(limit)
            tasks = session.execute(statement).scalars().all()

            return list(tasks), total

    @staticmethod
    def latest_per_character() -> list[Task]:
        """Get the highest-id task of every character."""
        with get_session() as session:
            latest_ids = select(func.max(Task.id)).group_by(Task.character)
            statement = (
                select(Task).where(Task.id.in_(latest_ids)).order_by(Task.character)
            )
            return list(session.execute(statement).scalars().all())

    @staticmethod
    def sweep(retention: timedelta | int) -> int:
        """Delete terminal tasks last updated before the retention window.

        The highest-id task of each character is always kept.

        Args:
            retention: Window as a timedelta, or a number of days

        Returns:
            Number of deleted tasks
        """
        if not isinstance(retention, timedelta):
            retention = timedelta(days=retention)
        cutoff = datetime.now(UTC) - retention

        with get_session() as session:
            latest_ids = select(func.max(Task.id)).group_by(Task.character)
            statement = delete(Task).where(
                Task.state.in_(_TERMINAL),
                Task.updated_at < cutoff,
                Task.id.not_in(latest_ids),
            )
            deleted = session.execute(statement).rowcount or 0

        logger.info(f"Swept {deleted} tasks older than {retention}")
        return deleted

    @staticmethod
    def cancel(task_id: int, reason: str | None = None) -> Task:
        """Mark a task completed as canceled."""
        progress: dict[str, Any] = {
            "canceled": True,
            "canceled_at": datetime.now(UTC).isoformat(),
        }
        if reason:
            progress["reason"] = reason
        return TaskService.transition(task_id, TaskState.COMPLETED, progress=progress)

    @staticmethod
    def complete(task_id: int, progress: dict[str, Any] | None = None) -> Task:
        return TaskService.transition(task_id, TaskState.COMPLETED, progress=progress)

    @staticmethod
    def fail(
        task_id: int, error_text: str, progress: dict[str, Any] | None = None
    ) -> Task:
        return TaskService.transition(
            task_id, TaskState.FAILED, progress=progress, error_text=error_text
        )

    @staticmethod
    def pause(task_id: int) -> Task:
        return TaskService.transition(task_id, TaskState.PAUSED)
