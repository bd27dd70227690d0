"""Task supervisor: owns worker processes and keeps task records in step."""

import logging
import os
import re
import subprocess
import sys
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import IO, Any

from loopkeeper.core.config import settings
from loopkeeper.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkerLimitError,
)
from loopkeeper.models import Task, TaskState
from loopkeeper.services.game_client import sanitize_character_name
from loopkeeper.services.process import ProcessBackend, get_backend
from loopkeeper.services.task import TaskService
from loopkeeper.workers.registry import WorkerDefinition, get_worker

logger = logging.getLogger(__name__)

RECOVERY_MARKER = "--recovering"

_COORDINATES_RE = re.compile(r"^\s*\(?\s*-?\d+\s*,\s*-?\d+\s*\)?\s*$")
_STORAGE_HANDLE_RE = re.compile(r"^task-(\d+)$")
_LOOP_RE = re.compile(r"loop\s+#(\d+)", re.IGNORECASE)
_ACTIVITY_MARKERS = (
    "Gathering successful",
    "Mining successful",
    "Harvesting successful",
    "Fishing successful",
    "Fight successful",
)


def is_coordinate_pair(value: str | None) -> bool:
    return bool(value) and bool(_COORDINATES_RE.match(value))


def derive_character(
    args: list[str], default: str | None = None
) -> tuple[str, list[str]]:
    """Work out the character a worker runs for.

    The character is the first positional argument. A coordinate pair given
    first is moved behind the name that follows it. Without a usable name the
    configured default character is put in front.

    Returns:
        Tuple of (character, args with the character first)

    Raises:
        ValidationError: If no character can be determined
    """
    args = [str(arg) for arg in args]

    if args and is_coordinate_pair(args[0]):
        coordinates = args[0]
        named = len(args) > 1 and not args[1].startswith("--")
        character = sanitize_character_name(args[1]) if named else ""
        rest = args[2:] if named else args[1:]
        character = character or sanitize_character_name(default)
        if not character:
            raise ValidationError("Cannot determine character name")
        return character, [character, coordinates, *rest]

    named = bool(args) and not args[0].startswith("--")
    character = sanitize_character_name(args[0]) if named else ""
    rest = args[1:] if named else args
    character = character or sanitize_character_name(default)
    if not character:
        raise ValidationError("Cannot determine character name")
    return character, [character, *rest]


def make_handle(worker_name: str, args: list[str]) -> str:
    """Build a handle from the worker name and its character-first args."""
    return "_".join([worker_name, *args])


def recovery_args(task: Task) -> list[str]:
    """Stored args with the character first and the recovery marker once."""
    args = [arg for arg in task.worker_args if arg != RECOVERY_MARKER]
    if not args or args[0] != task.character:
        if task.character in args:
            args.remove(task.character)
        args.insert(0, task.character)
    return [*args, RECOVERY_MARKER]


def default_command(definition: WorkerDefinition, args: list[str]) -> list[str]:
    """Command line for a worker: module, character, preset args, rest."""
    command = [sys.executable, "-m", definition.module]
    command += [*args[:1], *definition.preset_args, *args[1:]]
    if settings.custom_env_file:
        command.append(f"--env={settings.custom_env_file}")
    return command


@dataclass
class StartResult:
    task_id: int
    handle: str
    character: str


@dataclass
class ActiveWorker:
    """In-memory record of a spawned worker."""

    handle: str
    task_id: int
    worker_name: str
    character: str
    args: list[str]
    process: subprocess.Popen | None = field(default=None, repr=False)
    spawned_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    exited_at: datetime | None = None
    exit_code: int | None = None
    live: bool = True
    stopping: bool = False
    loop_count: int = 0
    activity_count: int = 0
    scratch: deque = field(
        default_factory=lambda: deque(maxlen=settings.output_buffer_lines),
        repr=False,
    )
    pumps: list[threading.Thread] = field(default_factory=list, repr=False)
    watcher: threading.Thread | None = field(default=None, repr=False)
    _output_lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_output(self, stream: str, text: str) -> None:
        entry = {"stream": stream, "text": text, "time": datetime.now(UTC).isoformat()}
        with self._output_lock:
            self.scratch.append(entry)

            match = _LOOP_RE.search(text)
            if match:
                self.loop_count = max(self.loop_count, int(match.group(1)))
            if any(marker in text for marker in _ACTIVITY_MARKERS):
                self.activity_count += 1

    def output(self) -> list[dict[str, str]]:
        with self._output_lock:
            return list(self.scratch)


@dataclass
class WorkerView:
    """One row of the merged worker listing."""

    handle: str
    task_id: int | None
    worker_name: str
    character: str
    args: list[str]
    status: str
    live: bool
    source: str
    spawned_at: datetime | None = None
    exited_at: datetime | None = None
    exit_code: int | None = None
    loop_count: int = 0
    activity_count: int = 0


class Supervisor:
    """Starts and stops workers and reconciles their exits with task records.

    One instance per process. All registry mutation happens under a single
    lock, which also serializes the create path so only one task per
    character can be started at a time.
    """

    def __init__(
        self,
        backend: ProcessBackend | None = None,
        build_command: Callable[[WorkerDefinition, list[str]], list[str]] = default_command,
        max_workers: int | None = None,
        grace_seconds: float | None = None,
        ttl_seconds: int | None = None,
    ):
        self.backend = backend or get_backend()
        self.build_command = build_command
        self.max_workers = max_workers or settings.max_concurrent_workers
        self.grace_seconds = (
            settings.termination_grace_seconds if grace_seconds is None else grace_seconds
        )
        self.ttl = timedelta(
            seconds=settings.worker_ttl_seconds if ttl_seconds is None else ttl_seconds
        )
        self._workers: dict[str, ActiveWorker] = {}
        self._cleared: set[str] = set()
        self._lock = threading.RLock()

    # Registry ---------------------------------------------------------------

    def get_worker(self, handle: str) -> ActiveWorker | None:
        with self._lock:
            return self._workers.get(handle)

    def live_worker_for_task(self, task_id: int) -> ActiveWorker | None:
        with self._lock:
            for worker in self._workers.values():
                if worker.live and worker.task_id == task_id:
                    return worker
            return None

    def _live_workers(self) -> list[ActiveWorker]:
        return [worker for worker in self._workers.values() if worker.live]

    # Lifecycle --------------------------------------------------------------

    def start(
        self,
        worker_name: str,
        args: list[str],
        kind: str | None = None,
        recover_task: Task | None = None,
    ) -> StartResult:
        """Start a worker for the character named in ``args``.

        Any task the character already has is canceled and its worker killed
        first. With ``recover_task`` the stored task is reused in place.

        Raises:
            ValidationError: Unknown worker, too many args, or no character
            WorkerLimitError: If the concurrent worker cap is reached
            OSError: If the worker process cannot be spawned
        """
        definition = get_worker(worker_name)
        # The recovery marker is ours, not the caller's
        supplied = [arg for arg in args if arg != RECOVERY_MARKER]
        if len(supplied) > settings.max_worker_args:
            raise ValidationError(
                f"At most {settings.max_worker_args} worker arguments are allowed"
            )
        character, args = derive_character(args, settings.default_character)

        with self._lock:
            if recover_task is not None:
                # The stored row may have moved on since the caller read it
                recover_task = TaskService.get_task_by_id(recover_task.id)
                if not recover_task.is_active:
                    raise InvalidTransitionError(
                        f"Task {recover_task.id} is {recover_task.state}, "
                        "nothing to restart"
                    )

            superseded = [
                worker
                for worker in self._live_workers()
                if worker.character == character
            ]
            others = len(self._live_workers()) - len(superseded)
            if others >= self.max_workers:
                raise WorkerLimitError(
                    f"Maximum of {self.max_workers} concurrent workers reached"
                )

            for worker in superseded:
                logger.info(f"Superseding worker {worker.handle}")
                self._terminate(worker)

            if recover_task is None:
                existing = TaskService.running_for(character)
                if existing is not None:
                    TaskService.cancel(existing.id, reason=f"superseded by {worker_name}")
                task = TaskService.create(
                    character, kind or definition.kind, worker_name, args
                )
            else:
                task = recover_task

            handle = make_handle(worker_name, args)
            try:
                worker = self._spawn(task.id, handle, definition, character, args)
            except OSError as e:
                logger.error(f"Failed to spawn {handle}: {e}")
                if recover_task is None:
                    TaskService.fail(task.id, f"Failed to spawn worker: {e}")
                raise

            try:
                TaskService.transition(task.id, TaskState.RUNNING, worker_handle=handle)
            except (InvalidTransitionError, NotFoundError):
                self._terminate(worker)
                raise

            self._workers[handle] = worker
            self._cleared.discard(handle)
            self._cleared.discard(f"task-{task.id}")

            worker.watcher = threading.Thread(
                target=self._watch, args=(worker,), name=f"watch-{handle}", daemon=True
            )
            worker.watcher.start()

        logger.info(f"Started {handle} for task {task.id}")
        return StartResult(task_id=task.id, handle=handle, character=character)

    def stop(self, handle: str) -> Task:
        """Kill a worker and cancel its task."""
        with self._lock:
            task_id = self._task_id_for(handle)
            worker = self._workers.get(handle)
            if worker is not None and worker.live:
                self._terminate(worker)

            task = TaskService.get_task_by_id(task_id)
            if task.is_active:
                task = TaskService.cancel(task_id, reason="stopped")
            logger.info(f"Stopped {handle}")
            return task

    def pause(self, handle: str) -> Task:
        """Kill a worker and keep its task for a later resume."""
        with self._lock:
            task_id = self._task_id_for(handle)
            task = TaskService.get_task_by_id(task_id)
            if task.state != TaskState.RUNNING:
                raise InvalidTransitionError(f"Task {task_id} is {task.state}, not running")

            worker = self._workers.get(handle)
            if worker is not None and worker.live:
                self._terminate(worker)

            logger.info(f"Paused {handle}")
            return TaskService.pause(task_id)

    def resume(self, task_id: int) -> StartResult:
        """Restart a paused task in place."""
        task = TaskService.get_task_by_id(task_id)
        if task.state != TaskState.PAUSED:
            raise InvalidTransitionError(f"Task {task_id} is {task.state}, not paused")
        return self.start(
            task.worker_name, recovery_args(task), kind=task.kind, recover_task=task
        )

    def recover(self, task_id: int) -> StartResult | None:
        """Restart an interrupted task in place.

        Returns None when there is nothing to do: the task has finished or
        already has a live worker in this process.
        """
        with self._lock:
            task = TaskService.get_task_by_id(task_id)
            if not task.is_active:
                logger.info(f"Task {task_id} is {task.state}, skipping recovery")
                return None
            if self.live_worker_for_task(task_id) is not None:
                logger.info(f"Task {task_id} already has a live worker, skipping")
                return None
            return self.start(
                task.worker_name, recovery_args(task), kind=task.kind, recover_task=task
            )

    def restart(self, handle: str) -> StartResult:
        """Restart a worker from its stored arguments with the recovery marker.

        An active task is restarted in place; a finished one gets a new task.
        """
        task = TaskService.get_task_by_id(self._task_id_for(handle))
        args = recovery_args(task)
        if task.is_active:
            return self.start(task.worker_name, args, kind=task.kind, recover_task=task)
        return self.start(task.worker_name, args, kind=task.kind)

    def output(self, handle: str) -> list[dict[str, str]]:
        worker = self.get_worker(handle)
        if worker is None:
            raise NotFoundError(f"Worker {handle} not found")
        return worker.output()

    def list_workers(self) -> list[WorkerView]:
        """Merged view of in-memory workers and stored tasks.

        Exited workers disappear after the TTL or once cleared.
        """
        now = datetime.now(UTC)
        views: list[WorkerView] = []

        with self._lock:
            for handle, worker in list(self._workers.items()):
                if worker.live:
                    continue
                if worker.exited_at and now - worker.exited_at > self.ttl:
                    del self._workers[handle]

            memory_task_ids = set()
            for worker in self._workers.values():
                memory_task_ids.add(worker.task_id)
                if worker.handle in self._cleared:
                    continue
                views.append(self._memory_view(worker))

            cleared = set(self._cleared)

        for task in TaskService.latest_per_character():
            if task.id in memory_task_ids:
                continue
            handle = task.worker_handle or f"task-{task.id}"
            if handle in cleared or f"task-{task.id}" in cleared:
                continue
            updated_at = task.updated_at
            if updated_at.tzinfo is None:
                updated_at = updated_at.replace(tzinfo=UTC)
            if task.is_terminal and now - updated_at > self.ttl:
                continue
            views.append(self._storage_view(task, handle))

        return views

    def clear_stopped(self) -> int:
        """Hide every non-live entry from the listing.

        Returns:
            Number of entries cleared
        """
        cleared = 0
        for view in self.list_workers():
            if view.live:
                continue
            with self._lock:
                self._cleared.add(view.handle)
                if view.task_id is not None:
                    self._cleared.add(f"task-{view.task_id}")
                worker = self._workers.get(view.handle)
                if worker is not None and not worker.live:
                    del self._workers[view.handle]
            cleared += 1

        logger.info(f"Cleared {cleared} stopped workers")
        return cleared

    def shutdown(self) -> None:
        """Kill every live worker and pause its task for recovery."""
        with self._lock:
            workers = self._live_workers()
            for worker in workers:
                self._terminate(worker)
                try:
                    task = TaskService.get_task_by_id(worker.task_id)
                    if task.state == TaskState.RUNNING:
                        TaskService.pause(task.id)
                except (NotFoundError, InvalidTransitionError) as e:
                    logger.error(f"Could not pause task {worker.task_id}: {e}")

        logger.info(f"Supervisor shut down, paused {len(workers)} workers")

    # Internals --------------------------------------------------------------

    def _task_id_for(self, handle: str) -> int:
        worker = self._workers.get(handle)
        if worker is not None:
            return worker.task_id

        # Stored rows without a handle are listed as task-<id>
        match = _STORAGE_HANDLE_RE.match(handle)
        if match:
            return TaskService.get_task_by_id(int(match.group(1))).id

        task = TaskService.find_by_handle(handle)
        if task is None:
            raise NotFoundError(f"Worker {handle} not found")
        return task.id

    def _spawn(
        self,
        task_id: int,
        handle: str,
        definition: WorkerDefinition,
        character: str,
        args: list[str],
    ) -> ActiveWorker:
        command = self.build_command(definition, args)
        env = {**os.environ, "control_character": character}
        if settings.custom_env_file:
            env["CUSTOM_ENV_FILE"] = settings.custom_env_file

        logger.debug(f"Spawning {handle}: {command}")
        process = self.backend.spawn(command, env)

        worker = ActiveWorker(
            handle=handle,
            task_id=task_id,
            worker_name=definition.name,
            character=character,
            args=list(args),
            process=process,
        )
        for stream_name, stream in (("stdout", process.stdout), ("stderr", process.stderr)):
            pump = threading.Thread(
                target=self._pump,
                args=(worker, stream_name, stream),
                name=f"pump-{handle}-{stream_name}",
                daemon=True,
            )
            pump.start()
            worker.pumps.append(pump)
        return worker

    def _terminate(self, worker: ActiveWorker) -> None:
        worker.stopping = True
        if worker.process is not None:
            self.backend.terminate(worker.process, self.grace_seconds)

    def _pump(self, worker: ActiveWorker, stream_name: str, stream: IO[str]) -> None:
        try:
            for line in stream:
                worker.record_output(stream_name, line.rstrip("\r\n"))
        except (OSError, ValueError) as e:
            logger.error(f"Output pump for {worker.handle} failed: {e}")
        finally:
            stream.close()

    def _watch(self, worker: ActiveWorker) -> None:
        exit_code = worker.process.wait()
        for pump in worker.pumps:
            pump.join(timeout=5)

        # Same lock as stop/start, so a kill and a reconcile never interleave
        with self._lock:
            worker.exit_code = exit_code
            worker.exited_at = datetime.now(UTC)
            worker.live = False
            logger.info(f"Worker {worker.handle} exited with code {exit_code}")

            if worker.stopping:
                return
            try:
                self._reconcile_exit(worker)
            except Exception as e:
                logger.error(f"Failed to reconcile exit of {worker.handle}: {e}")

    def _reconcile_exit(self, worker: ActiveWorker) -> None:
        task = TaskService.get_task_by_id(worker.task_id)
        if task.is_terminal or task.worker_handle != worker.handle:
            logger.debug(f"Task {task.id} no longer owned by {worker.handle}")
            return

        progress: dict[str, Any] = {
            "exit_code": worker.exit_code,
            "loop_count": worker.loop_count,
            "activity_count": worker.activity_count,
        }
        if worker.exit_code == 0:
            TaskService.complete(task.id, progress=progress)
        else:
            TaskService.fail(
                task.id, f"exited with code {worker.exit_code}", progress=progress
            )

    def _memory_view(self, worker: ActiveWorker) -> WorkerView:
        if worker.live:
            status = "running"
        elif worker.stopping:
            status = "stopped"
        elif worker.exit_code == 0:
            status = "completed"
        else:
            status = "failed"

        return WorkerView(
            handle=worker.handle,
            task_id=worker.task_id,
            worker_name=worker.worker_name,
            character=worker.character,
            args=list(worker.args),
            status=status,
            live=worker.live,
            source="memory",
            spawned_at=worker.spawned_at,
            exited_at=worker.exited_at,
            exit_code=worker.exit_code,
            loop_count=worker.loop_count,
            activity_count=worker.activity_count,
        )

    @staticmethod
    def _storage_view(task: Task, handle: str) -> WorkerView:
        progress = task.progress or {}
        return WorkerView(
            handle=handle,
            task_id=task.id,
            worker_name=task.worker_name,
            character=task.character,
            args=list(task.worker_args),
            status=task.state,
            live=False,
            source="storage",
            spawned_at=task.started_at,
            exit_code=progress.get("exit_code"),
            loop_count=progress.get("loop_count", 0),
            activity_count=progress.get("activity_count", 0),
        )


_supervisor: Supervisor | None = None


def get_supervisor() -> Supervisor:
    """Get the process-wide supervisor."""
    global _supervisor
    if _supervisor is None:
        _supervisor = Supervisor()
    return _supervisor
