"""Tests for the task supervisor."""

import threading
import time

import pytest

from loopkeeper.core.config import settings
from loopkeeper.core.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkerLimitError,
)
from loopkeeper.models import TaskState
from loopkeeper.services import Supervisor, TaskService
from loopkeeper.services.supervisor import (
    RECOVERY_MARKER,
    default_command,
    derive_character,
    make_handle,
    recovery_args,
)
from loopkeeper.workers.registry import WORKERS
from tests.conftest import create_test_task, script_command, wait_until


def _state(task_id):
    return TaskService.get_task_by_id(task_id).state


def test_derive_character_first_arg():
    assert derive_character(["Alice", "2,0"]) == ("Alice", ["Alice", "2,0"])


def test_derive_character_sanitizes():
    character, args = derive_character(["Al ice!", "x"])

    assert character == "Alice"
    assert args == ["Alice", "x"]


def test_derive_character_moves_coordinates_behind_name():
    assert derive_character(["(2,0)", "Bob", "--loops"]) == (
        "Bob",
        ["Bob", "(2,0)", "--loops"],
    )


def test_derive_character_falls_back_to_default():
    assert derive_character(["2,0"], default="Zed") == ("Zed", ["Zed", "2,0"])
    assert derive_character([], default="Zed") == ("Zed", ["Zed"])
    assert derive_character(["--no-recycle"], default="Zed") == (
        "Zed",
        ["Zed", "--no-recycle"],
    )


def test_derive_character_without_any_name():
    with pytest.raises(ValidationError):
        derive_character([])


def test_make_handle():
    assert make_handle("copper-mining-loop", ["Alice"]) == "copper-mining-loop_Alice"
    assert make_handle("go-gather-loop", ["Bob", "2,0"]) == "go-gather-loop_Bob_2,0"


def test_recovery_args_marker_once_and_character_first():
    task = create_test_task(
        character="Alice",
        worker_name="go-gather-loop",
        worker_args=["2,0", "Alice", RECOVERY_MARKER],
    )

    assert recovery_args(task) == ["Alice", "2,0", RECOVERY_MARKER]


def test_default_command_inserts_preset_args(mocker):
    mocker.patch.object(settings, "custom_env_file", "/tmp/account.env")

    command = default_command(WORKERS["copper-mining-loop"], ["Alice", "--loops=2"])

    assert command[1:] == [
        "-m",
        "loopkeeper.workers.gathering_loop",
        "Alice",
        "2,0",
        "--loops=2",
        "--env=/tmp/account.env",
    ]


def test_start_runs_task(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    task = TaskService.get_task_by_id(result.task_id)
    assert result.character == "Alice"
    assert result.handle == "copper-mining-loop_Alice_sleep"
    assert task.state == TaskState.RUNNING
    assert task.worker_handle == result.handle
    assert task.kind == "mining"
    assert supervisor.get_worker(result.handle).live


def test_start_captures_output(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    assert wait_until(lambda: supervisor.output(result.handle))
    line = supervisor.output(result.handle)[0]
    assert line["stream"] == "stdout"
    assert line["text"] == "Starting loop #1"
    assert supervisor.get_worker(result.handle).loop_count == 1


def test_clean_exit_completes_task(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "ok"])

    assert wait_until(lambda: _state(result.task_id) == TaskState.COMPLETED)
    task = TaskService.get_task_by_id(result.task_id)
    assert task.progress["exit_code"] == 0
    assert task.progress["loop_count"] == 3
    assert task.progress["activity_count"] == 1
    assert task.worker_handle is None


def test_failed_exit_fails_task(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "fail"])

    assert wait_until(lambda: _state(result.task_id) == TaskState.FAILED)
    task = TaskService.get_task_by_id(result.task_id)
    assert task.error_text == "exited with code 3"
    assert task.progress["exit_code"] == 3
    worker = supervisor.get_worker(result.handle)
    assert wait_until(lambda: not worker.live)
    assert any(line["stream"] == "stderr" for line in worker.output())


def test_second_start_supersedes_first(supervisor):
    """Starting again for a character cancels the old task exactly once."""
    first = supervisor.start("copper-mining-loop", ["Alice", "sleep"])
    second = supervisor.start("iron-mining-loop", ["Alice", "sleep"])

    old_worker = supervisor.get_worker(first.handle)
    assert wait_until(lambda: not old_worker.live)

    old_task = TaskService.get_task_by_id(first.task_id)
    assert old_task.state == TaskState.COMPLETED
    assert old_task.progress["canceled"] is True
    assert "exit_code" not in old_task.progress
    assert _state(second.task_id) == TaskState.RUNNING
    assert TaskService.running_for("Alice").id == second.task_id


def test_stop_cancels_task(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    task = supervisor.stop(result.handle)

    assert task.state == TaskState.COMPLETED
    assert task.progress["canceled"] is True
    worker = supervisor.get_worker(result.handle)
    assert wait_until(lambda: not worker.live)
    # The kill is not reported as a failure
    assert _state(result.task_id) == TaskState.COMPLETED


def test_stop_unknown_handle(supervisor):
    with pytest.raises(NotFoundError):
        supervisor.stop("nope")


def test_pause_and_resume(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    paused = supervisor.pause(result.handle)
    assert paused.state == TaskState.PAUSED
    assert paused.worker_handle == result.handle

    resumed = supervisor.resume(result.task_id)
    task = TaskService.get_task_by_id(result.task_id)
    assert resumed.task_id == result.task_id
    assert resumed.handle.endswith(RECOVERY_MARKER)
    assert task.state == TaskState.RUNNING
    assert task.worker_handle == resumed.handle


def test_resume_requires_paused(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    with pytest.raises(InvalidTransitionError):
        supervisor.resume(result.task_id)


def test_restart_live_worker_in_place(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    restarted = supervisor.restart(result.handle)

    assert restarted.task_id == result.task_id
    assert restarted.handle == f"{result.handle}_{RECOVERY_MARKER}"
    assert not wait_until(
        lambda: _state(result.task_id) != TaskState.RUNNING, timeout=1.5
    )


def test_restart_finished_worker_creates_new_task(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "ok"])
    assert wait_until(lambda: _state(result.task_id) == TaskState.COMPLETED)

    restarted = supervisor.restart(result.handle)

    assert restarted.task_id != result.task_id


def test_worker_cap(supervisor):
    for name in ["Alice", "Bob", "Carol"]:
        supervisor.start("copper-mining-loop", [name, "sleep"])

    with pytest.raises(WorkerLimitError):
        supervisor.start("copper-mining-loop", ["Dave", "sleep"])

    # Replacing a character's worker does not count against the cap
    supervisor.start("iron-mining-loop", ["Alice", "sleep"])


def test_rejects_unknown_worker(supervisor):
    with pytest.raises(ValidationError):
        supervisor.start("rm-rf", ["Alice"])


def test_rejects_too_many_args(supervisor):
    with pytest.raises(ValidationError):
        supervisor.start("go-gather-loop", ["Alice"] + ["x"] * 10)


def test_allowed_workers_filter(supervisor, mocker):
    mocker.patch.object(settings, "allowed_workers", ["go-deposit-all"])

    with pytest.raises(ValidationError):
        supervisor.start("copper-mining-loop", ["Alice"])


def test_default_character_used(supervisor, mocker):
    mocker.patch.object(settings, "default_character", "Zed")

    result = supervisor.start("go-gather-loop", ["2,0"])

    assert result.character == "Zed"


def test_spawn_failure_fails_task(mocker):
    backend = mocker.Mock()
    backend.spawn.side_effect = OSError("no such file")
    sup = Supervisor(backend=backend, build_command=script_command)

    with pytest.raises(OSError):
        sup.start("copper-mining-loop", ["Alice"])

    task = TaskService.list_tasks(character="Alice")[0][0]
    assert task.state == TaskState.FAILED
    assert "no such file" in task.error_text


def test_list_merges_memory_and_storage(supervisor):
    live = supervisor.start("copper-mining-loop", ["Alice", "sleep"])
    paused = create_test_task(character="Bob")
    TaskService.transition(paused.id, "running", worker_handle="old-handle")
    TaskService.pause(paused.id)

    views = {view.handle: view for view in supervisor.list_workers()}

    assert views[live.handle].source == "memory"
    assert views[live.handle].status == "running"
    assert views["old-handle"].source == "storage"
    assert views["old-handle"].status == "paused"


def test_clear_stopped_hides_exited_workers(supervisor):
    done = supervisor.start("copper-mining-loop", ["Alice", "ok"])
    live = supervisor.start("copper-mining-loop", ["Bob", "sleep"])
    assert wait_until(lambda: _state(done.task_id) == TaskState.COMPLETED)

    assert supervisor.clear_stopped() == 1

    handles = [view.handle for view in supervisor.list_workers()]
    assert handles == [live.handle]


def test_list_drops_workers_after_ttl():
    sup = Supervisor(build_command=script_command, ttl_seconds=0)
    result = sup.start("copper-mining-loop", ["Alice", "ok"])
    assert wait_until(lambda: _state(result.task_id) == TaskState.COMPLETED)
    assert wait_until(lambda: not sup.get_worker(result.handle).live)

    assert wait_until(lambda: sup.list_workers() == [])


def test_shutdown_pauses_running_tasks(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    supervisor.shutdown()

    task = TaskService.get_task_by_id(result.task_id)
    assert task.state == TaskState.PAUSED
    assert task.worker_handle == result.handle


def test_recovery_marker_does_not_count_against_arg_cap(supervisor):
    """A task started with the maximum args can still be resumed."""
    args = ["Alice", "sleep", *[f"--flag{i}" for i in range(8)]]
    result = supervisor.start("copper-mining-loop", args)
    supervisor.pause(result.handle)

    resumed = supervisor.resume(result.task_id)
    assert resumed.handle.endswith(RECOVERY_MARKER)

    restarted = supervisor.restart(resumed.handle)
    assert restarted.task_id == result.task_id
    assert supervisor.get_worker(restarted.handle).args.count(RECOVERY_MARKER) == 1


def test_storage_handle_resolves_for_restart_and_stop(supervisor):
    task = create_test_task(character="Bob", worker_args=["Bob", "sleep"])
    TaskService.cancel(task.id)

    views = supervisor.list_workers()
    assert [view.handle for view in views] == [f"task-{task.id}"]

    restarted = supervisor.restart(f"task-{task.id}")
    assert restarted.task_id != task.id
    assert _state(restarted.task_id) == TaskState.RUNNING

    pending = create_test_task(character="Carol")
    stopped = supervisor.stop(f"task-{pending.id}")
    assert stopped.id == pending.id
    assert stopped.progress["canceled"] is True


def test_storage_handle_for_missing_task(supervisor):
    with pytest.raises(NotFoundError):
        supervisor.stop("task-999999")


def test_stale_recovery_does_not_kill_newer_start(supervisor):
    """A task superseded after it was read for recovery is left alone."""
    stale = create_test_task(character="Carol", worker_args=["Carol", "sleep"])
    TaskService.transition(stale.id, TaskState.RUNNING, worker_handle="old")
    stale = TaskService.get_task_by_id(stale.id)

    fresh = supervisor.start("iron-mining-loop", ["Carol", "sleep"])

    assert supervisor.recover(stale.id) is None
    with pytest.raises(InvalidTransitionError):
        supervisor.start(stale.worker_name, recovery_args(stale), recover_task=stale)

    worker = supervisor.get_worker(fresh.handle)
    assert worker.live
    assert not worker.stopping
    task = TaskService.get_task_by_id(fresh.task_id)
    assert task.state == TaskState.RUNNING
    assert task.worker_handle == fresh.handle
    assert _state(stale.id) == TaskState.COMPLETED


def test_recover_skips_task_with_live_worker(supervisor):
    result = supervisor.start("copper-mining-loop", ["Alice", "sleep"])

    assert supervisor.recover(result.task_id) is None
    assert supervisor.get_worker(result.handle).live


def test_concurrent_starts_leave_one_task(supervisor):
    """Two starts racing for one character end with a single live worker."""
    errors = []

    def start(worker_name, delay):
        time.sleep(delay)
        try:
            supervisor.start(worker_name, ["Alice", "sleep"])
        except Exception as e:
            errors.append(e)

    threads = [
        threading.Thread(target=start, args=("copper-mining-loop", 0)),
        threading.Thread(target=start, args=("iron-mining-loop", 0.01)),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert errors == []
    tasks, total = TaskService.list_tasks(character="Alice")
    assert total == 2
    active = [task for task in tasks if task.is_active]
    canceled = [task for task in tasks if task.progress.get("canceled")]
    assert len(active) == 1
    assert len(canceled) == 1
    assert canceled[0].progress["reason"].startswith("superseded by")
    assert wait_until(
        lambda: len([view for view in supervisor.list_workers() if view.live]) == 1
    )
