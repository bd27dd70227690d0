"""Pytest configuration and fixtures."""

import os
import sys
import tempfile
import time
from pathlib import Path

# Settings are read at import time, so the environment goes first
_db_dir = tempfile.mkdtemp(prefix="loopkeeper-tests-")
os.environ["APP_ENV"] = "test"
os.environ["DATABASE_URL"] = f"sqlite:///{Path(_db_dir) / 'test.db'}"
os.environ["RECOVER_ON_STARTUP"] = "false"
os.environ["API_SECRET_KEY"] = "test-secret-key"
os.environ.pop("ALLOWED_WORKERS", None)
os.environ.pop("CUSTOM_ENV_FILE", None)
os.environ.pop("DEFAULT_CHARACTER", None)

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from loopkeeper.core.database import clean_database, close_db, create_tables  # noqa: E402
from loopkeeper.main import app  # noqa: E402
from loopkeeper.models import Task, TaskKind  # noqa: E402
from loopkeeper.services import Supervisor, TaskService, get_supervisor  # noqa: E402
from loopkeeper.services.process import get_backend  # noqa: E402

# Worker stand-ins, selected by the script name passed as the last worker arg
SCRIPTS = {
    "sleep": "import time\nprint('Starting loop #1', flush=True)\ntime.sleep(60)",
    "ok": "print('Starting loop #3', flush=True)\nprint('Gathering successful')",
    "fail": "import sys\nprint('boom', file=sys.stderr)\nsys.exit(3)",
}


def create_test_task(
    character: str = "Alice",
    kind: str = TaskKind.MINING,
    worker_name: str = "copper-mining-loop",
    worker_args: list[str] | None = None,
) -> Task:
    """Helper function to create a test task with default values."""
    return TaskService.create(
        character, kind, worker_name, worker_args or [character]
    )


def script_command(definition, args: list[str]) -> list[str]:
    """Run one of SCRIPTS instead of the real worker module."""
    name = next((arg for arg in reversed(args) if arg in SCRIPTS), "sleep")
    return [sys.executable, "-c", SCRIPTS[name]]


def wait_until(predicate, timeout: float = 10.0, interval: float = 0.05) -> bool:
    """Poll ``predicate`` until it is truthy or the timeout expires."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


@pytest.fixture(autouse=True, scope="function")
def clean_db():
    """Initialize and clean database for each test."""
    create_tables()

    # Clean all tables before test to ensure isolation
    clean_database()

    yield

    # Close DB connections
    close_db()


@pytest.fixture(scope="function")
def supervisor():
    """Supervisor spawning short python scripts instead of real workers."""
    sup = Supervisor(
        backend=get_backend(),
        build_command=script_command,
        max_workers=3,
        grace_seconds=1.0,
    )
    yield sup
    sup.shutdown()


@pytest.fixture(scope="function")
def test_client(supervisor):
    """Create a test client wired to the test supervisor."""
    app.dependency_overrides[get_supervisor] = lambda: supervisor
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture(scope="function")
def auth_headers():
    """Provide authentication headers for API requests."""
    from loopkeeper.core.config import settings

    return {"X-API-Key": settings.api_secret_key}
