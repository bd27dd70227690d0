"""Platform process backends for worker spawn and termination."""

import abc
import logging
import os
import signal
import subprocess

logger = logging.getLogger(__name__)


class ProcessBackend(abc.ABC):
    """Spawns worker processes and terminates them with their children."""

    popen_kwargs: dict = {}

    def spawn(self, command: list[str], env: dict[str, str]) -> subprocess.Popen:
        return subprocess.Popen(
            command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
            env=env,
            **self.popen_kwargs,
        )

    @abc.abstractmethod
    def terminate(self, process: subprocess.Popen, grace: float) -> None:
        """Stop the process and its children, forcefully after ``grace`` seconds."""


class PosixBackend(ProcessBackend):
    """SIGTERM to the worker's process group, SIGKILL after the grace period."""

    popen_kwargs = {"start_new_session": True}

    def _signal_group(self, process: subprocess.Popen, sig: signal.Signals) -> bool:
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            return False
        return True

    def terminate(self, process: subprocess.Popen, grace: float) -> None:
        if process.poll() is not None:
            return
        if not self._signal_group(process, signal.SIGTERM):
            return

        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.warning(f"Process {process.pid} ignored SIGTERM, sending SIGKILL")
            self._signal_group(process, signal.SIGKILL)
            process.wait()


class WindowsBackend(ProcessBackend):
    """Tree-kill through taskkill, falling back to killing the process itself."""

    popen_kwargs = {
        "creationflags": getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0)
    }

    def terminate(self, process: subprocess.Popen, grace: float) -> None:
        if process.poll() is not None:
            return

        result = subprocess.run(
            ["taskkill", "/pid", str(process.pid), "/T", "/F"],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            logger.warning(
                f"taskkill failed for {process.pid}: {result.stderr.strip()}"
            )
            process.kill()

        try:
            process.wait(timeout=grace)
        except subprocess.TimeoutExpired:
            logger.error(f"Process {process.pid} still alive after taskkill")


def get_backend() -> ProcessBackend:
    """Get the backend for the current platform."""
    if os.name == "nt":
        return WindowsBackend()
    return PosixBackend()
