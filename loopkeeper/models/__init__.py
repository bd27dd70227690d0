"""Database models."""

from .task import (
    ACTIVE_STATES,
    HANDLE_STATES,
    TERMINAL_STATES,
    Task,
    TaskKind,
    TaskState,
)

__all__ = [
    "ACTIVE_STATES",
    "HANDLE_STATES",
    "TERMINAL_STATES",
    "Task",
    "TaskKind",
    "TaskState",
]
