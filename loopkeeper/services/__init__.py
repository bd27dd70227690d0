"""Business logic services."""

from .executor import ActionExecutor, ErrorDirective
from .recovery import RecoveryService
from .supervisor import Supervisor, get_supervisor
from .task import TaskService

__all__ = [
    "ActionExecutor",
    "ErrorDirective",
    "RecoveryService",
    "Supervisor",
    "TaskService",
    "get_supervisor",
]
