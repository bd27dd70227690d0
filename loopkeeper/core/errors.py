"""Core exception classes for the application."""


class ConflictExistsError(Exception):
    """Raised when a character already has a non-terminal task."""


class NotFoundError(Exception):
    """Raised when a resource is not found."""


class ValidationError(Exception):
    """Raised when validation fails."""


class InvalidTransitionError(Exception):
    """Raised when a task state change is not allowed from its current state."""


class WorkerLimitError(Exception):
    """Raised when the concurrent worker cap has been reached."""
