"""Task model for character activity loops."""

from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import JSON, Column, DateTime, Index, String, Text, text
from sqlmodel import Field, SQLModel


class TaskState(StrEnum):
    """Lifecycle states of a task."""

    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class TaskKind(StrEnum):
    """Activity category of a task."""

    MINING = "mining"
    WOODCUTTING = "woodcutting"
    FISHING = "fishing"
    ALCHEMY = "alchemy"
    COMBAT = "combat"
    CRAFTING = "crafting"
    COOKING = "cooking"
    OTHER = "other"


ACTIVE_STATES = (TaskState.PENDING, TaskState.RUNNING, TaskState.PAUSED)
TERMINAL_STATES = (TaskState.COMPLETED, TaskState.FAILED)
HANDLE_STATES = (TaskState.RUNNING, TaskState.PAUSED)

_ACTIVE_FILTER = "state IN ('pending', 'running', 'paused')"


class Task(SQLModel, table=True):
    """Durable record of a request to run a worker for one character."""

    __tablename__ = "tasks"
    __table_args__ = (
        # At most one non-terminal task per character
        Index(
            "uq_tasks_active_character",
            "character",
            unique=True,
            postgresql_where=text(_ACTIVE_FILTER),
            sqlite_where=text(_ACTIVE_FILTER),
        ),
    )

    # Primary key and timestamps
    id: int | None = Field(
        default=None,
        primary_key=True,
        description="Monotonically assigned task identifier",
    )
    created_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
        description="Timestamp when the task was created",
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(UTC),
        sa_column=Column(DateTime(timezone=True), nullable=False),
        description="Timestamp of the last state transition",
    )
    started_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
        description="Timestamp when a worker first ran the task",
    )

    # Task fields
    character: str = Field(
        sa_column=Column(String(255), index=True, nullable=False),
        description="Character the task runs for",
    )
    kind: str = Field(
        default=TaskKind.OTHER.value,
        sa_column=Column(String(50), nullable=False),
        description="Activity category: mining, woodcutting, fishing, ...",
    )
    worker_name: str = Field(
        sa_column=Column(String(255), nullable=False),
        description="Name of the worker program",
    )
    worker_args: list[str] = Field(
        default_factory=list,
        sa_column=Column(JSON, nullable=False),
        description="Ordered positional arguments for the worker",
    )
    state: str = Field(
        default=TaskState.PENDING.value,
        sa_column=Column(String(50), index=True, nullable=False),
        description="Task state: idle, pending, running, paused, completed, failed",
    )
    worker_handle: str | None = Field(
        default=None,
        sa_column=Column(String(512)),
        description="Handle of the worker currently running the task",
    )
    progress: dict = Field(
        default_factory=dict,
        sa_column=Column(JSON, nullable=False),
        description="Opaque progress payload, final payload on terminal states",
    )
    error_text: str | None = Field(
        default=None,
        sa_column=Column(Text),
        description="Last failure reason",
    )

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES
