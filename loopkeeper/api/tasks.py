"""Task API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from loopkeeper.core.auth import verify_api_key
from loopkeeper.core.errors import (
    ConflictExistsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    WorkerLimitError,
)
from loopkeeper.models import Task, TaskKind
from loopkeeper.services import Supervisor, TaskService, get_supervisor

router = APIRouter()

ERROR_STATUS = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_400_BAD_REQUEST,
    ConflictExistsError: status.HTTP_409_CONFLICT,
    InvalidTransitionError: status.HTTP_409_CONFLICT,
    WorkerLimitError: status.HTTP_429_TOO_MANY_REQUESTS,
}
SERVICE_ERRORS = tuple(ERROR_STATUS)


def to_http_exception(error: Exception) -> HTTPException:
    """Map a service error onto its HTTP status."""
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error)
    )


class TaskCreate(BaseModel):
    """Request model for starting a worker."""

    worker: str
    args: list[str] = Field(default_factory=list)
    kind: TaskKind | None = None


class TaskResponse(BaseModel):
    """Response model for task data."""

    id: int
    character: str
    kind: str
    worker_name: str
    worker_args: list[str]
    state: str
    worker_handle: str | None
    progress: dict
    error_text: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None


class TaskListResponse(BaseModel):
    """Response model for list of tasks."""

    tasks: list[TaskResponse]
    total: int
    limit: int
    offset: int


class StartResponse(BaseModel):
    """Response model for a started worker."""

    task_id: int
    handle: str
    character: str


def task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        character=task.character,
        kind=task.kind,
        worker_name=task.worker_name,
        worker_args=task.worker_args,
        state=task.state,
        worker_handle=task.worker_handle,
        progress=task.progress or {},
        error_text=task.error_text,
        created_at=task.created_at,
        updated_at=task.updated_at,
        started_at=task.started_at,
    )


@router.post(
    "/tasks", response_model=StartResponse, status_code=status.HTTP_201_CREATED
)
def create_task(
    task_data: TaskCreate,
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Start a worker for a character, replacing its current task."""
    try:
        result = supervisor.start(
            task_data.worker,
            task_data.args,
            kind=task_data.kind.value if task_data.kind else None,
        )
    except (*SERVICE_ERRORS, OSError) as e:
        raise to_http_exception(e) from e

    return StartResponse(
        task_id=result.task_id, handle=result.handle, character=result.character
    )


@router.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(task_id: int, api_key: str = Depends(verify_api_key)):
    """Get a task by ID."""
    try:
        task = TaskService.get_task_by_id(task_id)
    except NotFoundError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        ) from e

    return task_response(task)


@router.get("/tasks", response_model=TaskListResponse)
def list_tasks(
    character: str | None = None,
    limit: int = 100,
    offset: int = 0,
    api_key: str = Depends(verify_api_key),
):
    """List tasks with pagination, optionally for one character."""
    tasks, total = TaskService.list_tasks(
        character=character, limit=limit, offset=offset
    )

    return TaskListResponse(
        tasks=[task_response(task) for task in tasks],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/tasks/{task_id}/resume", response_model=StartResponse)
def resume_task(
    task_id: int,
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Restart a paused task in place."""
    try:
        result = supervisor.resume(task_id)
    except (*SERVICE_ERRORS, OSError) as e:
        raise to_http_exception(e) from e

    return StartResponse(
        task_id=result.task_id, handle=result.handle, character=result.character
    )
