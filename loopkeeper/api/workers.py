"""Worker API endpoints."""

from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from loopkeeper.api.tasks import (
    SERVICE_ERRORS,
    StartResponse,
    TaskResponse,
    task_response,
    to_http_exception,
)
from loopkeeper.core.auth import verify_api_key
from loopkeeper.services import Supervisor, get_supervisor
from loopkeeper.workers.registry import available_workers

router = APIRouter()


class HandleRequest(BaseModel):
    """Request model addressing one worker."""

    handle: str


class WorkerResponse(BaseModel):
    """Response model for one row of the worker listing."""

    handle: str
    task_id: int | None
    worker_name: str
    character: str
    args: list[str]
    status: str
    live: bool
    source: str
    spawned_at: datetime | None
    exited_at: datetime | None
    exit_code: int | None
    loop_count: int
    activity_count: int


class OutputLine(BaseModel):
    stream: str
    text: str
    time: str


class OutputResponse(BaseModel):
    handle: str
    lines: list[OutputLine]


class ClearResponse(BaseModel):
    cleared: int


class WorkerDefinitionResponse(BaseModel):
    name: str
    kind: str
    preset_args: list[str]
    description: str


@router.get("/workers", response_model=list[WorkerResponse])
def list_workers(
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """List live workers and recent tasks."""
    return [WorkerResponse(**vars(view)) for view in supervisor.list_workers()]


@router.post("/workers/stop", response_model=TaskResponse)
def stop_worker(
    request: HandleRequest,
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Kill a worker and cancel its task."""
    try:
        task = supervisor.stop(request.handle)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e
    return task_response(task)


@router.post("/workers/pause", response_model=TaskResponse)
def pause_worker(
    request: HandleRequest,
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Kill a worker and keep its task for resume."""
    try:
        task = supervisor.pause(request.handle)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e
    return task_response(task)


@router.post("/workers/restart", response_model=StartResponse)
def restart_worker(
    request: HandleRequest,
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Restart a worker from its stored arguments."""
    try:
        result = supervisor.restart(request.handle)
    except (*SERVICE_ERRORS, OSError) as e:
        raise to_http_exception(e) from e

    return StartResponse(
        task_id=result.task_id, handle=result.handle, character=result.character
    )


@router.post("/workers/clear", response_model=ClearResponse)
def clear_workers(
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Hide stopped workers from the listing."""
    return ClearResponse(cleared=supervisor.clear_stopped())


@router.get("/workers/output", response_model=OutputResponse)
def worker_output(
    handle: str,
    api_key: str = Depends(verify_api_key),
    supervisor: Supervisor = Depends(get_supervisor),
):
    """Get the buffered output of a worker."""
    try:
        lines = supervisor.output(handle)
    except SERVICE_ERRORS as e:
        raise to_http_exception(e) from e
    return OutputResponse(handle=handle, lines=lines)


@router.get("/workers/available", response_model=list[WorkerDefinitionResponse])
def list_available_workers(api_key: str = Depends(verify_api_key)):
    """List the worker programs that may be started."""
    return [
        WorkerDefinitionResponse(
            name=definition.name,
            kind=definition.kind.value,
            preset_args=list(definition.preset_args),
            description=definition.description,
        )
        for definition in available_workers()
    ]
