"""FastAPI application."""

import logging
import threading
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from loopkeeper.api.tasks import router as tasks_router
from loopkeeper.api.workers import router as workers_router
from loopkeeper.core.auth import verify_api_key
from loopkeeper.core.config import settings
from loopkeeper.core.database import create_tables
from loopkeeper.core.log import setup_logging
from loopkeeper.services import RecoveryService, get_supervisor

logger = logging.getLogger(__name__)


def recover_in_background() -> threading.Thread:
    """Run startup recovery without holding up the server."""
    thread = threading.Thread(
        target=RecoveryService().recover_all, name="recovery", daemon=True
    )
    thread.start()
    return thread


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    create_tables()
    if settings.recover_on_startup:
        recover_in_background()

    yield

    # Paused tasks are picked up again by the next startup
    get_supervisor().shutdown()


app = FastAPI(
    title="loopkeeper API",
    description="Supervisor for per-character game activity loops",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(tasks_router, prefix="/v1", tags=["tasks"])
app.include_router(workers_router, prefix="/v1", tags=["workers"])


@app.get("/health")
def health_check(api_key: str = Depends(verify_api_key)):
    """Health check endpoint."""
    return {"status": "healthy"}
