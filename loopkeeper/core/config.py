"""Application configuration."""

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel

logger = logging.getLogger(__name__)

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """Application settings loaded from environment variables."""

    # Environment
    env: str = os.getenv("APP_ENV", "development")
    api_secret_key: str = os.getenv("API_SECRET_KEY", "dev-secret-key")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database
    # Default uses local socket connection with trust auth
    database_url: str = os.getenv(
        "DATABASE_URL", "postgresql:///loopkeeper?user=postgres"
    )

    # Celery
    celery_broker_url: str = os.getenv("CELERY_BROKER_URL", "redis://localhost:6379")

    # Game server
    artifacts_api_url: str = os.getenv(
        "ARTIFACTS_API_URL", "https://api.artifactsmmo.com"
    )
    artifacts_api_token: str | None = os.getenv("ARTIFACTS_API_TOKEN")
    default_character: str | None = os.getenv("DEFAULT_CHARACTER")

    # Env file handed to every worker as --env=<path>
    custom_env_file: str | None = os.getenv("CUSTOM_ENV_FILE")

    # Supervisor
    max_concurrent_workers: int = int(os.getenv("MAX_CONCURRENT_WORKERS", "10"))
    max_worker_args: int = 10
    allowed_workers: list[str] = _env_list("ALLOWED_WORKERS")
    worker_ttl_seconds: int = int(os.getenv("WORKER_TTL_SECONDS", "300"))  # 5 minutes
    termination_grace_seconds: float = float(
        os.getenv("TERMINATION_GRACE_SECONDS", "1")
    )
    output_buffer_lines: int = 1000

    # Recovery
    recover_on_startup: bool = _env_bool("RECOVER_ON_STARTUP", "true")
    recovery_pacing_seconds: float = float(os.getenv("RECOVERY_PACING_SECONDS", "1"))

    # Retention
    task_retention_days: int = int(os.getenv("TASK_RETENTION_DAYS", "7"))


settings = Settings()


def load_env(env_file: str | None = None) -> None:
    """Load the default .env file and layer an account-specific file on top.

    Values from ``env_file`` override anything already in the environment, so
    one supervisor can drive characters of several accounts.
    """
    load_dotenv()

    if env_file is None:
        env_file = os.getenv("CUSTOM_ENV_FILE")
    if not env_file:
        return

    path = Path(env_file).expanduser().resolve()
    if not path.exists():
        logger.warning(f"Custom environment file not found: {path}")
        return

    logger.info(f"Loading custom environment from: {path}")
    load_dotenv(path, override=True)
