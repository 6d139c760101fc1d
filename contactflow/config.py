"""
Contactflow - Configuration

STRICT CONFIGURATION LOADER
============================

Settings are read from os.environ only. Auto-loading of .env files is
DISABLED unless ENV_FILE explicitly points at one.

Environment variables:
  ENVIRONMENT               – dev | staging | prod (dev uses the local resumable endpoint)
  SUPABASE_URL              – Supabase project URL (https://<ref>.supabase.co)
  SUPABASE_SERVICE_ROLE_KEY – Service role JWT (server-side only)
  DATABASE_URL              – Postgres connection string (contacts + job queue)
  IMPORT_BUCKET             – Storage bucket for staged artifacts (default: imports)
  UPLOAD_CHUNK_SIZE         – Resumable chunk size in bytes (default: 6 MiB)
  UPLOAD_RETRY_DELAYS       – JSON list of per-chunk retry delays in seconds
  UPLOAD_SESSION_DIR        – Directory for persisted resumable sessions (optional)
  WORKER_CONCURRENCY        – Concurrent tasks per worker process (default: 10)
  WORKER_POLL_INTERVAL_MS   – Queue poll interval (default: 500)
"""

from __future__ import annotations

import logging
import os
import re
from functools import lru_cache
from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .core.errors import ConfigurationError

logger = logging.getLogger(__name__)

_PROJECT_URL_RE = re.compile(r"https://([^.]+)\.supabase\.co")

RESUMABLE_PATH = "/storage/v1/upload/resumable"


class Settings(BaseSettings):
    """
    Application settings.

    Grouped by collaborator: storage, uploads, database/queue, worker, server.
    """

    model_config = SettingsConfigDict(
        env_file=os.environ.get("ENV_FILE"),
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # =========================================================================
    # ENVIRONMENT
    # =========================================================================

    ENVIRONMENT: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    LOG_JSON: bool = Field(default=True, description="JSON logs (False = colored console)")

    # =========================================================================
    # SUPABASE (storage collaborator)
    # =========================================================================

    SUPABASE_URL: str = Field(default="", description="Supabase project URL")
    SUPABASE_SERVICE_ROLE_KEY: str = Field(default="", description="Service role JWT key")
    IMPORT_BUCKET: str = Field(default="imports", description="Bucket for staged artifacts")

    # =========================================================================
    # UPLOADS
    # =========================================================================

    UPLOAD_CHUNK_SIZE: int = Field(default=6 * 1024 * 1024, gt=0)
    UPLOAD_RETRY_DELAYS: list[float] = Field(default_factory=lambda: [0, 3, 5, 10, 20])
    UPLOAD_CACHE_CONTROL: str = Field(default="3600")
    UPLOAD_DEFAULT_CONTENT_TYPE: str = Field(default="application/octet-stream")
    UPLOAD_SESSION_DIR: str | None = Field(
        default=None,
        description="Persist resumable sessions here so resumption survives restarts",
    )
    UPLOAD_TIMEOUT_SECONDS: float = Field(default=60.0, gt=0)

    # =========================================================================
    # DATABASE + QUEUE
    # =========================================================================

    DATABASE_URL: str = Field(default="", description="Postgres connection string")
    DB_POOL_MIN_SIZE: int = Field(default=1, ge=0)
    DB_POOL_MAX_SIZE: int = Field(default=10, ge=1)

    # =========================================================================
    # WORKER
    # =========================================================================

    WORKER_CONCURRENCY: int = Field(default=10, ge=1)
    WORKER_POLL_INTERVAL_MS: int = Field(default=500, ge=10)
    WORKER_MAX_ATTEMPTS: int = Field(default=5, ge=1)
    WORKER_BATCH_SIZE: int = Field(default=10, ge=1)

    # =========================================================================
    # SERVER
    # =========================================================================

    HOST: str = Field(default="0.0.0.0")
    PORT: int = Field(default=3000)
    CORS_ORIGINS: str = Field(default="*")

    @field_validator("UPLOAD_RETRY_DELAYS")
    @classmethod
    def _non_negative_delays(cls, value: list[float]) -> list[float]:
        if any(delay < 0 for delay in value):
            raise ValueError("UPLOAD_RETRY_DELAYS must not contain negative values")
        return value

    @property
    def is_development(self) -> bool:
        return self.ENVIRONMENT == "dev"

    @property
    def poll_interval_seconds(self) -> float:
        return self.WORKER_POLL_INTERVAL_MS / 1000

    @property
    def cors_allowed_origins(self) -> list[str]:
        origins = [o.strip().rstrip("/") for o in self.CORS_ORIGINS.split(",") if o.strip()]
        return origins or ["*"]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def reset_settings() -> None:
    """Clear the cached settings (for testing or environment switch)."""
    get_settings.cache_clear()


def resolve_resumable_endpoint(settings: Settings) -> str:
    """
    Resolve the tus endpoint for the current environment.

    Local/dev stacks serve the resumable endpoint on the project URL itself.
    Hosted projects use the dedicated storage hostname derived from the
    project ref, which supports large uploads without the API gateway limits.
    """
    base_url = settings.SUPABASE_URL.rstrip("/")
    if settings.is_development:
        if not base_url:
            raise ConfigurationError("SUPABASE_URL is required for resumable uploads")
        return f"{base_url}{RESUMABLE_PATH}"

    match = _PROJECT_URL_RE.match(base_url)
    if not match:
        raise ConfigurationError(
            f"Invalid Supabase URL format for {settings.ENVIRONMENT} environment: {base_url!r}"
        )
    project_ref = match.group(1)
    return f"https://{project_ref}.storage.supabase.co{RESUMABLE_PATH}"


def log_startup_diagnostics(service_name: str = "contactflow") -> None:
    """Log the effective configuration (no secrets)."""
    settings = get_settings()

    logger.info(
        f"{service_name} starting",
        extra={
            "environment": settings.ENVIRONMENT,
            "bucket": settings.IMPORT_BUCKET,
            "chunk_size": settings.UPLOAD_CHUNK_SIZE,
            "database_configured": bool(settings.DATABASE_URL),
            "supabase_configured": bool(settings.SUPABASE_URL),
        },
    )


__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "resolve_resumable_endpoint",
    "log_startup_diagnostics",
]
