"""
Health endpoints.

GET /health        liveness, no dependencies touched
GET /health/ready  readiness: Postgres SELECT 1 and a storage list call
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .. import __version__
from ..config import get_settings
from ..core.logging import get_logger
from ..db import check_db_ready

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


class HealthResponse(BaseModel):
    status: str
    timestamp: str
    version: str
    environment: str


class ReadinessResponse(BaseModel):
    status: str
    timestamp: str
    database: str
    storage: str
    error: Optional[str] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@router.get("", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        timestamp=_now(),
        version=__version__,
        environment=get_settings().ENVIRONMENT,
    )


@router.get("/ready", response_model=ReadinessResponse)
async def ready(request: Request) -> ReadinessResponse | JSONResponse:
    db_ok, db_status = await check_db_ready()

    storage = getattr(request.app.state, "storage", None)
    if storage is None:
        storage_ok, storage_status = False, "not configured"
    else:
        storage_ok = await storage.ping()
        storage_status = "ok" if storage_ok else "unreachable"

    if db_ok and storage_ok:
        return ReadinessResponse(
            status="healthy", timestamp=_now(), database=db_status, storage=storage_status
        )

    failed = [name for name, ok in (("database", db_ok), ("storage", storage_ok)) if not ok]
    logger.warning(f"Readiness check failed: {', '.join(failed)}")
    body = ReadinessResponse(
        status="unhealthy",
        timestamp=_now(),
        database=db_status,
        storage=storage_status,
        error=f"Unavailable: {', '.join(failed)}",
    )
    return JSONResponse(status_code=503, content=body.model_dump())
