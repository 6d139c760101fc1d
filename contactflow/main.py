"""
Contactflow - FastAPI Application

Creates the app, wires middleware, error handlers and routers, and builds
the storage, uploader and queue collaborators once at startup.

Run with: contactflow-api  (or: uvicorn contactflow.main:app --port 3000)
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import httpx
import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from . import __version__
from .config import get_settings, log_startup_diagnostics, resolve_resumable_endpoint
from .core.errors import ConfigurationError, setup_error_handlers
from .core.logging import configure_logging, get_logger
from .core.middleware import MetricsMiddleware, RequestLoggingMiddleware
from .core.queue import PostgresJobQueue
from .db import close_db_pool, get_supabase_client, init_db_pool
from .repositories import SupabaseArtifactStore
from .routers.health import router as health_router
from .routers.imports import router as imports_router
from .routers.metrics import router as metrics_router
from .services.resumable import TusUploader, build_session_store

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Startup: database pool, storage client, tus uploader, queue.
    Shutdown: close the HTTP client and the pool.

    A missing collaborator is logged, not raised, so the process stays up
    and /health/ready reports 503.
    """
    settings = get_settings()
    configure_logging(level=settings.LOG_LEVEL, json_output=settings.LOG_JSON, service_name="contactflow-api")
    log_startup_diagnostics("contactflow-api")

    pool = await init_db_pool(settings)
    app.state.queue = PostgresJobQueue(pool) if pool is not None else None

    http_client = httpx.AsyncClient(timeout=settings.UPLOAD_TIMEOUT_SECONDS)
    app.state.storage = None
    app.state.uploader = None

    try:
        client = await get_supabase_client(settings)
        app.state.storage = SupabaseArtifactStore(
            client, settings.IMPORT_BUCKET, settings.UPLOAD_CACHE_CONTROL
        )
        app.state.uploader = TusUploader(
            endpoint=resolve_resumable_endpoint(settings),
            service_key=settings.SUPABASE_SERVICE_ROLE_KEY,
            http_client=http_client,
            session_store=build_session_store(settings.UPLOAD_SESSION_DIR),
            chunk_size=settings.UPLOAD_CHUNK_SIZE,
            retry_delays=settings.UPLOAD_RETRY_DELAYS,
            cache_control=settings.UPLOAD_CACHE_CONTROL,
        )
    except ConfigurationError as e:
        logger.error(f"Storage not configured: {e.message}")

    logger.info(f"Contactflow API v{__version__} started")

    yield

    logger.info("Shutting down Contactflow API")
    await http_client.aclose()
    await close_db_pool()


def create_app() -> FastAPI:
    """Application factory."""
    settings = get_settings()

    app = FastAPI(
        title="Contactflow",
        description="Contact import pipeline: stage, queue, validate, persist.",
        version=__version__,
        lifespan=lifespan,
    )

    # Starlette wraps in reverse order: CORS ends up outermost
    app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allowed_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID"],
    )

    setup_error_handlers(app)

    app.include_router(imports_router)
    app.include_router(health_router)
    app.include_router(metrics_router)

    return app


app = create_app()


def run() -> None:
    """Serve the app on HOST:PORT."""
    settings = get_settings()
    logger.info(f"listening host={settings.HOST} port={settings.PORT} env={settings.ENVIRONMENT}")
    uvicorn.run("contactflow.main:app", host=settings.HOST, port=settings.PORT, log_config=None)
