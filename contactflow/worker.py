#!/usr/bin/env python3
"""
Contactflow - Import Worker

Polls import_job_queue and runs processImportJob with bounded concurrency
until SIGINT/SIGTERM.

Usage:
    python -m contactflow.worker

Environment:
    DATABASE_URL: Postgres connection string (queue + contacts)
    SUPABASE_URL / SUPABASE_SERVICE_ROLE_KEY: artifact storage
    WORKER_CONCURRENCY, WORKER_POLL_INTERVAL_MS, WORKER_MAX_ATTEMPTS
"""

from __future__ import annotations

import asyncio
import sys

from .config import get_settings, log_startup_diagnostics
from .core.logging import configure_logging, get_logger
from .core.queue import PostgresJobQueue
from .db import close_db_pool, get_supabase_client, init_db_pool
from .repositories import PostgresContactRepository, SupabaseArtifactStore
from .workers.runner import build_processor

logger = get_logger("contactflow.worker")


async def run_worker() -> int:
    settings = get_settings()
    configure_logging(
        level=settings.LOG_LEVEL,
        json_output=settings.LOG_JSON,
        service_name="contactflow-worker",
    )
    log_startup_diagnostics("contactflow-worker")

    pool = await init_db_pool(settings)
    if pool is None:
        logger.critical("Database unavailable, worker cannot start")
        return 1

    try:
        client = await get_supabase_client(settings)
        storage = SupabaseArtifactStore(client, settings.IMPORT_BUCKET, settings.UPLOAD_CACHE_CONTROL)
        processor = build_processor(
            settings,
            queue=PostgresJobQueue(pool),
            storage=storage,
            contacts=PostgresContactRepository(pool),
        )
        await processor.run()
    finally:
        await close_db_pool()

    return 0


def main() -> int:
    return asyncio.run(run_worker())


if __name__ == "__main__":
    sys.exit(main())
