"""
Contactflow - Database and Storage Clients

Provides the async PostgreSQL connection pool (psycopg3 + psycopg_pool) and
the async Supabase client used for artifact storage.
- Exponential backoff retry on pool init
- Structured logging (DSN host/port/dbname/user, no password)
- Pool health state tracking for readiness probes
"""

from __future__ import annotations

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlparse

from loguru import logger
from psycopg_pool import AsyncConnectionPool

from supabase import AsyncClient, acreate_client

from . import __version__
from .config import Settings, get_settings
from .core.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Pool Health State
# ---------------------------------------------------------------------------


@dataclass
class PoolHealthState:
    """Tracks database pool initialization state for readiness probes."""

    initialized: bool = False
    healthy: bool = False
    last_error: str | None = None
    init_attempts: int = 0
    init_duration_ms: float | None = None


_pool_health = PoolHealthState()

_db_pool: Optional[AsyncConnectionPool] = None
_supabase_client: Optional[AsyncClient] = None

MAX_RETRY_ATTEMPTS = 6
MAX_TOTAL_WAIT_SECONDS = 60.0
BASE_DELAY_SECONDS = 1.0


def _parse_dsn_for_logging(dsn: str) -> dict[str, str | None]:
    """Loggable DSN components (never the password)."""
    try:
        parsed = urlparse(dsn)
        return {
            "host": parsed.hostname,
            "port": str(parsed.port) if parsed.port else "5432",
            "dbname": parsed.path.lstrip("/") if parsed.path else None,
            "user": parsed.username,
        }
    except ValueError as e:
        return {"error": str(e)}


# ---------------------------------------------------------------------------
# Supabase client
# ---------------------------------------------------------------------------


async def get_supabase_client(settings: Settings | None = None) -> AsyncClient:
    """
    Lazily create and return an async Supabase client that uses the
    SERVICE ROLE key.
    """
    global _supabase_client
    if _supabase_client is None:
        settings = settings or get_settings()
        if not settings.SUPABASE_URL or not settings.SUPABASE_SERVICE_ROLE_KEY:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
        logger.info("Creating Supabase client")
        _supabase_client = await acreate_client(
            settings.SUPABASE_URL,
            settings.SUPABASE_SERVICE_ROLE_KEY,
        )
    return _supabase_client


# ---------------------------------------------------------------------------
# PostgreSQL pool
# ---------------------------------------------------------------------------


async def init_db_pool(settings: Settings | None = None) -> Optional[AsyncConnectionPool]:
    """
    Initialize the async connection pool with exponential backoff.

    Never raises on connection failure: the pool health state records the
    error so the readiness probe can report 503.
    """
    global _db_pool

    if _db_pool is not None:
        return _db_pool

    settings = settings or get_settings()

    if not settings.DATABASE_URL:
        logger.warning("DATABASE_URL is not set; skipping DB init")
        _pool_health.last_error = "DATABASE_URL not configured"
        return None

    dsn = settings.DATABASE_URL.strip()
    dsn_info = _parse_dsn_for_logging(dsn)
    logger.info(
        "Database connection parameters",
        host=dsn_info.get("host"),
        port=dsn_info.get("port"),
        dbname=dsn_info.get("dbname"),
        user=dsn_info.get("user"),
    )

    app_name = "contactflow_v" + __version__.replace(".", "_")
    start_time = time.monotonic()
    last_error: Exception | None = None

    for attempt in range(1, MAX_RETRY_ATTEMPTS + 1):
        _pool_health.init_attempts = attempt
        elapsed = time.monotonic() - start_time

        if elapsed >= MAX_TOTAL_WAIT_SECONDS:
            logger.error(f"DB pool init: time budget exhausted ({elapsed:.1f}s)")
            break

        try:
            logger.info(f"DB pool init: attempt {attempt}/{MAX_RETRY_ATTEMPTS}")
            pool = AsyncConnectionPool(
                dsn,
                min_size=settings.DB_POOL_MIN_SIZE,
                max_size=settings.DB_POOL_MAX_SIZE,
                kwargs={"application_name": app_name},
                open=False,
            )
            await pool.open()

            async with pool.connection() as conn:
                async with conn.cursor() as cur:
                    await cur.execute("SELECT 1;")
                    result = await cur.fetchone()
                    if result is None or result[0] != 1:
                        raise RuntimeError("SELECT 1 did not return expected result")

            init_duration = (time.monotonic() - start_time) * 1000
            _db_pool = pool
            _pool_health.initialized = True
            _pool_health.healthy = True
            _pool_health.last_error = None
            _pool_health.init_duration_ms = init_duration

            logger.info(f"Database pool initialized (attempt {attempt}, {init_duration:.0f}ms total)")
            return pool

        except Exception as e:
            last_error = e
            _pool_health.last_error = f"{type(e).__name__}: {str(e)[:200]}"
            _pool_health.healthy = False
            logger.warning(f"DB pool init attempt {attempt} failed: {type(e).__name__}: {e}")

            if attempt < MAX_RETRY_ATTEMPTS:
                delay = BASE_DELAY_SECONDS * (2 ** (attempt - 1))
                jitter = random.uniform(0, delay * 0.3)
                actual_delay = min(delay + jitter, MAX_TOTAL_WAIT_SECONDS - elapsed)
                if actual_delay > 0:
                    logger.info(f"DB pool init: waiting {actual_delay:.1f}s before retry")
                    await asyncio.sleep(actual_delay)

    _pool_health.initialized = False
    _pool_health.healthy = False
    logger.error(
        f"Failed to initialize database pool after {_pool_health.init_attempts} attempts: {last_error}"
    )
    return None


async def close_db_pool() -> None:
    """Close the pool on shutdown."""
    global _db_pool
    if _db_pool is not None:
        await _db_pool.close()
        _db_pool = None
        _pool_health.initialized = False
        _pool_health.healthy = False
        logger.info("Database pool closed")


async def check_db_ready(timeout: float = 2.0) -> tuple[bool, str]:
    """
    SELECT 1 against the pool, for the readiness probe.

    Returns:
        Tuple of (is_ready, status_message)
    """
    pool = _db_pool
    if pool is None:
        return False, _pool_health.last_error or "Pool not initialized"

    async def _ping() -> int:
        assert pool is not None
        async with pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute("SELECT 1;")
                row = await cur.fetchone()
                return row[0] if row else 0

    try:
        start = time.monotonic()
        result = await asyncio.wait_for(_ping(), timeout=timeout)
        latency_ms = (time.monotonic() - start) * 1000
    except asyncio.TimeoutError:
        _pool_health.healthy = False
        _pool_health.last_error = f"Query timeout ({timeout}s)"
        return False, f"timeout ({timeout}s)"
    except Exception as e:
        _pool_health.healthy = False
        _pool_health.last_error = f"{type(e).__name__}: {str(e)[:200]}"
        logger.warning(f"DB readiness check failed: {type(e).__name__}: {e}")
        return False, f"error: {type(e).__name__}"

    if result != 1:
        _pool_health.healthy = False
        _pool_health.last_error = f"SELECT 1 returned {result}"
        return False, f"unexpected_result: {result}"

    _pool_health.healthy = True
    _pool_health.last_error = None
    return True, f"ok ({latency_ms:.0f}ms)"
