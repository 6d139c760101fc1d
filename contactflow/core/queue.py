"""
Contactflow - Job Queue

Postgres-backed task queue with at-least-once execution:
- Enqueue by task name + JSON payload
- FOR UPDATE SKIP LOCKED claim, safe across any number of worker processes
- Stale in-progress rows are reclaimed after a lock timeout (crashed workers)
- Exponential backoff retries, then dead letter
- Bounded concurrency per worker process, graceful shutdown

Usage:
    from contactflow.core.queue import PostgresJobQueue, QueueProcessor, QueueProcessorConfig

    queue = PostgresJobQueue(pool)
    processor = QueueProcessor(queue, QueueProcessorConfig(concurrency=10))
    processor.register_handler("processImportJob", handle_import)
    await processor.run()
"""

from __future__ import annotations

import asyncio
import logging
import random
import signal
import socket
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Protocol, Sequence
from uuid import uuid4

from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from pydantic import ValidationError

from .logging import LogContext, Timer, get_logger, log_worker_failure, log_worker_start, log_worker_success
from .models import QueueJob, QueueJobStatus

if TYPE_CHECKING:
    from psycopg_pool import AsyncConnectionPool

logger = get_logger(__name__)


# =============================================================================
# Configuration
# =============================================================================


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for failed tasks."""

    max_attempts: int = 5
    base_delay_seconds: float = 2.0
    max_delay_seconds: float = 300.0
    exponential_base: float = 2.0
    jitter: bool = True

    def get_delay(self, attempt: int) -> float:
        """Calculate delay for given attempt number with exponential backoff."""
        delay = self.base_delay_seconds * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay_seconds)

        if self.jitter:
            delay = delay * (0.5 + random.random())

        return delay


@dataclass
class QueueProcessorConfig:
    """Configuration for queue processor."""

    concurrency: int = 10
    poll_interval_seconds: float = 0.5
    batch_size: int = 1
    lock_timeout_seconds: float = 4 * 3600
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)
    shutdown_timeout_seconds: float = 30.0


@dataclass
class JobHelpers:
    """Passed to every handler alongside the payload."""

    logger: logging.Logger
    queue_job_id: int
    attempt: int
    max_attempts: int


JobHandler = Callable[[Dict[str, Any], JobHelpers], Awaitable[Any]]


# =============================================================================
# Queue Backend
# =============================================================================


class JobQueue(Protocol):
    """Storage contract the processor needs from a queue backend."""

    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> int: ...

    async def claim_batch(
        self, task_names: Sequence[str], batch_size: int, lock_timeout_seconds: float
    ) -> List[QueueJob]: ...

    async def complete(self, job: QueueJob) -> None: ...

    async def fail(self, job: QueueJob, error_message: str, retry_after: Optional[float]) -> None: ...

    async def release(self, job: QueueJob) -> None: ...


class PostgresJobQueue:
    """Queue backend over the import_job_queue table (see sql/schema.sql)."""

    def __init__(self, pool: "AsyncConnectionPool", worker_id: Optional[str] = None) -> None:
        self._pool = pool
        self.worker_id = worker_id or f"{socket.gethostname()}-{uuid4().hex[:8]}"

    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> int:
        async with self._pool.connection() as conn:
            async with conn.cursor() as cur:
                await cur.execute(
                    """
                    INSERT INTO import_job_queue (task_name, payload, status, run_at, created_at)
                    VALUES (%(task_name)s, %(payload)s, 'pending', NOW(), NOW())
                    RETURNING id
                    """,
                    {"task_name": task_name, "payload": Jsonb(payload)},
                )
                row = await cur.fetchone()

        if row is None:
            raise RuntimeError("Queue insert returned no id")
        return int(row[0])

    async def claim_batch(
        self, task_names: Sequence[str], batch_size: int, lock_timeout_seconds: float
    ) -> List[QueueJob]:
        query = """
            WITH claimed AS (
                SELECT id
                FROM import_job_queue
                WHERE task_name = ANY(%(task_names)s)
                  AND (
                        (status = 'pending' AND run_at <= NOW())
                     OR (status = 'in_progress'
                         AND locked_at < NOW() - make_interval(secs => %(lock_timeout)s))
                  )
                ORDER BY run_at, id
                LIMIT %(batch_size)s
                FOR UPDATE SKIP LOCKED
            )
            UPDATE import_job_queue q
            SET status = 'in_progress',
                locked_at = NOW(),
                locked_by = %(worker_id)s
            FROM claimed c
            WHERE q.id = c.id
            RETURNING q.id, q.task_name, q.payload, q.attempts, q.created_at
        """

        async with self._pool.connection() as conn:
            async with conn.cursor(row_factory=dict_row) as cur:
                await cur.execute(
                    query,
                    {
                        "task_names": list(task_names),
                        "batch_size": batch_size,
                        "lock_timeout": lock_timeout_seconds,
                        "worker_id": self.worker_id,
                    },
                )
                rows = await cur.fetchall()

        jobs = []
        for row in rows:
            try:
                jobs.append(
                    QueueJob(
                        id=row["id"],
                        task_name=row["task_name"],
                        payload=row["payload"] or {},
                        attempts=row["attempts"],
                        status=QueueJobStatus.IN_PROGRESS,
                        created_at=row["created_at"],
                    )
                )
            except ValidationError as e:
                logger.error(f"Failed to parse queue row {row.get('id')}: {e}")

        return jobs

    async def complete(self, job: QueueJob) -> None:
        async with self._pool.connection() as conn:
            await conn.execute(
                """
                UPDATE import_job_queue
                SET status = 'completed',
                    completed_at = NOW(),
                    locked_at = NULL,
                    locked_by = NULL
                WHERE id = %(id)s
                """,
                {"id": job.id},
            )

    async def fail(self, job: QueueJob, error_message: str, retry_after: Optional[float]) -> None:
        params = {
            "id": job.id,
            "attempts": job.attempts + 1,
            "error": error_message[:1000],
        }
        async with self._pool.connection() as conn:
            if retry_after is None:
                await conn.execute(
                    """
                    UPDATE import_job_queue
                    SET status = 'dead_letter',
                        attempts = %(attempts)s,
                        last_error = %(error)s,
                        completed_at = NOW(),
                        locked_at = NULL,
                        locked_by = NULL
                    WHERE id = %(id)s
                    """,
                    params,
                )
            else:
                await conn.execute(
                    """
                    UPDATE import_job_queue
                    SET status = 'pending',
                        attempts = %(attempts)s,
                        last_error = %(error)s,
                        run_at = NOW() + make_interval(secs => %(delay)s),
                        locked_at = NULL,
                        locked_by = NULL
                    WHERE id = %(id)s
                    """,
                    {**params, "delay": retry_after},
                )

    async def release(self, job: QueueJob) -> None:
        """Return a claimed job to pending without spending an attempt."""
        async with self._pool.connection() as conn:
            await conn.execute(
                """
                UPDATE import_job_queue
                SET status = 'pending',
                    locked_at = NULL,
                    locked_by = NULL
                WHERE id = %(id)s AND status = 'in_progress'
                """,
                {"id": job.id},
            )


# =============================================================================
# Queue Processor
# =============================================================================


class QueueProcessor:
    """
    Async queue processor.

    Runs `concurrency` worker loops; each loop claims jobs, dispatches them to
    the handler registered for their task name, and reports the outcome back
    to the queue. A handler exception schedules a retry until the retry
    policy's attempt budget is spent; errors flagged `permanent` and payload
    validation errors go straight to the dead letter state.
    """

    def __init__(self, queue: JobQueue, config: Optional[QueueProcessorConfig] = None) -> None:
        self.queue = queue
        self.config = config or QueueProcessorConfig()
        self._handlers: Dict[str, JobHandler] = {}
        self._running = False
        self._shutdown_event = asyncio.Event()
        self._active_jobs: Dict[int, asyncio.Task] = {}
        self.stats = ProcessorStats()

    def register_handler(self, task_name: str, handler: JobHandler) -> None:
        """Register a handler for a task name."""
        self._handlers[task_name] = handler
        logger.info(f"Registered handler for {task_name}")

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Start the worker loops and block until shutdown is signaled."""
        self._running = True
        if install_signal_handlers:
            self._setup_signal_handlers()

        logger.info(
            "Starting queue processor",
            extra={
                "concurrency": self.config.concurrency,
                "poll_interval": self.config.poll_interval_seconds,
            },
        )

        try:
            workers = [
                asyncio.create_task(self._worker_loop(worker_id))
                for worker_id in range(self.config.concurrency)
            ]

            await self._shutdown_event.wait()

            # Worker loops stop between jobs; only a job still running at the
            # timeout is cancelled, and process_job releases it
            _, unfinished = await asyncio.wait(workers, timeout=self.config.shutdown_timeout_seconds)
            if unfinished:
                logger.warning(f"Shutdown timeout, {len(self._active_jobs)} jobs still active")
                for worker in unfinished:
                    worker.cancel()
                await asyncio.gather(*unfinished, return_exceptions=True)

        finally:
            self._running = False
            logger.info(
                f"Queue processor stopped: {self.stats.processed} processed, {self.stats.failed} failed",
                extra={
                    "uptime_seconds": round(self.stats.uptime_seconds, 1),
                    "throughput_per_hour": round(self.stats.throughput_per_hour, 1),
                },
            )

    def shutdown(self) -> None:
        """Signal graceful shutdown."""
        logger.info("Shutdown requested, waiting for active jobs...")
        self._shutdown_event.set()

    def _setup_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()

        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.shutdown)

    async def _worker_loop(self, worker_id: int) -> None:
        logger.debug(f"Worker loop {worker_id} started")

        while self._running and not self._shutdown_event.is_set():
            try:
                claimed = await self.poll_once()
                if not claimed:
                    await self._idle()

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Worker loop {worker_id} error: {e}")
                await asyncio.sleep(self.config.poll_interval_seconds)

        logger.debug(f"Worker loop {worker_id} stopped")

    async def _idle(self) -> None:
        """Wait one poll interval, returning early on shutdown."""
        try:
            await asyncio.wait_for(self._shutdown_event.wait(), timeout=self.config.poll_interval_seconds)
        except asyncio.TimeoutError:
            return

    async def poll_once(self) -> int:
        """Claim one batch and process it. Returns the number of jobs claimed."""
        jobs = await self.queue.claim_batch(
            list(self._handlers),
            self.config.batch_size,
            self.config.lock_timeout_seconds,
        )

        for index, job in enumerate(jobs):
            if self._shutdown_event.is_set():
                await self._release_unstarted(jobs[index:])
                break
            task = asyncio.create_task(self.process_job(job))
            self._active_jobs[job.id] = task
            try:
                await task
            finally:
                self._active_jobs.pop(job.id, None)

        return len(jobs)

    async def _release_unstarted(self, jobs: List[QueueJob]) -> None:
        logger.info(f"Shutdown requested, releasing {len(jobs)} claimed jobs")
        for job in jobs:
            await self.queue.release(job)

    async def process_job(self, job: QueueJob) -> bool:
        """Run one claimed job through its handler and record the outcome."""
        timer = Timer()
        attempt = job.attempts + 1
        max_attempts = self.config.retry_policy.max_attempts
        payload = job.payload
        job_context = {
            "job_id": payload.get("jobId"),
            "source": payload.get("source"),
        }

        with LogContext(run_id=uuid4(), queue_job_id=job.id, task_name=job.task_name, **job_context):
            with timer:
                handler = self._handlers.get(job.task_name)
                if handler is None:
                    logger.error(f"No handler registered for {job.task_name}")
                    await self.queue.fail(job, f"No handler for {job.task_name}", retry_after=None)
                    self.stats.failed += 1
                    return False

                log_worker_start(logger, job.task_name, job.id, attempt=attempt)
                helpers = JobHelpers(
                    logger=get_logger(f"contactflow.tasks.{job.task_name}"),
                    queue_job_id=job.id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                )

                try:
                    await handler(payload, helpers)
                except asyncio.CancelledError:
                    logger.warning(f"Job {job.id} cancelled during shutdown, releasing it")
                    await self.queue.release(job)
                    raise
                except Exception as e:
                    log_worker_failure(
                        logger,
                        job.task_name,
                        job.id,
                        error=e,
                        duration_ms=timer.elapsed_ms,
                        attempt=attempt,
                        max_attempts=max_attempts,
                    )
                    await self._record_failure(job, e)
                    self.stats.failed += 1
                    return False

            await self.queue.complete(job)
            log_worker_success(logger, job.task_name, job.id, duration_ms=timer.elapsed_ms)
            self.stats.processed += 1
            return True

    async def _record_failure(self, job: QueueJob, error: Exception) -> None:
        attempt = job.attempts + 1
        permanent = isinstance(error, ValidationError) or getattr(error, "permanent", False)

        if permanent or attempt >= self.config.retry_policy.max_attempts:
            logger.warning(
                f"Job {job.id} moved to dead_letter after {attempt} attempts",
                extra={"attempt": attempt, "error_type": type(error).__name__},
            )
            await self.queue.fail(job, f"{type(error).__name__}: {error}", retry_after=None)
            return

        delay = self.config.retry_policy.get_delay(attempt)
        await self.queue.fail(job, f"{type(error).__name__}: {error}", retry_after=delay)
        logger.info(
            f"Job {job.id} scheduled for retry in {delay:.1f}s",
            extra={"attempt": attempt, "max_attempts": self.config.retry_policy.max_attempts},
        )


# =============================================================================
# Stats
# =============================================================================


@dataclass
class ProcessorStats:
    """Runtime statistics for queue processor."""

    processed: int = 0
    failed: int = 0
    start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.start_time).total_seconds()

    @property
    def throughput_per_hour(self) -> float:
        if self.uptime_seconds < 1:
            return 0
        return (self.processed / self.uptime_seconds) * 3600
