"""Wires the import task handler onto a queue processor."""

from __future__ import annotations

from ..config import Settings
from ..core.models import IMPORT_TASK_NAME
from ..core.queue import JobQueue, QueueProcessor, QueueProcessorConfig, RetryPolicy
from ..repositories.contacts import ContactRepository
from ..repositories.storage import ArtifactStore
from .import_task import ImportTaskProcessor


def processor_config(settings: Settings) -> QueueProcessorConfig:
    return QueueProcessorConfig(
        concurrency=settings.WORKER_CONCURRENCY,
        poll_interval_seconds=settings.poll_interval_seconds,
        batch_size=settings.WORKER_BATCH_SIZE,
        retry_policy=RetryPolicy(max_attempts=settings.WORKER_MAX_ATTEMPTS),
    )


def build_processor(
    settings: Settings,
    queue: JobQueue,
    storage: ArtifactStore,
    contacts: ContactRepository,
) -> QueueProcessor:
    processor = QueueProcessor(queue, processor_config(settings))
    processor.register_handler(IMPORT_TASK_NAME, ImportTaskProcessor(storage, contacts))
    return processor
