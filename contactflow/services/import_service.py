"""
Contactflow - Import Service

Submission path for POST /import:

    normalized input -> job id + artifact key -> stage -> enqueue -> {jobId}

The artifact key is derived from the job id and also carried in the queued
payload, so the worker never needs a lookup.
"""

from __future__ import annotations

import time
from typing import Callable, Optional
from uuid import uuid4

from ..core.logging import LogContext, get_logger
from ..core.models import ImportJobPayload, ImportResponse
from .handoff import JobHandoff
from .normalizer import ImportInput, to_payload
from .resumable import ProgressCallback
from .upload_orchestrator import UploadOrchestrator

logger = get_logger(__name__)


def generate_job_id() -> str:
    """Microsecond timestamp plus a random suffix, unique per submission."""
    return f"{time.time_ns() // 1000}-{uuid4().hex[:9]}"


class ImportService:
    def __init__(
        self,
        orchestrator: UploadOrchestrator,
        handoff: JobHandoff,
        job_id_factory: Callable[[], str] = generate_job_id,
    ) -> None:
        self.orchestrator = orchestrator
        self.handoff = handoff
        self._job_id_factory = job_id_factory

    async def submit(
        self, item: ImportInput, on_progress: Optional[ProgressCallback] = None
    ) -> ImportResponse:
        payload = to_payload(item)
        job_id = self._job_id_factory()
        key = payload.artifact_key(job_id)

        with LogContext(job_id=job_id, source=payload.source, artifact_key=key):
            logger.info(
                f"Import submitted ({type(item).__name__})",
                extra={"bytes_total": len(payload.content)},
            )
            staged = await self.orchestrator.stage(
                key=key,
                content=payload.content,
                content_type=payload.content_type,
                metadata={**payload.metadata, "jobId": job_id, "source": payload.source},
                use_resumable=payload.use_resumable,
                on_progress=on_progress,
            )
            await self.handoff.enqueue(
                ImportJobPayload(job_id=job_id, source=payload.source, artifact_key=staged.key)
            )

        return ImportResponse(job_id=job_id)
