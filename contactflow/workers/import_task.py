"""
Contactflow - Import Task (processImportJob)

Consumes one staged artifact:

    DEQUEUED -> DOWNLOADING -> PARSING -> VALIDATING -> PERSISTING -> CLEANING_UP -> DONE

    Any stage before CLEANING_UP can end in FAILED.

Failures before CLEANING_UP are raised to the queue processor, which owns
retries. A cleanup failure is logged and the task still succeeds.

Redelivery contract:
    - Batch already persisted for this job (crash after insert, before ack)
      -> skip download and insert, go straight to cleanup
    - Validation is all-or-nothing: one bad record rejects the batch
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List

from pydantic import ValidationError

from ..core import metrics
from ..core.errors import (
    BatchValidationFailed,
    DownloadFailed,
    ParseFailed,
    PersistFailed,
    TaskFailed,
    issues_from_pydantic,
)
from ..core.models import ContactBatch, ContactIn, ContactRow, ImportJobPayload, TaskStage
from ..core.queue import JobHelpers
from ..repositories.contacts import ContactRepository
from ..repositories.storage import ArtifactStore


@dataclass
class ImportTaskResult:
    job_id: str
    source: str
    count: int
    cleaned_up: bool
    already_persisted: bool = False


def parse_artifact(raw: bytes) -> List[Any]:
    """Accept a bare contact array or a {"data": [...]} envelope."""
    try:
        document = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseFailed(f"Artifact is not valid JSON: {e}") from e

    if isinstance(document, list):
        return document
    if isinstance(document, dict) and isinstance(document.get("data"), list):
        return document["data"]
    raise ParseFailed(
        f"Invalid data format: expected array of contacts or object with data array, "
        f"got {type(document).__name__}"
    )


def validate_contacts(records: List[Any]) -> List[ContactIn]:
    """Apply the ingress contact schema to the whole batch."""
    try:
        return ContactBatch.validate_python(records)
    except ValidationError as e:
        issues = issues_from_pydantic(e)
        raise BatchValidationFailed(
            f"Batch rejected: {len(issues)} invalid field(s) across {len(records)} record(s)",
            issues=issues,
        ) from e


class ImportTaskProcessor:
    """Handler for processImportJob, constructed with its collaborators."""

    def __init__(
        self,
        storage: ArtifactStore,
        contacts: ContactRepository,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.storage = storage
        self.contacts = contacts
        self._clock = clock

    async def __call__(self, payload: Dict[str, Any], helpers: JobHelpers) -> ImportTaskResult:
        return await self.process_import_job(payload, helpers)

    async def process_import_job(self, payload: Dict[str, Any], helpers: JobHelpers) -> ImportTaskResult:
        job = ImportJobPayload.model_validate(payload)
        key = job.resolved_artifact_key
        log = helpers.logger
        context = {"job_id": job.job_id, "source": job.source, "artifact_key": key}
        stage = TaskStage.DEQUEUED

        log.info(
            f"Processing import job {job.job_id} from {job.source}",
            extra={**context, "stage": stage.value, "attempt": helpers.attempt},
        )

        try:
            try:
                existing = await self.contacts.count_for_job(job.job_id)
            except Exception as e:
                raise PersistFailed(f"Failed to check persisted contacts: {e}") from e
            if existing:
                log.info(
                    f"[SKIP] Job {job.job_id} already persisted {existing} contacts, cleaning up only",
                    extra={**context, "count": existing},
                )
                cleaned_up = await self._cleanup(key, helpers, context)
                metrics.record_job("duplicate", job.source)
                return ImportTaskResult(job.job_id, job.source, existing, cleaned_up, already_persisted=True)

            stage = TaskStage.DOWNLOADING
            try:
                raw = await self.storage.download(key)
            except DownloadFailed:
                raise
            except Exception as e:
                raise DownloadFailed(f"Failed to download {key}: {e}") from e

            stage = TaskStage.PARSING
            records = parse_artifact(raw)

            stage = TaskStage.VALIDATING
            contacts = validate_contacts(records)

            stage = TaskStage.PERSISTING
            imported_at = self._clock()
            rows = [
                ContactRow(name=c.name, email=c.email, source=job.source, imported_at=imported_at)
                for c in contacts
            ]
            try:
                count = await self.contacts.create_many(rows, job.job_id)
            except Exception as e:
                raise PersistFailed(f"Failed to insert {len(rows)} contacts: {e}") from e

        except TaskFailed as e:
            log.error(
                f"Failed to process import job {job.job_id} during {stage.value}: {e}",
                extra={**context, "stage": TaskStage.FAILED.value, "error_type": type(e).__name__},
            )
            metrics.record_job("failed", job.source)
            raise

        stage = TaskStage.CLEANING_UP
        cleaned_up = await self._cleanup(key, helpers, context)

        metrics.record_job("completed", job.source)
        metrics.record_contacts_imported(job.source, count)
        log.info(
            f"Successfully processed {count} contacts for job {job.job_id}",
            extra={**context, "stage": TaskStage.DONE.value, "count": count},
        )
        return ImportTaskResult(job.job_id, job.source, count, cleaned_up)

    async def _cleanup(self, key: str, helpers: JobHelpers, context: Dict[str, Any]) -> bool:
        """Delete the staged artifact. Never raises."""
        try:
            await self.storage.delete(key)
        except Exception as e:
            helpers.logger.error(
                f"Cleanup failed for {key}: {e}",
                extra={**context, "stage": TaskStage.CLEANING_UP.value},
            )
            return False
        return True
