"""Job handoff: one queued task per successfully staged artifact."""

from __future__ import annotations

from ..core.errors import EnqueueFailed
from ..core.logging import get_logger
from ..core.models import IMPORT_TASK_NAME, ImportJobPayload
from ..core.queue import JobQueue

logger = get_logger(__name__)


class JobHandoff:
    def __init__(self, queue: JobQueue, task_name: str = IMPORT_TASK_NAME) -> None:
        self.queue = queue
        self.task_name = task_name

    async def enqueue(self, payload: ImportJobPayload) -> int:
        """
        Enqueue the processing task. Called only after staging succeeded.

        Never retried here; a failure raises EnqueueFailed so the caller is
        not told the import was accepted.
        """
        try:
            queue_job_id = await self.queue.enqueue(self.task_name, payload.to_queue_payload())
        except Exception as e:
            logger.error(
                f"Failed to enqueue {self.task_name}: {e}",
                extra={"job_id": payload.job_id, "source": payload.source, "artifact_key": payload.artifact_key},
            )
            raise EnqueueFailed(f"Failed to queue import job: {e}", job_id=payload.job_id) from e

        logger.info(
            f"Queued {self.task_name}",
            extra={
                "job_id": payload.job_id,
                "source": payload.source,
                "artifact_key": payload.artifact_key,
                "queue_job_id": queue_job_id,
            },
        )
        return queue_job_id
