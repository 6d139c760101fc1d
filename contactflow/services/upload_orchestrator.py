"""
Contactflow - Upload Orchestrator

Stages an import artifact in object storage, either with one direct write or
through the resumable uploader. Callers get back the staged key or an
UploadFailed; there is no partial direct write to clean up.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional

from ..core import metrics
from ..core.errors import ConfigurationError, UploadFailed
from ..core.logging import Timer, get_logger
from ..repositories.storage import ArtifactStore
from .resumable import ProgressCallback, TusUploader

logger = get_logger(__name__)

UploadType = Literal["direct", "resumable"]


@dataclass(frozen=True)
class StagedArtifact:
    key: str
    bucket: str
    size: int
    upload_type: UploadType
    resumed_from: int = 0


class UploadOrchestrator:
    """Chooses the direct or resumable path per upload."""

    def __init__(self, storage: ArtifactStore, resumable: Optional[TusUploader] = None) -> None:
        self.storage = storage
        self.resumable = resumable

    async def stage(
        self,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        use_resumable: bool = False,
        on_progress: Optional[ProgressCallback] = None,
    ) -> StagedArtifact:
        upload_type: UploadType = "resumable" if use_resumable else "direct"
        log_extra = {
            "artifact_key": key,
            "bucket": self.storage.bucket,
            "upload_type": upload_type,
            "bytes_total": len(content),
        }
        resumed_from = 0

        with Timer() as timer:
            try:
                if use_resumable:
                    if self.resumable is None:
                        raise ConfigurationError("Resumable uploads are not configured")
                    result = await self.resumable.upload(
                        bucket=self.storage.bucket,
                        key=key,
                        content=content,
                        content_type=content_type,
                        metadata=metadata,
                        on_progress=on_progress,
                    )
                    resumed_from = result.resumed_from
                else:
                    await self.storage.upload(key, content, content_type, metadata)
                    if on_progress is not None:
                        on_progress(len(content), len(content))
            except UploadFailed:
                metrics.record_upload(upload_type, "failure")
                raise

        metrics.record_upload(upload_type, "success")
        logger.info(
            f"Staged {key} ({upload_type})",
            extra={**log_extra, "duration_ms": round(timer.elapsed_ms, 2)},
        )
        return StagedArtifact(
            key=key,
            bucket=self.storage.bucket,
            size=len(content),
            upload_type=upload_type,
            resumed_from=resumed_from,
        )
