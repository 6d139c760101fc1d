"""
Contactflow - Artifact Storage

Thin wrapper over Supabase Storage for staged import artifacts. Every call
targets a single bucket; failures are re-raised as pipeline errors so the
callers never see storage client exceptions.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Protocol

from supabase import AsyncClient

from ..core.errors import CleanupFailed, DownloadFailed, UploadFailed
from ..core.logging import get_logger

logger = get_logger(__name__)


class ArtifactStore(Protocol):
    """Object storage operations the pipeline needs."""

    bucket: str

    async def upload(
        self,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    async def download(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...

    async def ping(self) -> bool: ...


class SupabaseArtifactStore:
    """ArtifactStore backed by a Supabase Storage bucket."""

    def __init__(self, client: AsyncClient, bucket: str, cache_control: str = "3600") -> None:
        self._client = client
        self.bucket = bucket
        self.cache_control = cache_control

    async def upload(
        self,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        file_options: Dict[str, Any] = {
            "content-type": content_type,
            "cache-control": self.cache_control,
            "upsert": "true",
        }
        if metadata:
            # storage3 only accepts string-valued metadata
            file_options["metadata"] = {k: _stringify(v) for k, v in metadata.items()}

        try:
            await self._client.storage.from_(self.bucket).upload(
                path=key,
                file=content,
                file_options=file_options,
            )
        except Exception as e:
            raise UploadFailed(f"Storage upload failed: {e}", key=key) from e

        logger.info(
            f"Uploaded artifact to storage: {self.bucket}/{key}",
            extra={"artifact_key": key, "bucket": self.bucket, "bytes_total": len(content)},
        )

    async def download(self, key: str) -> bytes:
        logger.info(
            f"Downloading artifact from storage: bucket={self.bucket}, path={key}",
            extra={"artifact_key": key, "bucket": self.bucket},
        )
        try:
            return await self._client.storage.from_(self.bucket).download(key)
        except Exception as e:
            raise DownloadFailed(f"Failed to download {key}: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            await self._client.storage.from_(self.bucket).remove([key])
        except Exception as e:
            raise CleanupFailed(f"Failed to delete {key}: {e}") from e

    async def ping(self) -> bool:
        """List one object to confirm the bucket is reachable."""
        try:
            await self._client.storage.from_(self.bucket).list(None, {"limit": 1})
        except Exception as e:
            logger.warning(f"Storage readiness check failed: {type(e).__name__}: {e}")
            return False
        return True


def _stringify(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)
