"""
Contactflow - Resumable Uploads

tus 1.0.0 client for the Supabase Storage resumable endpoint.

Per upload attempt:

    INIT -> UPLOADING -> COMPLETE
    INIT -> RESUMING -> UPLOADING -> COMPLETE
    UPLOADING | RESUMING -> FAILED

A session is keyed by a fingerprint of (endpoint, bucket, object key, content).
Sessions live in a SessionStore so that a failed attempt, in this process or a
later one, resumes from the server's acknowledged offset instead of byte zero.
Sessions are dropped on COMPLETE and kept on FAILED.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol, Sequence
from urllib.parse import urljoin

import httpx

from ..core.errors import UploadFailed
from ..core.logging import get_logger

logger = get_logger(__name__)

TUS_VERSION = "1.0.0"
OFFSET_CONTENT_TYPE = "application/offset+octet-stream"

# Worth retrying besides 5xx: offset conflict, locked upload, rate limited
RETRYABLE_STATUS = frozenset({409, 423, 429})
# Upload URL no longer known to the server
SESSION_GONE_STATUS = frozenset({404, 410})

ProgressCallback = Callable[[int, int], None]
SleepFn = Callable[[float], Awaitable[None]]


class UploadState(str, Enum):
    INIT = "init"
    RESUMING = "resuming"
    UPLOADING = "uploading"
    COMPLETE = "complete"
    FAILED = "failed"


def compute_fingerprint(endpoint: str, bucket: str, key: str, content: bytes) -> str:
    """Two attempts are the same upload iff they target the same object with identical bytes."""
    content_digest = hashlib.sha256(content).hexdigest()
    parts = ["tus-br", endpoint, bucket, key, str(len(content)), content_digest]
    return hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()


def _is_retryable(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS


def _parse_offset(value: str, key: str) -> int:
    try:
        offset = int(value)
    except ValueError as e:
        raise UploadFailed(f"tus server sent a malformed Upload-Offset: {value!r}", key=key) from e
    if offset < 0:
        raise UploadFailed(f"tus server sent a negative Upload-Offset: {offset}", key=key)
    return offset


# =============================================================================
# Sessions
# =============================================================================


@dataclass
class UploadSession:
    """Bookkeeping for one resumable upload, keyed by fingerprint."""

    fingerprint: str
    upload_url: str
    bucket: str
    object_name: str
    bytes_total: int
    bytes_uploaded: int = 0
    created_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "UploadSession":
        return cls(**{k: data[k] for k in cls.__dataclass_fields__ if k in data})


class SessionStore(Protocol):
    async def get(self, fingerprint: str) -> Optional[UploadSession]: ...

    async def save(self, session: UploadSession) -> None: ...

    async def remove(self, fingerprint: str) -> None: ...


class MemorySessionStore:
    """Process-local sessions. Resumption survives failed attempts, not restarts."""

    def __init__(self) -> None:
        self._sessions: Dict[str, UploadSession] = {}

    async def get(self, fingerprint: str) -> Optional[UploadSession]:
        return self._sessions.get(fingerprint)

    async def save(self, session: UploadSession) -> None:
        self._sessions[session.fingerprint] = session

    async def remove(self, fingerprint: str) -> None:
        self._sessions.pop(fingerprint, None)


class FileSessionStore:
    """One JSON file per fingerprint under a directory; survives restarts."""

    def __init__(self, directory: str | os.PathLike[str]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path(self, fingerprint: str) -> Path:
        return self.directory / f"{fingerprint}.json"

    async def get(self, fingerprint: str) -> Optional[UploadSession]:
        path = self._path(fingerprint)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Discarding unreadable upload session {path.name}: {e}")
            path.unlink(missing_ok=True)
            return None
        return UploadSession.from_dict(data)

    async def save(self, session: UploadSession) -> None:
        path = self._path(session.fingerprint)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".session-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(session.to_dict(), handle)
            os.replace(tmp_name, path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    async def remove(self, fingerprint: str) -> None:
        self._path(fingerprint).unlink(missing_ok=True)


def build_session_store(session_dir: Optional[str]) -> SessionStore:
    if session_dir:
        return FileSessionStore(session_dir)
    return MemorySessionStore()


# =============================================================================
# Uploader
# =============================================================================


@dataclass
class ResumableUploadResult:
    key: str
    upload_url: str
    bytes_total: int
    resumed_from: int = 0

    @property
    def resumed(self) -> bool:
        return self.resumed_from > 0


class _SessionGone(Exception):
    """The server no longer knows the stored upload URL."""


class TusUploader:
    """
    Chunked, resumable uploads to one tus endpoint.

    Chunks are sent strictly in order. A chunk that fails transiently is
    retried after each delay in `retry_delays` in turn, re-reading the
    server offset with a single HEAD before every retry (a HEAD that fails
    transiently uses up that retry slot); when the delays run out the
    attempt fails with UploadFailed and the session stays stored.
    """

    def __init__(
        self,
        endpoint: str,
        service_key: str,
        http_client: httpx.AsyncClient,
        session_store: SessionStore,
        chunk_size: int = 6 * 1024 * 1024,
        retry_delays: Sequence[float] = (0, 3, 5, 10, 20),
        cache_control: str = "3600",
        sleep: SleepFn = asyncio.sleep,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.endpoint = endpoint
        self.chunk_size = chunk_size
        self.retry_delays = list(retry_delays)
        self.cache_control = cache_control
        self._service_key = service_key
        self._client = http_client
        self._store = session_store
        self._sleep = sleep

    def _headers(self, **extra: str) -> Dict[str, str]:
        return {
            "Tus-Resumable": TUS_VERSION,
            "authorization": f"Bearer {self._service_key}",
            "x-upsert": "true",
            **extra,
        }

    async def upload(
        self,
        bucket: str,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> ResumableUploadResult:
        """Stage `content` under bucket/key, resuming a prior attempt when one exists."""
        total = len(content)
        fingerprint = compute_fingerprint(self.endpoint, bucket, key, content)
        log_extra = {"artifact_key": key, "bucket": bucket, "fingerprint": fingerprint[:16]}
        state = UploadState.INIT

        session = await self._store.get(fingerprint)
        offset = 0
        resumed_from = 0

        try:
            if session is not None:
                state = UploadState.RESUMING
                try:
                    offset = await self._server_offset(session, key)
                    resumed_from = offset
                    logger.info(
                        f"Resuming upload of {key} at {offset}/{total} bytes",
                        extra={**log_extra, "bytes_uploaded": offset, "bytes_total": total},
                    )
                except _SessionGone:
                    logger.info(f"Stored upload session for {key} expired, starting over", extra=log_extra)
                    await self._store.remove(fingerprint)
                    session = None
                    offset = 0

            if session is None:
                session = await self._create(bucket, key, total, content_type, metadata or {}, fingerprint)
                await self._store.save(session)

            state = UploadState.UPLOADING
            if offset >= total:
                self._report(on_progress, total, total)

            while offset < total:
                offset = await self._send_chunk(session, key, content, offset)
                session.bytes_uploaded = offset
                await self._store.save(session)
                self._report(on_progress, offset, total)
                logger.debug(
                    f"Uploaded {offset}/{total} bytes of {key}",
                    extra={**log_extra, "bytes_uploaded": offset, "bytes_total": total},
                )

        except _SessionGone as e:
            logger.error(f"Upload of {key} failed in state {state.value}: session expired", extra=log_extra)
            await self._store.remove(fingerprint)
            raise UploadFailed(f"Upload session expired for {key}", key=key) from e
        except UploadFailed:
            logger.error(
                f"Upload of {key} failed in state {state.value}; session kept for resume",
                extra={**log_extra, "bytes_uploaded": offset, "bytes_total": total},
            )
            raise

        await self._store.remove(fingerprint)
        logger.info(
            f"Resumable upload complete: {bucket}/{key}",
            extra={**log_extra, "bytes_total": total, "status": UploadState.COMPLETE.value},
        )
        return ResumableUploadResult(
            key=key,
            upload_url=session.upload_url,
            bytes_total=total,
            resumed_from=resumed_from,
        )

    @staticmethod
    def _report(on_progress: Optional[ProgressCallback], uploaded: int, total: int) -> None:
        if on_progress is not None:
            on_progress(uploaded, total)

    async def _request(self, method: str, url: str, key: str, headers: Dict[str, str]) -> httpx.Response:
        """Send a bodyless tus request, retrying transient failures on the delay schedule."""
        last_error = ""
        for delay in [None, *self.retry_delays]:
            if delay is not None:
                await self._sleep(delay)
            try:
                response = await self._client.request(method, url, headers=headers)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(f"tus {method} failed: {last_error}", extra={"artifact_key": key})
                continue
            if not _is_retryable(response.status_code):
                return response
            last_error = f"HTTP {response.status_code}"
            logger.warning(f"tus {method} returned {response.status_code}", extra={"artifact_key": key})

        raise UploadFailed(
            f"tus {method} failed after {len(self.retry_delays)} retries: {last_error}", key=key
        )

    async def _create(
        self,
        bucket: str,
        key: str,
        total: int,
        content_type: str,
        metadata: Dict[str, Any],
        fingerprint: str,
    ) -> UploadSession:
        upload_metadata = {
            "bucketName": bucket,
            "objectName": key,
            "contentType": content_type,
            "cacheControl": self.cache_control,
            "metadata": json.dumps(metadata, default=str),
        }
        encoded = ",".join(
            f"{name} {base64.b64encode(value.encode('utf-8')).decode('ascii')}"
            for name, value in upload_metadata.items()
        )
        headers = self._headers(**{"Upload-Length": str(total), "Upload-Metadata": encoded})

        response = await self._request("POST", self.endpoint, key, headers)
        location = response.headers.get("Location")
        if response.status_code != 201 or not location:
            raise UploadFailed(
                f"tus create rejected with HTTP {response.status_code}: {response.text[:200]}",
                key=key,
            )

        logger.info(f"Created resumable upload for {key}", extra={"artifact_key": key, "bytes_total": total})
        return UploadSession(
            fingerprint=fingerprint,
            upload_url=urljoin(self.endpoint, location),
            bucket=bucket,
            object_name=key,
            bytes_total=total,
        )

    async def _server_offset(self, session: UploadSession, key: str) -> int:
        response = await self._request("HEAD", session.upload_url, key, self._headers())
        return self._read_offset(response, session, key)

    async def _resync_offset(self, session: UploadSession, key: str) -> Optional[int]:
        """Single HEAD inside a chunk retry slot. None when the server is transiently unavailable."""
        try:
            response = await self._client.head(session.upload_url, headers=self._headers())
        except httpx.TransportError as e:
            logger.warning(f"tus HEAD failed: {type(e).__name__}: {e}", extra={"artifact_key": key})
            return None
        if _is_retryable(response.status_code):
            logger.warning(f"tus HEAD returned {response.status_code}", extra={"artifact_key": key})
            return None
        return self._read_offset(response, session, key)

    @staticmethod
    def _read_offset(response: httpx.Response, session: UploadSession, key: str) -> int:
        if response.status_code in SESSION_GONE_STATUS:
            raise _SessionGone(session.upload_url)
        offset = response.headers.get("Upload-Offset")
        if response.status_code not in (200, 204) or offset is None:
            raise UploadFailed(f"tus HEAD returned HTTP {response.status_code} without an offset", key=key)
        return _parse_offset(offset, key)

    async def _send_chunk(self, session: UploadSession, key: str, content: bytes, offset: int) -> int:
        """PATCH one chunk starting at `offset`. Returns the server's new offset."""
        last_error = ""
        for delay in [None, *self.retry_delays]:
            if delay is not None:
                await self._sleep(delay)
                synced = await self._resync_offset(session, key)
                if synced is None:
                    last_error = "offset re-sync failed"
                    continue
                offset = synced
                if offset >= session.bytes_total:
                    return offset

            chunk = content[offset : offset + self.chunk_size]
            headers = self._headers(
                **{"Upload-Offset": str(offset), "Content-Type": OFFSET_CONTENT_TYPE}
            )
            try:
                response = await self._client.patch(session.upload_url, content=chunk, headers=headers)
            except httpx.TransportError as e:
                last_error = f"{type(e).__name__}: {e}"
                logger.warning(
                    f"Chunk at offset {offset} failed: {last_error}",
                    extra={"artifact_key": key, "bytes_uploaded": offset},
                )
                continue

            if response.status_code in (200, 204):
                new_offset = response.headers.get("Upload-Offset")
                if new_offset is None:
                    return offset + len(chunk)
                return _parse_offset(new_offset, key)
            if response.status_code in SESSION_GONE_STATUS:
                raise _SessionGone(session.upload_url)
            if not _is_retryable(response.status_code):
                raise UploadFailed(
                    f"Chunk rejected with HTTP {response.status_code}: {response.text[:200]}", key=key
                )
            last_error = f"HTTP {response.status_code}"
            logger.warning(
                f"Chunk at offset {offset} returned {response.status_code}",
                extra={"artifact_key": key, "bytes_uploaded": offset},
            )

        raise UploadFailed(
            f"Chunk upload failed after {len(self.retry_delays)} retries: {last_error}", key=key
        )
