"""
tests/helpers.py

In-memory fakes for every collaborator, injected through constructors so
nothing needs Postgres or Supabase:

  FakeArtifactStore       - object storage (upload/download/delete/ping)
  FakeContactRepository   - relational batch insert
  FakeJobQueue            - queue backend for QueueProcessor
  FakeTusServer           - tus 1.0.0 endpoint behind httpx.MockTransport
  StubPool                - psycopg pool stand-in recording executed SQL
"""

from __future__ import annotations

import base64
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import httpx

from contactflow.core.errors import CleanupFailed, DownloadFailed, UploadFailed
from contactflow.core.models import ContactRow, QueueJob, QueueJobStatus

MiB = 1024 * 1024
TUS_ENDPOINT = "http://localhost:54321/storage/v1/upload/resumable"


# =============================================================================
# Storage
# =============================================================================


class FakeArtifactStore:
    """In-memory ArtifactStore."""

    def __init__(self, bucket: str = "imports") -> None:
        self.bucket = bucket
        self.objects: Dict[str, bytes] = {}
        self.content_types: Dict[str, str] = {}
        self.metadata: Dict[str, Dict[str, Any]] = {}
        self.deleted: List[str] = []
        self.fail_upload = False
        self.fail_delete = False
        self.reachable = True

    async def upload(
        self,
        key: str,
        content: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        if self.fail_upload:
            raise UploadFailed("Storage upload failed: bucket unavailable", key=key)
        self.objects[key] = content
        self.content_types[key] = content_type
        self.metadata[key] = dict(metadata or {})

    async def download(self, key: str) -> bytes:
        if key not in self.objects:
            raise DownloadFailed(f"Failed to download {key}: object not found")
        return self.objects[key]

    async def delete(self, key: str) -> None:
        if self.fail_delete:
            raise CleanupFailed(f"Failed to delete {key}: permission denied")
        self.objects.pop(key, None)
        self.deleted.append(key)

    async def ping(self) -> bool:
        return self.reachable


# =============================================================================
# Contacts
# =============================================================================


class FakeContactRepository:
    """In-memory ContactRepository."""

    def __init__(self) -> None:
        self.rows: List[ContactRow] = []
        self.job_ids: List[str] = []
        self.insert_calls = 0
        self.fail_insert = False

    async def create_many(self, rows: Sequence[ContactRow], job_id: str) -> int:
        self.insert_calls += 1
        if self.fail_insert:
            raise RuntimeError("connection terminated")
        self.rows.extend(rows)
        self.job_ids.extend(job_id for _ in rows)
        return len(rows)

    async def count_for_job(self, job_id: str) -> int:
        return self.job_ids.count(job_id)


# =============================================================================
# Queue
# =============================================================================


class FakeJobQueue:
    """In-memory JobQueue recording every state transition."""

    def __init__(self) -> None:
        self.jobs: List[QueueJob] = []
        self.failures: List[Dict[str, Any]] = []
        self.released: List[int] = []
        self.fail_enqueue = False
        self._next_id = 0

    async def enqueue(self, task_name: str, payload: Dict[str, Any]) -> int:
        if self.fail_enqueue:
            raise ConnectionError("queue database unreachable")
        self._next_id += 1
        self.jobs.append(QueueJob(id=self._next_id, task_name=task_name, payload=payload))
        return self._next_id

    async def claim_batch(
        self, task_names: Sequence[str], batch_size: int, lock_timeout_seconds: float
    ) -> List[QueueJob]:
        claimed = [
            job
            for job in self.jobs
            if job.status == QueueJobStatus.PENDING and job.task_name in task_names
        ][:batch_size]
        for job in claimed:
            job.status = QueueJobStatus.IN_PROGRESS
        return claimed

    async def complete(self, job: QueueJob) -> None:
        job.status = QueueJobStatus.COMPLETED

    async def fail(self, job: QueueJob, error_message: str, retry_after: Optional[float]) -> None:
        job.attempts += 1
        job.status = QueueJobStatus.DEAD_LETTER if retry_after is None else QueueJobStatus.PENDING
        self.failures.append({"job_id": job.id, "error": error_message, "retry_after": retry_after})

    async def release(self, job: QueueJob) -> None:
        job.status = QueueJobStatus.PENDING
        self.released.append(job.id)

    def by_status(self, status: QueueJobStatus) -> List[QueueJob]:
        return [job for job in self.jobs if job.status == status]


# =============================================================================
# tus server
# =============================================================================


def decode_upload_metadata(header: str) -> Dict[str, str]:
    decoded = {}
    for pair in filter(None, header.split(",")):
        name, _, value = pair.strip().partition(" ")
        decoded[name] = base64.b64decode(value).decode("utf-8")
    return decoded


class FakeTusServer:
    """
    Minimal tus 1.0.0 server (creation + core) for httpx.MockTransport.

    Knobs:
      interrupt_at   - accept bytes up to this offset, then reset the connection
      stay_down      - after an interrupt, refuse every request until cleared
      patch_statuses - canned status codes for the next PATCH requests
      gone           - upload ids answering 404
      bad_offset     - Upload-Offset value sent instead of the real one
    """

    def __init__(self) -> None:
        self.uploads: Dict[str, Dict[str, Any]] = {}
        self.interrupt_at: Optional[int] = None
        self.stay_down = True
        self.down = False
        self.patch_statuses: List[int] = []
        self.gone: set[str] = set()
        self.bad_offset: Optional[str] = None
        self.bytes_received = 0
        self.requests: List[str] = []
        self._next_id = 0

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def content_of(self, upload_id: str) -> bytes:
        return bytes(self.uploads[upload_id]["data"])

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request.method)
        if self.down:
            raise httpx.ConnectError("connection refused", request=request)

        if request.method == "POST":
            return self._create(request)

        upload_id = request.url.path.rsplit("/", 1)[-1]
        upload = self.uploads.get(upload_id)
        if upload is None or upload_id in self.gone:
            return httpx.Response(404)

        if request.method == "HEAD":
            return httpx.Response(
                200,
                headers={
                    "Tus-Resumable": "1.0.0",
                    "Upload-Offset": self._offset_header(upload),
                    "Upload-Length": str(upload["length"]),
                },
            )
        if request.method == "PATCH":
            return self._patch(request, upload)
        return httpx.Response(405)

    def _offset_header(self, upload: Dict[str, Any]) -> str:
        if self.bad_offset is not None:
            return self.bad_offset
        return str(len(upload["data"]))

    def _create(self, request: httpx.Request) -> httpx.Response:
        self._next_id += 1
        upload_id = f"upload-{self._next_id}"
        self.uploads[upload_id] = {
            "length": int(request.headers["Upload-Length"]),
            "data": bytearray(),
            "metadata": decode_upload_metadata(request.headers.get("Upload-Metadata", "")),
            "headers": dict(request.headers),
        }
        return httpx.Response(
            201,
            headers={"Tus-Resumable": "1.0.0", "Location": f"/storage/v1/upload/resumable/{upload_id}"},
        )

    def _patch(self, request: httpx.Request, upload: Dict[str, Any]) -> httpx.Response:
        if self.patch_statuses:
            return httpx.Response(self.patch_statuses.pop(0))

        offset = int(request.headers["Upload-Offset"])
        if offset != len(upload["data"]):
            return httpx.Response(409)

        chunk = request.content
        if self.interrupt_at is not None and offset < self.interrupt_at < offset + len(chunk):
            accepted = chunk[: self.interrupt_at - offset]
            upload["data"].extend(accepted)
            self.bytes_received += len(accepted)
            self.interrupt_at = None
            self.down = self.stay_down
            raise httpx.ReadError("connection reset by peer", request=request)

        upload["data"].extend(chunk)
        self.bytes_received += len(chunk)
        return httpx.Response(
            204, headers={"Tus-Resumable": "1.0.0", "Upload-Offset": self._offset_header(upload)}
        )


class SleepRecorder:
    """Stands in for asyncio.sleep; records the requested delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# =============================================================================
# psycopg pool
# =============================================================================


class StubCursor:
    def __init__(self, rows: List[Any]) -> None:
        self.rows = rows
        self.executed: List[Any] = []
        self.rowcount = len(rows)

    async def execute(self, query: str, params: Any = None) -> None:
        self.executed.append((query, params))

    async def fetchone(self) -> Any:
        return self.rows[0] if self.rows else None

    async def fetchall(self) -> List[Any]:
        return self.rows

    async def __aenter__(self) -> "StubCursor":
        return self

    async def __aexit__(self, *args: Any) -> None:
        return None


class StubConnection:
    def __init__(self, cursor: StubCursor) -> None:
        self._cursor = cursor
        self.executed: List[Any] = []

    def cursor(self, row_factory: Any = None) -> StubCursor:
        return self._cursor

    async def execute(self, query: str, params: Any = None) -> None:
        self.executed.append((query, params))


class StubPool:
    """Hands out one connection whose cursor returns canned rows."""

    def __init__(self, rows: Optional[List[Any]] = None) -> None:
        self.cursor = StubCursor(rows or [])
        self.conn = StubConnection(self.cursor)
        self.connections = 0

    @asynccontextmanager
    async def connection(self):
        self.connections += 1
        yield self.conn
