"""
tests/test_upload_pipeline.py

Staging and handoff: UploadOrchestrator, JobHandoff and ImportService.

Contract under test:
    - Direct path writes once; resumable path goes through the tus uploader
    - Exactly one task is queued per successful staging, none on failure
    - Enqueue failure surfaces as EnqueueFailed, never as a jobId
"""

from __future__ import annotations

import json
import re

import pytest

from contactflow.core import metrics
from contactflow.core.errors import ConfigurationError, EnqueueFailed, UploadFailed
from contactflow.core.models import ContactIn, ImportJobPayload
from contactflow.services.handoff import JobHandoff
from contactflow.services.import_service import ImportService, generate_job_id
from contactflow.services.normalizer import FileImport, JsonImport, StreamImport
from contactflow.services.upload_orchestrator import UploadOrchestrator


def alice() -> list[ContactIn]:
    return [ContactIn(name="Alice", email="alice@example.com")]


def fixed_job_id() -> str:
    return "1700000000000000-abc123def"


# =============================================================================
# Orchestrator
# =============================================================================


class TestUploadOrchestrator:
    @pytest.mark.asyncio
    async def test_direct_upload(self, storage) -> None:
        orchestrator = UploadOrchestrator(storage)

        staged = await orchestrator.stage(
            key="import-1.json",
            content=b"[]",
            content_type="application/json",
            metadata={"jobId": "1", "source": "acme"},
        )

        assert staged.upload_type == "direct"
        assert staged.key == "import-1.json"
        assert storage.objects["import-1.json"] == b"[]"
        assert storage.metadata["import-1.json"] == {"jobId": "1", "source": "acme"}
        assert {"type": "direct", "status": "success", "count": 1} in metrics.snapshot()["uploads"]

    @pytest.mark.asyncio
    async def test_direct_zero_length(self, storage) -> None:
        staged = await UploadOrchestrator(storage).stage("import-1.json", b"", "application/json")

        assert staged.size == 0
        assert storage.objects["import-1.json"] == b""

    @pytest.mark.asyncio
    async def test_direct_failure_propagates(self, storage) -> None:
        storage.fail_upload = True

        with pytest.raises(UploadFailed):
            await UploadOrchestrator(storage).stage("import-1.json", b"[]", "application/json")

        assert {"type": "direct", "status": "failure", "count": 1} in metrics.snapshot()["uploads"]

    @pytest.mark.asyncio
    async def test_resumable_path_uses_tus(self, storage, make_uploader, tus_server) -> None:
        orchestrator = UploadOrchestrator(storage, make_uploader(chunk_size=4))
        progress = []

        staged = await orchestrator.stage(
            key="import-1.json",
            content=b"0123456789",
            content_type="application/json",
            metadata={"jobId": "1", "source": "acme"},
            use_resumable=True,
            on_progress=lambda done, total: progress.append(done),
        )

        assert staged.upload_type == "resumable"
        assert storage.objects == {}
        assert tus_server.content_of("upload-1") == b"0123456789"
        assert tus_server.uploads["upload-1"]["metadata"]["bucketName"] == "imports"
        assert progress == [4, 8, 10]

    @pytest.mark.asyncio
    async def test_resumable_without_uploader_is_configuration_error(self, storage) -> None:
        with pytest.raises(ConfigurationError):
            await UploadOrchestrator(storage).stage("k", b"[]", "application/json", use_resumable=True)


# =============================================================================
# Handoff
# =============================================================================


class TestJobHandoff:
    @pytest.mark.asyncio
    async def test_enqueues_task_with_artifact_key(self, queue) -> None:
        payload = ImportJobPayload(job_id="1", source="acme", artifact_key="import-1-stream.json")

        queue_job_id = await JobHandoff(queue).enqueue(payload)

        assert queue_job_id == 1
        assert queue.jobs[0].task_name == "processImportJob"
        assert queue.jobs[0].payload == {
            "jobId": "1",
            "source": "acme",
            "artifactKey": "import-1-stream.json",
        }

    @pytest.mark.asyncio
    async def test_failure_is_enqueue_failed(self, queue) -> None:
        queue.fail_enqueue = True

        with pytest.raises(EnqueueFailed) as exc_info:
            await JobHandoff(queue).enqueue(ImportJobPayload(job_id="1", source="acme"))

        assert exc_info.value.job_id == "1"
        assert exc_info.value.status_code == 500


# =============================================================================
# Import service
# =============================================================================


class TestGenerateJobId:
    def test_format(self) -> None:
        assert re.fullmatch(r"\d{16,}-[0-9a-f]{9}", generate_job_id())

    def test_unique_under_rapid_calls(self) -> None:
        assert len({generate_job_id() for _ in range(1000)}) == 1000


class TestImportService:
    def make_service(self, storage, queue, uploader=None) -> ImportService:
        return ImportService(
            UploadOrchestrator(storage, uploader),
            JobHandoff(queue),
            job_id_factory=fixed_job_id,
        )

    @pytest.mark.asyncio
    async def test_json_submission_stages_then_enqueues_once(self, storage, queue) -> None:
        service = self.make_service(storage, queue)

        response = await service.submit(JsonImport(source="acme", contacts=alice()))

        key = "import-1700000000000000-abc123def.json"
        assert response.job_id == "1700000000000000-abc123def"
        assert json.loads(storage.objects[key]) == [{"name": "Alice", "email": "alice@example.com"}]
        assert storage.metadata[key] == {"jobId": response.job_id, "source": "acme"}
        assert len(queue.jobs) == 1
        assert queue.jobs[0].payload["artifactKey"] == key

    @pytest.mark.asyncio
    async def test_file_submission_key_and_metadata(self, storage, queue) -> None:
        service = self.make_service(storage, queue)

        await service.submit(
            FileImport(source="acme", content=b"[]", filename="crm.json", content_type="application/json")
        )

        key = "import-1700000000000000-abc123def-crm.json"
        assert storage.metadata[key]["originalName"] == "crm.json"
        assert storage.metadata[key]["uploadType"] == "file"
        assert storage.metadata[key]["jobId"] == "1700000000000000-abc123def"
        assert queue.jobs[0].payload["artifactKey"] == key

    @pytest.mark.asyncio
    async def test_stream_submission_key(self, storage, queue) -> None:
        service = self.make_service(storage, queue)

        await service.submit(StreamImport(source="crm", content=b"[]"))

        assert queue.jobs[0].payload["artifactKey"] == "import-1700000000000000-abc123def-stream.json"

    @pytest.mark.asyncio
    async def test_staging_failure_enqueues_nothing(self, storage, queue) -> None:
        storage.fail_upload = True
        service = self.make_service(storage, queue)

        with pytest.raises(UploadFailed):
            await service.submit(JsonImport(source="acme", contacts=alice()))

        assert queue.jobs == []

    @pytest.mark.asyncio
    async def test_resumable_failure_enqueues_nothing(self, storage, queue, make_uploader, tus_server) -> None:
        tus_server.patch_statuses = [400]
        service = self.make_service(storage, queue, make_uploader())

        with pytest.raises(UploadFailed):
            await service.submit(JsonImport(source="acme", contacts=alice(), use_resumable=True))

        assert queue.jobs == []

    @pytest.mark.asyncio
    async def test_enqueue_failure_is_not_reported_as_success(self, storage, queue) -> None:
        queue.fail_enqueue = True
        service = self.make_service(storage, queue)

        with pytest.raises(EnqueueFailed):
            await service.submit(JsonImport(source="acme", contacts=alice()))

        assert "import-1700000000000000-abc123def.json" in storage.objects
