"""
Tests for the storage and contact repositories.

SupabaseArtifactStore runs against a mocked supabase AsyncClient;
PostgresContactRepository against tests.helpers.StubPool.
"""

from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from contactflow.core.errors import CleanupFailed, DownloadFailed, UploadFailed
from contactflow.core.models import ContactRow
from contactflow.repositories import PostgresContactRepository, SupabaseArtifactStore
from tests.helpers import StubPool

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _mock_client() -> tuple[MagicMock, MagicMock]:
    bucket = MagicMock()
    bucket.upload = AsyncMock()
    bucket.download = AsyncMock(return_value=b"[]")
    bucket.remove = AsyncMock()
    bucket.list = AsyncMock(return_value=[])
    client = MagicMock()
    client.storage.from_.return_value = bucket
    return client, bucket


class TestSupabaseArtifactStore:
    @pytest.mark.asyncio
    async def test_upload_passes_file_options(self) -> None:
        client, bucket = _mock_client()
        store = SupabaseArtifactStore(client, "imports", cache_control="60")

        await store.upload(
            "import-1.json", b"[]", "application/json", {"jobId": "1", "size": 2}
        )

        client.storage.from_.assert_called_with("imports")
        kwargs = bucket.upload.await_args.kwargs
        assert kwargs["path"] == "import-1.json"
        assert kwargs["file"] == b"[]"
        assert kwargs["file_options"] == {
            "content-type": "application/json",
            "cache-control": "60",
            "upsert": "true",
            "metadata": {"jobId": "1", "size": "2"},
        }

    @pytest.mark.asyncio
    async def test_upload_error_wrapped(self) -> None:
        client, bucket = _mock_client()
        bucket.upload.side_effect = RuntimeError("bucket not found")

        with pytest.raises(UploadFailed) as exc_info:
            await SupabaseArtifactStore(client, "imports").upload("k", b"x", "text/plain")

        assert exc_info.value.key == "k"
        assert "bucket not found" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_download_and_delete(self) -> None:
        client, bucket = _mock_client()
        store = SupabaseArtifactStore(client, "imports")

        assert await store.download("import-1.json") == b"[]"
        await store.delete("import-1.json")

        bucket.remove.assert_awaited_once_with(["import-1.json"])

    @pytest.mark.asyncio
    async def test_download_and_delete_errors_wrapped(self) -> None:
        client, bucket = _mock_client()
        bucket.download.side_effect = RuntimeError("timeout")
        bucket.remove.side_effect = RuntimeError("permission denied")
        store = SupabaseArtifactStore(client, "imports")

        with pytest.raises(DownloadFailed):
            await store.download("import-1.json")
        with pytest.raises(CleanupFailed):
            await store.delete("import-1.json")

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        client, bucket = _mock_client()
        store = SupabaseArtifactStore(client, "imports")

        assert await store.ping() is True
        bucket.list.side_effect = RuntimeError("unreachable")
        assert await store.ping() is False


class TestPostgresContactRepository:
    @pytest.mark.asyncio
    async def test_create_many_single_statement(self) -> None:
        pool = StubPool(rows=[None, None])
        rows = [
            ContactRow(name="Alice", email="alice@example.com", source="acme", imported_at=NOW),
            ContactRow(name="Bob", email="bob@example.com", source="acme", imported_at=NOW),
        ]

        inserted = await PostgresContactRepository(pool).create_many(rows, "job-1")

        assert inserted == 2
        assert len(pool.cursor.executed) == 1
        query, params = pool.cursor.executed[0]
        assert "unnest" in query
        assert params["job_id"] == "job-1"
        assert params["emails"] == ["alice@example.com", "bob@example.com"]
        assert params["imported_at"] == [NOW, NOW]

    @pytest.mark.asyncio
    async def test_create_many_empty_skips_database(self) -> None:
        pool = StubPool()

        assert await PostgresContactRepository(pool).create_many([], "job-1") == 0
        assert pool.connections == 0

    @pytest.mark.asyncio
    async def test_count_for_job(self) -> None:
        pool = StubPool(rows=[(3,)])

        assert await PostgresContactRepository(pool).count_for_job("job-1") == 3
        assert pool.cursor.executed[0][1] == {"job_id": "job-1"}
