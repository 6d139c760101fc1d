"""
tests/conftest.py

Pytest configuration and shared fixtures for the Contactflow test suite.
Fakes live in tests/helpers.py.
"""

from __future__ import annotations

import logging
import os
from typing import Sequence

import httpx
import pytest
import pytest_asyncio

from contactflow.config import reset_settings
from contactflow.core import metrics
from contactflow.core.queue import JobHelpers
from contactflow.services.resumable import MemorySessionStore, TusUploader

# Re-export helpers for convenient imports
from tests.helpers import (
    TUS_ENDPOINT,
    FakeArtifactStore,
    FakeContactRepository,
    FakeJobQueue,
    FakeTusServer,
    SleepRecorder,
)


def pytest_configure(config: pytest.Config) -> None:
    """Pin a dev environment before any settings are loaded."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as requiring external services (Postgres, Supabase)",
    )
    os.environ.setdefault("ENVIRONMENT", "dev")
    os.environ.setdefault("SUPABASE_URL", "http://localhost:54321")
    os.environ.setdefault("SUPABASE_SERVICE_ROLE_KEY", "test-service-role-key")


@pytest.fixture(autouse=True)
def _isolate_state():
    """Fresh settings cache and metric counters per test."""
    reset_settings()
    metrics.reset_for_testing()
    yield
    reset_settings()


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def storage() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture
def contacts() -> FakeContactRepository:
    return FakeContactRepository()


@pytest.fixture
def queue() -> FakeJobQueue:
    return FakeJobQueue()


@pytest.fixture
def tus_server() -> FakeTusServer:
    return FakeTusServer()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def session_store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest_asyncio.fixture
async def tus_client(tus_server: FakeTusServer):
    async with httpx.AsyncClient(transport=tus_server.transport()) as client:
        yield client


@pytest.fixture
def make_uploader(tus_client: httpx.AsyncClient, session_store: MemorySessionStore, sleeper: SleepRecorder):
    def factory(chunk_size: int = 4, retry_delays: Sequence[float] = (0, 3, 5)) -> TusUploader:
        return TusUploader(
            endpoint=TUS_ENDPOINT,
            service_key="test-service-role-key",
            http_client=tus_client,
            session_store=session_store,
            chunk_size=chunk_size,
            retry_delays=retry_delays,
            sleep=sleeper,
        )

    return factory


@pytest.fixture
def helpers() -> JobHelpers:
    return JobHelpers(
        logger=logging.getLogger("contactflow.tasks.processImportJob"),
        queue_job_id=1,
        attempt=1,
        max_attempts=5,
    )
