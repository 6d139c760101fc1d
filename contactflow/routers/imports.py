"""
POST /import

One endpoint for three body shapes, routed on Content-Type:
    application/json      {"source", "data": [...], "useResumable"?}
    multipart/form-data   file, source, useResumable?
    anything else         raw body with X-Source and X-Use-Resumable? headers

Returns {"jobId"} once the artifact is staged and the task is queued.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from ..core.errors import ErrorResponse, ImportPipelineError
from ..core.logging import get_logger
from ..core.models import ImportResponse
from ..services.handoff import JobHandoff
from ..services.import_service import ImportService
from ..services.normalizer import normalize_request
from ..services.upload_orchestrator import UploadOrchestrator

logger = get_logger(__name__)

router = APIRouter(tags=["Import"])


def get_import_service(request: Request) -> ImportService:
    """Build the import service from the collaborators created at startup."""
    state = request.app.state
    storage = getattr(state, "storage", None)
    queue = getattr(state, "queue", None)
    if storage is None or queue is None:
        raise ImportPipelineError("Import service unavailable", status_code=503)

    orchestrator = UploadOrchestrator(storage, getattr(state, "uploader", None))
    return ImportService(orchestrator, JobHandoff(queue))


@router.post(
    "/import",
    response_model=ImportResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid or incomplete request"},
        500: {"model": ErrorResponse, "description": "Staging or enqueue failed"},
    },
    summary="Submit contacts for import",
)
async def import_contacts(
    request: Request,
    service: ImportService = Depends(get_import_service),
) -> ImportResponse:
    item = await normalize_request(request)
    response = await service.submit(item)

    logger.info(f"Import job created: {response.job_id}", extra={"job_id": response.job_id})
    return response
