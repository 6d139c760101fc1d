"""
Contactflow - Error Handling

Exception taxonomy for the import pipeline and the FastAPI handlers that turn
it into the public error shape:

    {"error": "<message>"}                      # 4xx/5xx
    {"error": "<message>", "issues": [...]}     # schema violations

Ingress errors (validation, missing parameters, unreadable bodies) are 400s.
Staging errors (upload, enqueue) are 500s. Worker errors never reach HTTP;
they are raised out of the task so the queue processor schedules a retry.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .middleware import get_request_id

logger = logging.getLogger(__name__)


# =============================================================================
# Error Response Models
# =============================================================================


class Issue(BaseModel):
    """A single schema violation."""

    path: str
    message: str


class ErrorResponse(BaseModel):
    """Standardized error response format."""

    error: str
    issues: list[Issue] | None = None


def issues_from_pydantic(error: PydanticValidationError | RequestValidationError) -> list[Issue]:
    """Flatten every pydantic error into a {path, message} issue."""
    issues = []
    for item in error.errors():
        loc = [str(part) for part in item.get("loc", ()) if part != "body"]
        issues.append(Issue(path=".".join(loc), message=item.get("msg", "Invalid value")))
    return issues


# =============================================================================
# Exception Taxonomy
# =============================================================================


class ImportPipelineError(Exception):
    """Base exception for import pipeline errors."""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        issues: list[Issue] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.issues = issues

    def to_response(self) -> ErrorResponse:
        return ErrorResponse(error=self.message, issues=self.issues)


class ConfigurationError(ImportPipelineError):
    """Settings are missing or malformed."""


# -- Ingress ------------------------------------------------------------------


class RequestValidationFailed(ImportPipelineError):
    """Request body violates the import schema."""

    status_code = 400

    def __init__(self, message: str = "Invalid JSON format", issues: list[Issue] | None = None):
        super().__init__(message, issues=issues or [])


class MissingParameter(ImportPipelineError):
    """A required form field, header or body is absent."""

    status_code = 400


class PayloadReadError(ImportPipelineError):
    """The request body could not be drained (client disconnect, broken stream)."""

    status_code = 400


# -- Staging ------------------------------------------------------------------


class UploadFailed(ImportPipelineError):
    """Staging the artifact in storage failed."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class EnqueueFailed(ImportPipelineError):
    """The artifact was staged but the processing task could not be queued."""

    def __init__(self, message: str, job_id: str | None = None):
        super().__init__(message)
        self.job_id = job_id


# -- Worker -------------------------------------------------------------------


class TaskFailed(ImportPipelineError):
    """Fatal error for the current task attempt."""

    stage = "failed"
    # When set, the queue dead-letters the job without retrying
    permanent = False


class DownloadFailed(TaskFailed):
    stage = "downloading"


class ParseFailed(TaskFailed):
    stage = "parsing"
    permanent = True


class BatchValidationFailed(ParseFailed):
    """At least one record in the batch failed the contact schema."""

    stage = "validating"

    def __init__(self, message: str, issues: list[Issue] | None = None):
        super().__init__(message, issues=issues or [])


class PersistFailed(TaskFailed):
    stage = "persisting"


class CleanupFailed(TaskFailed):
    """Deleting the staged artifact failed. Logged only, never fails a task."""

    stage = "cleaning_up"


# =============================================================================
# Exception Handlers
# =============================================================================


def create_error_response(
    status_code: int,
    error: str,
    issues: list[Issue] | None = None,
) -> JSONResponse:
    """Create a standardized error response."""
    response = ErrorResponse(error=error, issues=issues)
    return JSONResponse(
        status_code=status_code,
        content=response.model_dump(exclude_none=True),
    )


async def pipeline_exception_handler(request: Request, exc: ImportPipelineError) -> JSONResponse:
    """Map taxonomy errors to their status code and public shape."""
    log_extra: dict[str, Any] = {
        "request_id": get_request_id(),
        "path": request.url.path,
        "status_code": exc.status_code,
        "error_type": type(exc).__name__,
    }
    if exc.status_code >= 500:
        logger.error(f"Import request failed: {exc.message}", extra=log_extra, exc_info=exc)
    else:
        logger.warning(f"Import request rejected: {exc.message}", extra=log_extra)

    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_response().model_dump(exclude_none=True),
    )


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Handle FastAPI/Starlette HTTP exceptions."""
    if exc.status_code == status.HTTP_404_NOT_FOUND:
        return create_error_response(exc.status_code, "Not found")

    if isinstance(exc.detail, dict):
        message = exc.detail.get("message", str(exc.detail))
    else:
        message = str(exc.detail)

    return create_error_response(exc.status_code, message)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Handle FastAPI parameter validation errors with field-level issues."""
    issues = issues_from_pydantic(exc)

    logger.warning(
        f"Validation error on {request.url.path}: {len(issues)} errors",
        extra={"request_id": get_request_id(), "path": request.url.path},
    )

    return create_error_response(status.HTTP_400_BAD_REQUEST, "Invalid request", issues)


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """
    Catch-all handler for unhandled exceptions.

    Logs the full traceback but returns a generic error to the client.
    """
    logger.error(
        f"Unhandled exception: {type(exc).__name__}: {exc}",
        extra={
            "request_id": get_request_id(),
            "path": request.url.path,
            "method": request.method,
            "error_type": type(exc).__name__,
        },
        exc_info=True,
    )

    return create_error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "Internal server error")


def setup_error_handlers(app: FastAPI) -> None:
    """Register all error handlers with the FastAPI app."""
    app.add_exception_handler(ImportPipelineError, pipeline_exception_handler)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    logger.info("Error handlers registered")
