"""
Contactflow - Input Normalizer

Reads the three accepted POST /import body shapes into one tagged union:

    JsonImport    application/json       validated ImportRequest
    FileImport    multipart/form-data    `file` part + `source` field
    StreamImport  anything else          raw body + X-Source header

Every variant is fully drained into memory here, so the upload orchestrator
only ever sees bytes. Body read failures surface as PayloadReadError, kept
apart from the 400s raised for missing or invalid fields.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import PurePath
from typing import Annotated, Any, Dict, List, Optional, Union, assert_never

from fastapi import Request
from pydantic import StringConstraints, TypeAdapter, ValidationError
from starlette.datastructures import UploadFile
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.formparsers import MultiPartException
from starlette.requests import ClientDisconnect

from ..config import get_settings
from ..core.errors import (
    Issue,
    MissingParameter,
    PayloadReadError,
    RequestValidationFailed,
    issues_from_pydantic,
)
from ..core.logging import get_logger
from ..core.models import ContactIn, ImportRequest
from .content_router import detect_content_type

logger = get_logger(__name__)

JSON_CONTENT_TYPE = "application/json"
DEFAULT_FILE_CONTENT_TYPE = "application/octet-stream"
SOURCE_HEADER = "X-Source"
RESUMABLE_HEADER = "X-Use-Resumable"

SourceLabel = TypeAdapter(Annotated[str, StringConstraints(min_length=1, max_length=100)])


# =============================================================================
# Normalized inputs
# =============================================================================


@dataclass(frozen=True)
class JsonImport:
    source: str
    contacts: List[ContactIn]
    use_resumable: bool = False


@dataclass(frozen=True)
class FileImport:
    source: str
    content: bytes
    filename: str
    content_type: str = DEFAULT_FILE_CONTENT_TYPE
    use_resumable: bool = False


@dataclass(frozen=True)
class StreamImport:
    source: str
    content: bytes
    use_resumable: bool = False


ImportInput = Union[JsonImport, FileImport, StreamImport]


@dataclass(frozen=True)
class NormalizedPayload:
    """What the upload orchestrator stages, independent of how it arrived."""

    content: bytes
    source: str
    use_resumable: bool
    content_type: str
    key_suffix: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def artifact_key(self, job_id: str) -> str:
        return f"import-{job_id}{self.key_suffix}"


def to_payload(item: ImportInput) -> NormalizedPayload:
    """Collapse any input variant into the staged byte payload."""
    if isinstance(item, JsonImport):
        records = [contact.model_dump(mode="json") for contact in item.contacts]
        return NormalizedPayload(
            content=json.dumps(records).encode("utf-8"),
            source=item.source,
            use_resumable=item.use_resumable,
            content_type=JSON_CONTENT_TYPE,
            key_suffix=".json",
        )
    if isinstance(item, FileImport):
        return NormalizedPayload(
            content=item.content,
            source=item.source,
            use_resumable=item.use_resumable,
            content_type=item.content_type,
            key_suffix=f"-{item.filename}",
            metadata={
                "originalName": item.filename,
                "size": len(item.content),
                "uploadType": "file",
            },
        )
    if isinstance(item, StreamImport):
        return NormalizedPayload(
            content=item.content,
            source=item.source,
            use_resumable=item.use_resumable,
            content_type=JSON_CONTENT_TYPE,
            key_suffix="-stream.json",
            metadata={
                "size": len(item.content),
                "uploadType": "stream",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            },
        )
    assert_never(item)


# =============================================================================
# Adapters
# =============================================================================


async def normalize_request(request: Request) -> ImportInput:
    """Route on Content-Type and read the body with the matching adapter."""
    kind = detect_content_type(request.headers.get("content-type"))
    if kind == "multipart":
        return await read_multipart(request)
    if kind == "json":
        return await read_json(request)
    return await read_stream(request)


async def read_json(request: Request) -> JsonImport:
    try:
        body = await request.body()
    except ClientDisconnect as e:
        raise PayloadReadError("Failed to read request body: client disconnected") from e

    try:
        parsed = ImportRequest.model_validate_json(body)
    except ValidationError as e:
        raise RequestValidationFailed("Invalid JSON format", issues_from_pydantic(e)) from e

    return JsonImport(
        source=parsed.source,
        contacts=parsed.data,
        use_resumable=parsed.use_resumable,
    )


async def read_multipart(request: Request) -> FileImport:
    try:
        form = await request.form()
    except ClientDisconnect as e:
        raise PayloadReadError("Failed to read multipart body: client disconnected") from e
    except MultiPartException as e:
        raise PayloadReadError(f"Failed to parse multipart body: {e.message}") from e
    except StarletteHTTPException as e:
        # Starlette reports multipart parse errors this way inside an app
        raise PayloadReadError(f"Failed to parse multipart body: {e.detail}") from e

    upload = form.get("file")
    source = form.get("source")

    if not isinstance(upload, UploadFile):
        raise MissingParameter("Missing required field: file")
    if not isinstance(source, str) or not source:
        raise MissingParameter("Missing required field: source")

    try:
        content = await upload.read()
    except OSError as e:
        raise PayloadReadError(f"Failed to read uploaded file: {e}") from e
    finally:
        await upload.close()

    return FileImport(
        source=_validated_source(source),
        content=content,
        filename=_safe_filename(upload.filename),
        content_type=upload.content_type or get_settings().UPLOAD_DEFAULT_CONTENT_TYPE,
        use_resumable=form.get("useResumable") == "true",
    )


async def read_stream(request: Request) -> StreamImport:
    source = request.headers.get(SOURCE_HEADER)
    if not source:
        raise MissingParameter(
            "Missing required parameters for stream upload: Missing required field: source"
        )

    chunks = []
    try:
        async for chunk in request.stream():
            chunks.append(chunk)
    except ClientDisconnect as e:
        raise PayloadReadError("Failed to read request stream: client disconnected") from e

    content = b"".join(chunks)
    if not content:
        raise MissingParameter(
            "Missing required parameters for stream upload: Missing required field: body"
        )

    logger.debug(f"Drained {len(content)} bytes from request stream", extra={"source": source})

    return StreamImport(
        source=_validated_source(source),
        content=content,
        use_resumable=request.headers.get(RESUMABLE_HEADER) == "true",
    )


def _validated_source(value: str) -> str:
    try:
        return SourceLabel.validate_python(value)
    except ValidationError as e:
        issues = [Issue(path="source", message=err["msg"]) for err in e.errors()]
        raise RequestValidationFailed("Invalid source", issues) from e


def _safe_filename(filename: Optional[str]) -> str:
    """Last path component only, so the storage key stays flat."""
    name = PurePath((filename or "").replace("\\", "/")).name
    return name or "upload"
