"""
Contactflow - Core Models

Pydantic models for ingress payloads, the staged contact schema and the
queue task payload.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, TypeAdapter

# =============================================================================
# Contacts
# =============================================================================


class ContactIn(BaseModel):
    """A contact record as submitted or staged."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr


class ContactRow(BaseModel):
    """A contact ready for the relational insert."""

    name: str
    email: str
    source: str
    imported_at: datetime


# The worker applies the same schema as ingress, batch-wide
ContactBatch = TypeAdapter(Annotated[List[ContactIn], Field(min_length=1)])


# =============================================================================
# Ingress
# =============================================================================


class ImportRequest(BaseModel):
    """JSON body of POST /import."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    source: str = Field(..., min_length=1, max_length=100)
    data: List[ContactIn] = Field(..., min_length=1)
    use_resumable: bool = Field(default=False, alias="useResumable")


class ImportResponse(BaseModel):
    """Successful submission: processing continues asynchronously."""

    job_id: str = Field(..., serialization_alias="jobId")


# =============================================================================
# Queue
# =============================================================================

IMPORT_TASK_NAME = "processImportJob"


class ImportJobPayload(BaseModel):
    """Payload handed from staging to the worker."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: str = Field(..., min_length=1, alias="jobId")
    source: str = Field(..., min_length=1, max_length=100)
    artifact_key: Optional[str] = Field(default=None, alias="artifactKey")

    @property
    def resolved_artifact_key(self) -> str:
        """Explicit key when carried, else the JSON naming convention."""
        return self.artifact_key or f"import-{self.job_id}.json"

    def to_queue_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class QueueJobStatus(str, Enum):
    """Queue row lifecycle."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DEAD_LETTER = "dead_letter"


class QueueJob(BaseModel):
    """A claimed row of import_job_queue."""

    id: int
    task_name: str
    payload: Dict[str, Any]
    attempts: int = 0
    status: QueueJobStatus = QueueJobStatus.PENDING
    created_at: Optional[datetime] = None


class TaskStage(str, Enum):
    """Worker task state machine."""

    DEQUEUED = "dequeued"
    DOWNLOADING = "downloading"
    PARSING = "parsing"
    VALIDATING = "validating"
    PERSISTING = "persisting"
    CLEANING_UP = "cleaning_up"
    DONE = "done"
    FAILED = "failed"
