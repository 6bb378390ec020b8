"""
Audit Jobs — Pydantic Request/Response Schemas

Covers the exposed polling interface:
  - POST /audit-jobs                (createJob)
  - POST /audit-jobs/{id}/run       (runBatch)
  - POST /audit-jobs/{id}/cancel    (cancel)
  - GET  /audit-jobs/{id}           (getStatus)
  - GET  /audit-jobs/{id}/files     (per-item listing)
  - All structured error bodies (404, 422, 500)

Design decisions:
  - job_id is always server-generated (UUID4).
  - The document set is snapshotted at creation; later additions are ignored.
  - JobSnapshot is the single shape returned by run and status, so a
    polling client renders both the same way.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

if TYPE_CHECKING:
    from auditvault.models.jobs import AuditJob, AuditJobFile


# ---------------------------------------------------------------------------
# State machines
# ---------------------------------------------------------------------------

class JobStatus(str, Enum):
    """
    Maps to audit.audit_jobs.status.
    Transitions: queued → running → completed | failed | cancelled
    """
    QUEUED    = "queued"
    RUNNING   = "running"
    COMPLETED = "completed"
    FAILED    = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_JOB_STATUSES


TERMINAL_JOB_STATUSES: frozenset[JobStatus] = frozenset(
    {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}
)


class FileStatus(str, Enum):
    """
    Maps to audit.audit_job_files.status.
    Transitions: pending → processing → succeeded | failed
    """
    PENDING    = "pending"
    PROCESSING = "processing"   # in-progress marker set by the atomic claim
    SUCCEEDED  = "succeeded"
    FAILED     = "failed"


PROCESSED_FILE_STATUSES: frozenset[FileStatus] = frozenset(
    {FileStatus.SUCCEEDED, FileStatus.FAILED}
)


# ---------------------------------------------------------------------------
# createJob
# ---------------------------------------------------------------------------

class DocumentRef(BaseModel):
    """One document of the set to audit, as known to the external document store."""
    source_reference: str        = Field(..., min_length=1, description="Object key in the document store")
    file_name:        str        = Field(..., min_length=1, max_length=512)
    declared_type:    str | None = Field(None, description="MIME type recorded at upload, if any")
    declared_size:    int | None = Field(None, ge=0, description="Size in bytes recorded at upload")

    @field_validator("file_name")
    @classmethod
    def strip_file_name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("file_name must not be blank")
        return v


class CreateJobRequest(BaseModel):
    documents:  list[DocumentRef] = Field(default_factory=list)
    vault_id:   str | None        = Field(None, max_length=255, description="Label of the audited document set")
    created_by: UUID | None       = Field(
        None,
        description="Operator identity; defaults to the configured system account",
    )


class JobCreatedResponse(BaseModel):
    job_id:       UUID
    total_files:  int
    status:       JobStatus
    current_step: str


# ---------------------------------------------------------------------------
# runBatch / getStatus
# ---------------------------------------------------------------------------

class RunBatchRequest(BaseModel):
    max_files: int = Field(
        5,
        description="Upper bound of files processed in this call; clamped to [1, BATCH_MAX_FILES]",
    )


class JobSnapshot(BaseModel):
    """Point-in-time view of a job, returned by run and status."""
    job_id:                      UUID
    vault_id:                    str | None = None
    status:                      JobStatus
    progress:                    int = Field(0, ge=0, le=100)
    total_files:                 int
    processed_files:             int
    current_step:                str
    report:                      str | None = None
    risk_score:                  int | None = None
    cancel_requested:            bool = False
    estimated_remaining_seconds: int | None = None
    error:                       str | None = None
    created_at:                  datetime | None = None
    started_at:                  datetime | None = None
    completed_at:                datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @classmethod
    def from_job(cls, job: "AuditJob") -> "JobSnapshot":
        return cls(
            job_id=job.id,
            vault_id=job.vault_id,
            status=JobStatus(job.status),
            progress=job.progress or 0,
            total_files=job.total_files or 0,
            processed_files=job.processed_files or 0,
            current_step=job.current_step or "",
            report=job.report,
            risk_score=job.risk_score,
            cancel_requested=bool(job.cancel_requested),
            estimated_remaining_seconds=job.estimated_remaining_seconds,
            error=job.error,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
        )


class JobFileSnapshot(BaseModel):
    """Per-item row for GET /audit-jobs/{id}/files (extracted text omitted)."""
    file_id:           UUID
    position:          int
    file_name:         str
    declared_type:     str | None = None
    status:            FileStatus
    extraction_method: str | None = None
    document_category: str | None = None
    error:             str | None = None
    completed_at:      datetime | None = None

    @classmethod
    def from_item(cls, item: "AuditJobFile") -> "JobFileSnapshot":
        return cls(
            file_id=item.id,
            position=item.position,
            file_name=item.file_name,
            declared_type=item.declared_type,
            status=FileStatus(item.status),
            extraction_method=item.extraction_method,
            document_category=item.document_category,
            error=item.error,
            completed_at=item.completed_at,
        )


# ---------------------------------------------------------------------------
# cancel
# ---------------------------------------------------------------------------

class CancelResponse(BaseModel):
    job_id:   UUID
    accepted: bool = Field(..., description="False when the job is unknown or already terminal")


# ---------------------------------------------------------------------------
# Structured error bodies
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single structured error — may appear in a list."""
    field:   str | None = Field(None, description="Request field that caused the error, if applicable")
    message: str
    code:    str        = Field(..., description="Machine-readable error code for client handling")


class ErrorResponse(BaseModel):
    """
    Uniform error envelope for all 4xx/5xx responses.
    Clients should check `error_code` for programmatic handling.
    """
    error_code: str               = Field(..., description="Stable machine-readable code")
    message:    str               = Field(..., description="Human-readable summary")
    details:    list[ErrorDetail] = Field(default_factory=list)
    request_id: str | None        = Field(None, description="Trace ID for log correlation")


class JobErrors:
    """Factories for every documented error case."""

    @staticmethod
    def job_not_found(job_id: UUID) -> ErrorResponse:
        return ErrorResponse(
            error_code="JOB_NOT_FOUND",
            message=f"Audit job '{job_id}' was not found.",
            details=[],
        )

    @staticmethod
    def internal_error(request_id: str | None = None) -> ErrorResponse:
        return ErrorResponse(
            error_code="INTERNAL_ERROR",
            message="An unexpected error occurred. Our team has been notified.",
            details=[],
            request_id=request_id,
        )


HTTP_ERROR_MAP: dict[int, str] = {
    404: "JOB_NOT_FOUND",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
}
