"""
SQLAlchemy ORM Models — Audit Jobs & Job Files

Two tables make up the whole durable state of the pipeline:

  audit.audit_jobs       one row per audit run (the Job)
  audit.audit_job_files  one row per document snapshot in a run (the JobFileItem)

Nothing about a running job lives in process memory. Every runBatch
invocation reloads both tables, so any API replica or Celery worker can
advance any job.

Schema: audit (set via __table_args__)
"""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Declarative base — shared across all models
# ---------------------------------------------------------------------------

class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# AuditJob — audit.audit_jobs
# ---------------------------------------------------------------------------

class AuditJob(Base):
    """
    One audit run over a frozen snapshot of documents.

    State machine (status column):
        queued     — created, no batch has run yet
        running    — at least one batch has run; re-entered on every poll
        completed  — all items processed and a report was synthesized
        failed     — report synthesis failed (see error / current_step)
        cancelled  — cancel_requested was observed at a batch boundary

    completed / failed / cancelled are terminal: no further writes.
    """

    __tablename__ = "audit_jobs"
    __table_args__ = (
        CheckConstraint(
            "status IN ('queued', 'running', 'completed', 'failed', 'cancelled')",
            name="audit_jobs_status_check",
        ),
        CheckConstraint(
            "processed_files <= total_files",
            name="audit_jobs_processed_le_total",
        ),
        CheckConstraint("progress BETWEEN 0 AND 100", name="audit_jobs_progress_range"),
        Index("idx_audit_jobs_status",   "status"),
        Index("idx_audit_jobs_vault_id", "vault_id"),
        {"schema": "audit"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )

    # Opaque label of the document set (dataroom / vault) this job audits
    vault_id: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="queued",
        server_default="queued",
    )
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    total_files: Mapped[int]     = mapped_column(Integer, nullable=False, default=0, server_default="0")
    processed_files: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default="0")

    current_step: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="Queued",
        server_default="Queued",
        comment="Human-readable phase label shown by polling clients",
    )
    estimated_remaining_seconds: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    cancel_requested: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        server_default="false",
    )

    # Synthesis output — populated only on completed
    report: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Synthesized Markdown report",
    )
    report_json: Mapped[Optional[dict]] = mapped_column(JSONB, nullable=True)
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    error: Mapped[Optional[str]] = mapped_column(
        Text,
        nullable=True,
        comment="Populated only when status='failed'",
    )

    # Set by the single invocation allowed to run synthesis
    synthesis_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[Optional[datetime]]   = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
        onupdate=func.now(),
    )

    def __repr__(self) -> str:
        return (
            f"<AuditJob id={self.id} status={self.status} "
            f"processed={self.processed_files}/{self.total_files}>"
        )


# ---------------------------------------------------------------------------
# AuditJobFile — audit.audit_job_files
# ---------------------------------------------------------------------------

class AuditJobFile(Base):
    """
    One document of a job's snapshot.

    State machine (status column):
        pending     — waiting to be claimed
        processing  — claimed by a runBatch invocation (in-progress marker)
        succeeded   — extraction ran; text + method stored
        failed      — claim/persist step errored (see error)

    Claiming is a conditional UPDATE ... WHERE status='pending', so two
    overlapping polls can never both own the same row.
    """

    __tablename__ = "audit_job_files"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'succeeded', 'failed')",
            name="audit_job_files_status_check",
        ),
        UniqueConstraint("job_id", "position", name="uq_audit_job_files_position"),
        Index("idx_audit_job_files_job_status", "job_id", "status"),
        {"schema": "audit"},
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
        server_default=func.gen_random_uuid(),
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("audit.audit_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Insertion order inside the snapshot; batches are claimed in this order
    position: Mapped[int] = mapped_column(Integer, nullable=False)

    source_reference: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        comment="Opaque pointer into the document store (object key)",
    )
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    declared_type: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    declared_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default="pending",
        server_default="pending",
    )
    extracted_text: Mapped[Optional[str]]    = mapped_column(Text, nullable=True)
    extraction_method: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    document_category: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error: Mapped[Optional[str]]             = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    started_at: Mapped[Optional[datetime]]   = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<AuditJobFile id={self.id} job={self.job_id} pos={self.position} "
            f"status={self.status} file={self.file_name!r}>"
        )
