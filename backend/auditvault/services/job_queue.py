"""
JobFileQueue — durable job + item persistence
═════════════════════════════════════════════

Every method opens its own short transaction through `session_factory`
(default: db.session.session_scope), so a batch commits its claim before
the slow extraction work starts and commits each item result on its own.

Concurrency rules enforced in SQL, not in process memory:

  claim_pending     UPDATE … WHERE id IN (SELECT … FOR UPDATE SKIP LOCKED)
                    AND status is still claimable … RETURNING
                    → two overlapping polls never own the same item
  complete/fail     WHERE status = 'processing'
                    → an item is finalised exactly once
  claim_synthesis   WHERE synthesis_started_at IS NULL (or stale)
                    → exactly one live invocation runs the report step
  finish_*          WHERE status IN ('queued', 'running')
                    → terminal jobs are never written again
  update_progress   GREATEST(existing, new)
                    → processed_files / progress never move backwards

An item stuck in 'processing' longer than the stale cutoff (its
invocation crashed) becomes claimable again.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AbstractAsyncContextManager
from datetime import datetime, timezone
from typing import Callable, Sequence

from sqlalchemy import and_, func, insert, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from auditvault.db.session import session_scope
from auditvault.models.jobs import AuditJob, AuditJobFile
from auditvault.schemas.jobs import DocumentRef, FileStatus, JobStatus

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

STEP_QUEUED       = "Queued"
STEP_READY        = "Ready to run"
STEP_NO_DOCUMENTS = "No documents to audit"

_ACTIVE_JOB_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobFileQueue:
    """SQL-backed store for AuditJob / AuditJobFile rows."""

    def __init__(self, session_factory: SessionFactory = session_scope) -> None:
        self._session_factory = session_factory

    # ------------------------------------------------------------------
    # Job creation / reads
    # ------------------------------------------------------------------

    async def create_job(
        self,
        documents: Sequence[DocumentRef],
        created_by: uuid.UUID,
        vault_id: str | None = None,
    ) -> AuditJob:
        """
        Insert the job and its frozen document snapshot in one transaction.
        Items get their position from the order of `documents`.
        """
        now = _utcnow()
        job = AuditJob(
            id=uuid.uuid4(),
            created_at=now,
            updated_at=now,
            vault_id=vault_id,
            created_by=created_by,
            status=JobStatus.QUEUED.value,
            progress=0,
            total_files=len(documents),
            processed_files=0,
            current_step=STEP_READY if documents else STEP_NO_DOCUMENTS,
            cancel_requested=False,
        )

        async with self._session_factory() as db:
            db.add(job)
            await db.flush()
            if documents:
                await db.execute(
                    insert(AuditJobFile),
                    [
                        {
                            "id":               uuid.uuid4(),
                            "job_id":           job.id,
                            "position":         pos,
                            "source_reference": doc.source_reference,
                            "file_name":        doc.file_name,
                            "declared_type":    doc.declared_type,
                            "declared_size":    doc.declared_size,
                            "status":           FileStatus.PENDING.value,
                        }
                        for pos, doc in enumerate(documents)
                    ],
                )

        logger.info("Job created | job=%s vault=%s files=%d", job.id, vault_id, len(documents))
        return job

    async def get_job(self, job_id: uuid.UUID) -> AuditJob | None:
        async with self._session_factory() as db:
            result = await db.execute(select(AuditJob).where(AuditJob.id == job_id))
            return result.scalars().first()

    async def list_items(self, job_id: uuid.UUID) -> list[AuditJobFile]:
        """All items of a job in queue order."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditJobFile)
                .where(AuditJobFile.job_id == job_id)
                .order_by(AuditJobFile.position)
            )
            return list(result.scalars().all())

    async def list_active_job_ids(self, limit: int) -> list[uuid.UUID]:
        """Oldest non-terminal jobs first; used by the beat driver."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AuditJob.id)
                .where(AuditJob.status.in_(_ACTIVE_JOB_STATUSES))
                .order_by(AuditJob.created_at)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def count_processed(self, job_id: uuid.UUID) -> int:
        return await self._count(job_id, (FileStatus.SUCCEEDED.value, FileStatus.FAILED.value))

    async def count_remaining(self, job_id: uuid.UUID) -> int:
        """Items not yet in a terminal per-item status (pending or claimed)."""
        return await self._count(job_id, (FileStatus.PENDING.value, FileStatus.PROCESSING.value))

    async def _count(self, job_id: uuid.UUID, statuses: tuple[str, ...]) -> int:
        async with self._session_factory() as db:
            result = await db.execute(
                select(func.count())
                .select_from(AuditJobFile)
                .where(
                    AuditJobFile.job_id == job_id,
                    AuditJobFile.status.in_(statuses),
                )
            )
            return int(result.scalar_one())

    # ------------------------------------------------------------------
    # Job transitions
    # ------------------------------------------------------------------

    async def mark_running(self, job_id: uuid.UUID, current_step: str) -> bool:
        """queued → running. False if another invocation got there first."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status == JobStatus.QUEUED.value)
                .values(
                    status=JobStatus.RUNNING.value,
                    started_at=_utcnow(),
                    current_step=current_step,
                )
            )
            return result.rowcount == 1

    async def update_progress(
        self,
        job_id: uuid.UUID,
        processed_files: int,
        progress: int,
        current_step: str,
        estimated_remaining_seconds: int | None,
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status == JobStatus.RUNNING.value)
                .values(
                    processed_files=func.greatest(AuditJob.processed_files, processed_files),
                    progress=func.greatest(AuditJob.progress, progress),
                    current_step=current_step,
                    estimated_remaining_seconds=estimated_remaining_seconds,
                )
            )
            return result.rowcount == 1

    async def claim_synthesis(
        self,
        job_id: uuid.UUID,
        current_step: str,
        stale_before: datetime,
    ) -> bool:
        """
        Win the right to run synthesis. Only one caller gets True, unless
        the winner's claim is older than `stale_before` (it crashed).
        A job with cancel_requested set is never synthesized.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJob)
                .where(
                    AuditJob.id == job_id,
                    AuditJob.status == JobStatus.RUNNING.value,
                    AuditJob.cancel_requested.is_(False),
                    or_(
                        AuditJob.synthesis_started_at.is_(None),
                        AuditJob.synthesis_started_at < stale_before,
                    ),
                )
                .values(synthesis_started_at=_utcnow(), current_step=current_step)
            )
            return result.rowcount == 1

    async def finish_completed(
        self,
        job_id: uuid.UUID,
        processed_files: int,
        report: str,
        report_json: dict,
        risk_score: int | None,
        current_step: str,
    ) -> bool:
        return await self._finish(
            job_id,
            status=JobStatus.COMPLETED.value,
            progress=100,
            processed_files=processed_files,
            current_step=current_step,
            report=report,
            report_json=report_json,
            risk_score=risk_score,
            error=None,
            estimated_remaining_seconds=0,
        )

    async def finish_failed(self, job_id: uuid.UUID, error: str, current_step: str) -> bool:
        return await self._finish(
            job_id,
            status=JobStatus.FAILED.value,
            current_step=current_step,
            report=None,
            report_json=None,
            error=error,
            estimated_remaining_seconds=None,
        )

    async def finish_cancelled(self, job_id: uuid.UUID, current_step: str) -> bool:
        return await self._finish(
            job_id,
            status=JobStatus.CANCELLED.value,
            current_step=current_step,
            estimated_remaining_seconds=None,
        )

    async def _finish(self, job_id: uuid.UUID, **values) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status.in_(_ACTIVE_JOB_STATUSES))
                .values(completed_at=_utcnow(), **values)
            )
            done = result.rowcount == 1

        logger.info("Job finished | job=%s status=%s applied=%s", job_id, values["status"], done)
        return done

    async def request_cancel(self, job_id: uuid.UUID) -> bool:
        """Set cancel_requested on a non-terminal job; status is left alone."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJob)
                .where(AuditJob.id == job_id, AuditJob.status.in_(_ACTIVE_JOB_STATUSES))
                .values(cancel_requested=True)
            )
            return result.rowcount == 1

    # ------------------------------------------------------------------
    # Item claim / results
    # ------------------------------------------------------------------

    async def claim_pending(
        self,
        job_id: uuid.UUID,
        limit: int,
        stale_before: datetime,
    ) -> list[AuditJobFile]:
        """
        Atomically move up to `limit` claimable items to 'processing' and
        return them in queue order. Rows locked by a concurrent claim are
        skipped, and the outer WHERE re-checks the status.
        """
        claimable = or_(
            AuditJobFile.status == FileStatus.PENDING.value,
            and_(
                AuditJobFile.status == FileStatus.PROCESSING.value,
                AuditJobFile.started_at < stale_before,
            ),
        )
        candidates = (
            select(AuditJobFile.id)
            .where(AuditJobFile.job_id == job_id, claimable)
            .order_by(AuditJobFile.position)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )

        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJobFile)
                .where(AuditJobFile.id.in_(candidates), claimable)
                .values(status=FileStatus.PROCESSING.value, started_at=_utcnow())
                .returning(AuditJobFile)
                .execution_options(synchronize_session=False)
            )
            items = sorted(result.scalars().all(), key=lambda i: i.position)

        if items:
            logger.debug("Claimed | job=%s items=%d", job_id, len(items))
        return items

    async def complete_item(
        self,
        item_id: uuid.UUID,
        extracted_text: str,
        extraction_method: str,
        document_category: str | None,
    ) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJobFile)
                .where(AuditJobFile.id == item_id, AuditJobFile.status == FileStatus.PROCESSING.value)
                .values(
                    status=FileStatus.SUCCEEDED.value,
                    extracted_text=extracted_text,
                    extraction_method=extraction_method,
                    document_category=document_category,
                    error=None,
                    completed_at=_utcnow(),
                )
            )
            return result.rowcount == 1

    async def fail_item(self, item_id: uuid.UUID, error: str) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(AuditJobFile)
                .where(AuditJobFile.id == item_id, AuditJobFile.status == FileStatus.PROCESSING.value)
                .values(
                    status=FileStatus.FAILED.value,
                    error=error,
                    completed_at=_utcnow(),
                )
            )
            return result.rowcount == 1
