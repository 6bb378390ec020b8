"""
Audit Job Service — the exposed operations

  create_job(documents)          → JobCreatedResponse {job_id, total_files}
  run_batch(job_id, max_files)   → JobSnapshot | None
  cancel(job_id)                 → CancelResponse {accepted}
  get_status(job_id)             → JobSnapshot | None
  list_files(job_id)             → list[JobFileSnapshot] | None
  advance_active_jobs(limit)     → number of jobs advanced (beat driver)

Unknown job ids return None / accepted=False; the HTTP layer decides how
to render that. Nothing here raises for a late or duplicate poll.
"""

from __future__ import annotations

import logging
import uuid
from functools import lru_cache
from typing import Sequence

from auditvault.core.config import settings
from auditvault.processing.dispatcher import ExtractionDispatcher
from auditvault.schemas.jobs import (
    CancelResponse,
    DocumentRef,
    JobCreatedResponse,
    JobFileSnapshot,
    JobSnapshot,
    JobStatus,
)
from auditvault.services.batch_runner import BatchRunner
from auditvault.services.job_queue import JobFileQueue
from auditvault.services.synthesizer import ReportSynthesizer
from auditvault.storage.s3 import ObjectStorage

logger = logging.getLogger(__name__)


class AuditJobService:

    def __init__(self, queue: JobFileQueue, runner: BatchRunner) -> None:
        self._queue  = queue
        self._runner = runner

    async def create_job(
        self,
        documents: Sequence[DocumentRef],
        vault_id: str | None = None,
        created_by: uuid.UUID | None = None,
    ) -> JobCreatedResponse:
        owner = created_by or uuid.UUID(settings.system_account_id)
        job = await self._queue.create_job(list(documents), created_by=owner, vault_id=vault_id)
        return JobCreatedResponse(
            job_id=job.id,
            total_files=job.total_files,
            status=JobStatus(job.status),
            current_step=job.current_step,
        )

    async def run_batch(self, job_id: uuid.UUID, max_files: int | None = None) -> JobSnapshot | None:
        return await self._runner.run_batch(job_id, max_files)

    async def cancel(self, job_id: uuid.UUID) -> CancelResponse:
        accepted = await self._queue.request_cancel(job_id)
        logger.info("Cancel requested | job=%s accepted=%s", job_id, accepted)
        return CancelResponse(job_id=job_id, accepted=accepted)

    async def get_status(self, job_id: uuid.UUID) -> JobSnapshot | None:
        return await self._runner.snapshot(job_id)

    async def list_files(self, job_id: uuid.UUID) -> list[JobFileSnapshot] | None:
        if await self._queue.get_job(job_id) is None:
            return None
        return [JobFileSnapshot.from_item(i) for i in await self._queue.list_items(job_id)]

    async def advance_active_jobs(self, limit: int, max_files: int | None = None) -> int:
        """One run_batch per non-terminal job; a failing job does not stop the sweep."""
        advanced = 0
        for job_id in await self._queue.list_active_job_ids(limit):
            try:
                await self._runner.run_batch(job_id, max_files)
                advanced += 1
            except Exception:
                logger.exception("Auto-advance failed | job=%s", job_id)
        return advanced


def build_audit_service(storage: ObjectStorage | None = None) -> AuditJobService:
    """Wire the default object graph (SQL queue, S3 storage, LLM gateway)."""
    queue  = JobFileQueue()
    runner = BatchRunner(
        queue=queue,
        dispatcher=ExtractionDispatcher(storage or ObjectStorage()),
        synthesizer=ReportSynthesizer(),
    )
    return AuditJobService(queue, runner)


@lru_cache(maxsize=1)
def get_audit_service() -> AuditJobService:
    """Process-wide service instance (FastAPI dependency / Celery tasks)."""
    return build_audit_service()
