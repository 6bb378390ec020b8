"""
BatchRunner — the resumable audit state machine
═══════════════════════════════════════════════

    queued ──► running ──► completed
                  │  ▲  ├──► failed      (synthesis error)
                  └──┘  └──► cancelled   (cancel_requested seen at a boundary)

run_batch(job_id, max_files) is a short, stateless invocation. It may be
called by a polling client, the Celery beat driver, or both at once:

  1. Load the job. Unknown → None. Terminal → unchanged snapshot.
  2. cancel_requested → cancelled. No new items are claimed.
  3. queued → running.
  4. Atomically claim up to max_files items (clamped to [1, BATCH_MAX_FILES]).
  5. Per item, in queue order: dispatch, classify, persist as succeeded.
     A persist error marks the item failed instead; both count as processed.
     After each item: processed_files, progress, current_step and ETA.
  6. Nothing left to claim → a pending cancel finalises the job as
     cancelled; otherwise the single synthesis winner writes the report
     (completed) or the error (failed).
  7. Return a fresh snapshot.

Cancellation is cooperative: items claimed by this invocation always reach
a terminal per-item status before a later invocation honours the flag.
"""

from __future__ import annotations

import logging
import time
import uuid
from datetime import datetime, timedelta, timezone

from auditvault.core.config import settings
from auditvault.models.jobs import AuditJob, AuditJobFile
from auditvault.processing.classifier import classify_document
from auditvault.processing.dispatcher import ExtractionDispatcher
from auditvault.schemas.jobs import JobSnapshot, JobStatus
from auditvault.services.job_queue import JobFileQueue
from auditvault.services.synthesizer import ReportSynthesizer

logger = logging.getLogger(__name__)

STEP_PROCESSING   = "Processing documents"
STEP_SYNTHESIZING = "Synthesizing report"
STEP_COMPLETED    = "Completed"
STEP_CANCELLED    = "Cancelled"

_STEP_NAME_CHARS = 50
_ERROR_CHARS     = 500


def processing_step(file_name: str, processed: int, total: int) -> str:
    name = file_name if len(file_name) <= _STEP_NAME_CHARS else file_name[:_STEP_NAME_CHARS] + "..."
    return f"Processing: {name} ({processed}/{total})"


def synthesis_failed_step(message: str) -> str:
    return f"Report synthesis failed: {message[:_ERROR_CHARS]}"


class BatchRunner:
    """
    Constructor args:
        queue         : JobFileQueue (or any object with the same methods)
        dispatcher    : ExtractionDispatcher
        synthesizer   : ReportSynthesizer
        batch_max_files / stale_claim_seconds / eta_cap_seconds default to settings
    """

    def __init__(
        self,
        queue: JobFileQueue,
        dispatcher: ExtractionDispatcher,
        synthesizer: ReportSynthesizer,
        batch_max_files: int | None = None,
        stale_claim_seconds: int | None = None,
        stale_synthesis_seconds: int | None = None,
        eta_cap_seconds: int | None = None,
    ) -> None:
        self._queue       = queue
        self._dispatcher  = dispatcher
        self._synthesizer = synthesizer
        self._batch_max   = batch_max_files or settings.batch_max_files
        self._stale_claim = stale_claim_seconds or settings.stale_claim_seconds
        self._stale_synth = stale_synthesis_seconds or settings.stale_synthesis_seconds
        self._eta_cap     = eta_cap_seconds or settings.eta_cap_seconds

    def clamp_batch_size(self, max_files: int | None) -> int:
        requested = self._batch_max if max_files is None else max_files
        return max(1, min(requested, self._batch_max))

    async def run_batch(self, job_id: uuid.UUID, max_files: int | None = None) -> JobSnapshot | None:
        job = await self._queue.get_job(job_id)
        if job is None:
            logger.info("BatchRunner | job=%s not found, nothing to do", job_id)
            return None

        if JobStatus(job.status).is_terminal:
            logger.debug("BatchRunner | job=%s already %s", job_id, job.status)
            return JobSnapshot.from_job(job)

        if job.cancel_requested:
            await self._queue.finish_cancelled(job_id, current_step=STEP_CANCELLED)
            logger.info("BatchRunner | job=%s cancelled at batch boundary", job_id)
            return await self.snapshot(job_id)

        if job.status == JobStatus.QUEUED.value:
            await self._queue.mark_running(job_id, current_step=STEP_PROCESSING)

        limit = self.clamp_batch_size(max_files)
        now   = datetime.now(timezone.utc)
        items = await self._queue.claim_pending(
            job_id, limit, stale_before=now - timedelta(seconds=self._stale_claim),
        )

        t0 = time.monotonic()
        for done, item in enumerate(items, start=1):
            await self._process_item(job_id, item)
            await self._record_progress(job, item, done, time.monotonic() - t0)

        remaining = await self._queue.count_remaining(job_id)
        logger.info(
            "BatchRunner | job=%s claimed=%d remaining=%d limit=%d",
            job_id, len(items), remaining, limit,
        )

        if remaining == 0:
            await self._synthesize(job)

        return await self.snapshot(job_id)

    async def snapshot(self, job_id: uuid.UUID) -> JobSnapshot | None:
        job = await self._queue.get_job(job_id)
        return JobSnapshot.from_job(job) if job is not None else None

    # ------------------------------------------------------------------
    # Per-item work
    # ------------------------------------------------------------------

    async def _process_item(self, job_id: uuid.UUID, item: AuditJobFile) -> None:
        try:
            result = await self._dispatcher.extract(
                item.source_reference, item.file_name, item.declared_type,
            )
            category = classify_document(item.file_name, None if result.failed else result.text)
            stored = await self._queue.complete_item(
                item.id,
                extracted_text=result.text,
                extraction_method=result.method,
                document_category=category.value,
            )
            if not stored:
                logger.warning(
                    "BatchRunner | job=%s item=%s no longer claimed, result dropped",
                    job_id, item.id,
                )
        except Exception as exc:
            logger.exception("BatchRunner | job=%s item=%s persist failed", job_id, item.id)
            message = (str(exc) or type(exc).__name__)[:_ERROR_CHARS]
            try:
                await self._queue.fail_item(item.id, error=message)
            except Exception:
                # Left in 'processing'; the stale-claim cutoff makes it claimable again
                logger.exception("BatchRunner | job=%s item=%s could not be marked failed", job_id, item.id)

    async def _record_progress(
        self,
        job: AuditJob,
        item: AuditJobFile,
        done_this_batch: int,
        elapsed_seconds: float,
    ) -> None:
        total     = job.total_files
        processed = min(await self._queue.count_processed(job.id), total)
        progress  = round(100 * processed / total) if total else 0

        per_file = elapsed_seconds / done_this_batch
        eta      = int(per_file * (total - processed))
        eta      = max(0, min(eta, self._eta_cap))

        await self._queue.update_progress(
            job.id,
            processed_files=processed,
            progress=progress,
            current_step=processing_step(item.file_name, processed, total),
            estimated_remaining_seconds=eta,
        )
        logger.info(
            "BatchRunner | job=%s processed=%d/%d progress=%d%% eta=%ds",
            job.id, processed, total, progress, eta,
        )

    # ------------------------------------------------------------------
    # Synthesis
    # ------------------------------------------------------------------

    async def _synthesize(self, job: AuditJob) -> None:
        stale_before = datetime.now(timezone.utc) - timedelta(seconds=self._stale_synth)
        won = await self._queue.claim_synthesis(
            job.id, current_step=STEP_SYNTHESIZING, stale_before=stale_before,
        )
        if not won:
            await self._cancel_before_synthesis(job.id)
            return

        items     = await self._queue.list_items(job.id)
        processed = await self._queue.count_processed(job.id)

        await self._run_synthesis(job, items, processed)

    async def _cancel_before_synthesis(self, job_id: uuid.UUID) -> None:
        """The synthesis claim was lost: cancelled during the last batch, or owned elsewhere."""
        current = await self._queue.get_job(job_id)
        if current is None or current.status != JobStatus.RUNNING.value:
            return
        if current.cancel_requested:
            await self._queue.finish_cancelled(job_id, current_step=STEP_CANCELLED)
            logger.info("BatchRunner | job=%s cancelled before synthesis", job_id)
            return
        logger.debug("BatchRunner | job=%s synthesis owned by another invocation", job_id)

    async def _run_synthesis(self, job: AuditJob, items: list[AuditJobFile], processed: int) -> None:
        try:
            result = await self._synthesizer.synthesize(items, vault_label=job.vault_id)
        except Exception as exc:
            message = str(exc) or type(exc).__name__
            logger.exception("BatchRunner | job=%s synthesis failed", job.id)
            await self._queue.finish_failed(
                job.id,
                error=message,
                current_step=synthesis_failed_step(message),
            )
            return

        await self._queue.finish_completed(
            job.id,
            processed_files=processed,
            report=result.report_markdown,
            report_json=result.report_json,
            risk_score=result.risk_score,
            current_step=STEP_COMPLETED,
        )
        logger.info(
            "BatchRunner | job=%s completed files=%d risk_score=%s",
            job.id, processed, result.risk_score,
        )
