"""
Celery Tasks — Audit Job Driver

Task: run_audit_batch(job_id, max_files)
  One run_batch invocation, exactly what POST /audit-jobs/{id}/run does.
  Used when the API wants to hand the work to a worker instead of doing
  it inside the request.

Task: advance_audit_jobs
  Beat task (every AUTO_ADVANCE_INTERVAL_SECONDS). Runs one batch for each
  of the oldest AUTO_ADVANCE_LIMIT non-terminal jobs. Overlapping sweeps
  are harmless: item claims and the synthesis claim are atomic in SQL.

Each task runs its coroutine on a fresh event loop, so the pooled asyncpg
connections are disposed before the loop closes.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any

from celery import Task

from auditvault.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Async task helper
# ---------------------------------------------------------------------------

def run_async(coro):
    """Execute an async coroutine from a synchronous Celery task."""
    try:
        loop = asyncio.get_event_loop()
        if loop.is_running():
            import concurrent.futures
            with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
                future = pool.submit(asyncio.run, coro)
                return future.result()
        return loop.run_until_complete(coro)
    except RuntimeError:
        return asyncio.run(coro)


async def _with_engine_cleanup(coro):
    from auditvault.db.session import engine

    try:
        return await coro
    finally:
        await engine.dispose()


# ---------------------------------------------------------------------------
# On-demand batch
# ---------------------------------------------------------------------------

@celery_app.task(
    name="auditvault.workers.tasks.run_audit_batch",
    bind=True,
    acks_late=True,
    reject_on_worker_lost=True,
)
def run_audit_batch(self: Task, *, job_id: str, max_files: int = 5) -> dict[str, Any]:
    return run_async(_with_engine_cleanup(_run_audit_batch_async(uuid.UUID(job_id), max_files)))


async def _run_audit_batch_async(job_id: uuid.UUID, max_files: int) -> dict[str, Any]:
    from auditvault.services.audit_jobs import get_audit_service

    snapshot = await get_audit_service().run_batch(job_id, max_files)
    if snapshot is None:
        logger.warning("Audit batch skipped, job not found | job=%s", job_id)
        return {"status": "not_found", "job_id": str(job_id)}
    return snapshot.model_dump(mode="json", exclude={"report"})


# ---------------------------------------------------------------------------
# Auto-advance sweep — runs via Celery Beat
# ---------------------------------------------------------------------------

@celery_app.task(
    name="auditvault.workers.tasks.advance_audit_jobs",
    bind=False,
    acks_late=True,
)
def advance_audit_jobs() -> dict[str, int]:
    return run_async(_with_engine_cleanup(_advance_audit_jobs_async()))


async def _advance_audit_jobs_async() -> dict[str, int]:
    from auditvault.core.config import settings
    from auditvault.services.audit_jobs import get_audit_service

    advanced = await get_audit_service().advance_active_jobs(
        limit=settings.auto_advance_limit,
        max_files=settings.batch_max_files,
    )
    if advanced:
        logger.info("Auto-advance | jobs=%d", advanced)
    return {"advanced": advanced}


# ---------------------------------------------------------------------------
# Health check task
# ---------------------------------------------------------------------------

@celery_app.task(name="auditvault.workers.tasks.health_check")
def health_check() -> dict[str, str]:
    return {"status": "ok", "worker": "healthy"}
