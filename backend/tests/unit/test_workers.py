"""
Unit Tests — Celery worker tasks
════════════════════════════════
Task bodies are executed directly (no broker); the audit service and the
DB engine are patched.

Coverage:
  ✅ run_audit_batch returns the snapshot as JSON (report omitted)
  ✅ run_audit_batch on an unknown job returns status=not_found
  ✅ advance_audit_jobs sweeps with the configured limit
  ✅ Engine pool disposed after every task
  ✅ Beat schedule + queue routing
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from auditvault.schemas.jobs import JobSnapshot, JobStatus


def _snapshot(job_id: uuid.UUID) -> JobSnapshot:
    return JobSnapshot(
        job_id=job_id,
        status=JobStatus.RUNNING,
        progress=40,
        total_files=5,
        processed_files=2,
        current_step="Processing: ledger.pdf (2/5)",
        report="## Forensic Audit Report",
        created_at=datetime.now(timezone.utc),
    )


@pytest.fixture
def patched_service():
    service = MagicMock()
    service.run_batch = AsyncMock()
    service.advance_active_jobs = AsyncMock(return_value=3)
    engine = MagicMock()
    engine.dispose = AsyncMock()

    with patch("auditvault.services.audit_jobs.get_audit_service", return_value=service), \
         patch("auditvault.db.session.engine", engine):
        yield service, engine


@pytest.mark.unit
@pytest.mark.workers
class TestTasks:

    def test_run_audit_batch(self, patched_service):
        from auditvault.workers.tasks import run_audit_batch

        service, engine = patched_service
        job_id = uuid.uuid4()
        service.run_batch.return_value = _snapshot(job_id)

        result = run_audit_batch.run(job_id=str(job_id), max_files=3)

        service.run_batch.assert_awaited_once_with(job_id, 3)
        assert result["job_id"] == str(job_id)
        assert result["status"] == "running"
        assert result["processed_files"] == 2
        assert "report" not in result
        engine.dispose.assert_awaited_once()

    def test_run_audit_batch_unknown_job(self, patched_service):
        from auditvault.workers.tasks import run_audit_batch

        service, _ = patched_service
        service.run_batch.return_value = None
        job_id = uuid.uuid4()

        assert run_audit_batch.run(job_id=str(job_id)) == {"status": "not_found", "job_id": str(job_id)}

    def test_advance_audit_jobs(self, patched_service):
        from auditvault.core.config import settings
        from auditvault.workers.tasks import advance_audit_jobs

        service, engine = patched_service

        assert advance_audit_jobs.run() == {"advanced": 3}
        service.advance_active_jobs.assert_awaited_once_with(
            limit=settings.auto_advance_limit,
            max_files=settings.batch_max_files,
        )
        engine.dispose.assert_awaited_once()

    def test_health_check(self):
        from auditvault.workers.tasks import health_check
        assert health_check.run() == {"status": "ok", "worker": "healthy"}


@pytest.mark.unit
@pytest.mark.workers
class TestCeleryConfig:

    def test_beat_schedule(self):
        from auditvault.core.config import settings
        from auditvault.workers.celery_app import celery_app

        entry = celery_app.conf.beat_schedule["advance-audit-jobs"]
        assert entry["task"] == "auditvault.workers.tasks.advance_audit_jobs"
        assert entry["schedule"] == settings.auto_advance_interval_seconds

    def test_routes(self):
        from auditvault.workers.celery_app import TASK_ROUTES

        assert TASK_ROUTES["auditvault.workers.tasks.run_audit_batch"] == {"queue": "audit.batches"}
        assert TASK_ROUTES["auditvault.workers.tasks.advance_audit_jobs"] == {"queue": "audit.sweep"}

    def test_json_only(self):
        from auditvault.workers.celery_app import celery_app

        assert celery_app.conf.accept_content == ["json"]
        assert celery_app.conf.task_acks_late is True
