"""
Celery Application Factory

Server-side driver for audit jobs. A job never needs a worker for its
whole lifetime: every task is one short run_batch call, and all state is
in PostgreSQL. The beat schedule advances every non-terminal job on a
fixed interval, so jobs progress even when no browser is polling.

Queue topology:
  audit.batches   — on-demand run_audit_batch calls
  audit.sweep     — beat-driven advance_audit_jobs sweeps
  system.health   — internal health-check tasks

Task payloads carry job ids only, never document bytes.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import task_failure, task_postrun, task_prerun
from kombu import Exchange, Queue

from auditvault.core.config import settings

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Queue and exchange definitions
# ---------------------------------------------------------------------------

AUDIT_EXCHANGE = Exchange("audit", type="direct", durable=True)

TASK_QUEUES = (
    Queue(
        "audit.batches",
        exchange=AUDIT_EXCHANGE,
        routing_key="audit.batches",
        durable=True,
    ),
    Queue(
        "audit.sweep",
        exchange=AUDIT_EXCHANGE,
        routing_key="audit.sweep",
        durable=True,
    ),
    Queue(
        "system.health",
        Exchange("system", type="direct"),
        routing_key="system.health",
        durable=True,
    ),
)

TASK_ROUTES = {
    "auditvault.workers.tasks.run_audit_batch":    {"queue": "audit.batches"},
    "auditvault.workers.tasks.advance_audit_jobs": {"queue": "audit.sweep"},
    "auditvault.workers.tasks.health_check":       {"queue": "system.health"},
}

# ---------------------------------------------------------------------------
# Celery app factory
# ---------------------------------------------------------------------------

def create_celery_app() -> Celery:
    app = Celery("audit_vault")

    app.conf.update(
        # --- Broker / Backend ---
        broker_url=settings.celery_broker_url,
        result_backend=settings.celery_result_backend,

        # --- Serialization (reject non-JSON messages) ---
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        event_serializer="json",

        # --- Queues ---
        task_queues=TASK_QUEUES,
        task_routes=TASK_ROUTES,
        task_default_queue="audit.batches",
        task_default_exchange="audit",
        task_default_routing_key="audit.batches",

        # --- Reliability ---
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,

        # --- Timeouts: one batch = max files × per-file timeout + synthesis ---
        task_soft_time_limit=settings.batch_max_files * int(settings.per_file_timeout_seconds)
        + settings.stale_synthesis_seconds,
        task_time_limit=settings.batch_max_files * int(settings.per_file_timeout_seconds)
        + settings.stale_synthesis_seconds + 60,

        # --- Result TTL: state lives in PostgreSQL, not Celery results ---
        result_expires=3600,

        # --- Timezone ---
        timezone="UTC",
        enable_utc=True,

        # --- Beat schedule (auto-advance driver) ---
        beat_schedule={
            "advance-audit-jobs": {
                "task":     "auditvault.workers.tasks.advance_audit_jobs",
                "schedule": settings.auto_advance_interval_seconds,
                "options":  {"queue": "audit.sweep", "expires": settings.auto_advance_interval_seconds * 2},
            },
        },

        # --- Worker ---
        worker_max_tasks_per_child=200,
    )

    app.autodiscover_tasks(["auditvault.workers"])

    return app


celery_app = create_celery_app()


# ---------------------------------------------------------------------------
# Celery signals — task lifecycle logging
# ---------------------------------------------------------------------------

@task_prerun.connect
def on_task_prerun(task_id, task, args, kwargs, **_):
    logger.info(
        "Task start | task_id=%s task=%s job=%s",
        task_id, task.name, (kwargs or {}).get("job_id", "-"),
    )


@task_postrun.connect
def on_task_postrun(task_id, task, args, kwargs, retval, state, **_):
    logger.info(
        "Task end | task_id=%s task=%s state=%s job=%s",
        task_id, task.name, state, (kwargs or {}).get("job_id", "-"),
    )


@task_failure.connect
def on_task_failure(task_id, exception, args, kwargs, traceback, einfo, **_):
    logger.error(
        "Task failed | task_id=%s job=%s error=%s",
        task_id, (kwargs or {}).get("job_id", "-"), exception,
        exc_info=True,
    )
