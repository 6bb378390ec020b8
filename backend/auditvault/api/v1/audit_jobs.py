"""
Audit Jobs API Router

  POST /api/v1/audit-jobs                 createJob   → 201 {job_id, total_files}
  POST /api/v1/audit-jobs/{id}/run        runBatch    → 200 JobSnapshot
  POST /api/v1/audit-jobs/{id}/cancel     cancel      → 200 {accepted}
  GET  /api/v1/audit-jobs/{id}            getStatus   → 200 JobSnapshot
  GET  /api/v1/audit-jobs/{id}/files      per-item    → 200 [JobFileSnapshot]

Polling contract:
  The client calls /run every few seconds until `status` is terminal and
  renders `current_step` + `progress`. /cancel may be called at any time;
  it is honoured by the next /run, not immediately.

Unknown ids answer 404 JOB_NOT_FOUND on run/status/files and
{"accepted": false} on cancel. A /run on a terminal job returns the same
snapshot again.
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Body, status
from fastapi.responses import JSONResponse

from auditvault.api.dependencies import AuditService
from auditvault.schemas.jobs import (
    CancelResponse,
    CreateJobRequest,
    ErrorResponse,
    JobCreatedResponse,
    JobErrors,
    JobFileSnapshot,
    JobSnapshot,
    RunBatchRequest,
)

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/audit-jobs",
    tags=["Audit Jobs"],
)


def _not_found(job_id: UUID) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=JobErrors.job_not_found(job_id).model_dump(mode="json"),
    )


# ---------------------------------------------------------------------------
# POST /audit-jobs
# ---------------------------------------------------------------------------

@router.post(
    "",
    response_model=JobCreatedResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create an audit job over a snapshot of documents",
    responses={
        201: {"model": JobCreatedResponse, "description": "Job created; start polling /run"},
        422: {"model": ErrorResponse, "description": "Invalid document list"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
)
async def create_audit_job(body: CreateJobRequest, service: AuditService) -> JSONResponse:
    created = await service.create_job(
        body.documents,
        vault_id=body.vault_id,
        created_by=body.created_by,
    )
    return JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=created.model_dump(mode="json"),
        headers={"Location": f"/api/v1/audit-jobs/{created.job_id}"},
    )


# ---------------------------------------------------------------------------
# POST /audit-jobs/{job_id}/run
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/run",
    response_model=JobSnapshot,
    summary="Process the next batch of files",
    description=(
        "Claims up to max_files pending files, extracts them, and synthesizes "
        "the report once every file is processed. Safe to call concurrently."
    ),
    responses={
        200: {"model": JobSnapshot},
        404: {"model": ErrorResponse},
    },
)
async def run_audit_batch(
    job_id: UUID,
    service: AuditService,
    body: RunBatchRequest | None = Body(None),
):
    max_files = body.max_files if body is not None else RunBatchRequest().max_files
    snapshot = await service.run_batch(job_id, max_files)
    if snapshot is None:
        return _not_found(job_id)
    return snapshot


# ---------------------------------------------------------------------------
# POST /audit-jobs/{job_id}/cancel
# ---------------------------------------------------------------------------

@router.post(
    "/{job_id}/cancel",
    response_model=CancelResponse,
    summary="Request cooperative cancellation",
    description="Sets the cancel flag; the next /run moves the job to cancelled.",
)
async def cancel_audit_job(job_id: UUID, service: AuditService) -> CancelResponse:
    return await service.cancel(job_id)


# ---------------------------------------------------------------------------
# GET /audit-jobs/{job_id}
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}",
    response_model=JobSnapshot,
    summary="Current job snapshot (read-only)",
    responses={
        200: {"model": JobSnapshot},
        404: {"model": ErrorResponse},
    },
)
async def get_audit_job(job_id: UUID, service: AuditService):
    snapshot = await service.get_status(job_id)
    if snapshot is None:
        return _not_found(job_id)
    return snapshot


# ---------------------------------------------------------------------------
# GET /audit-jobs/{job_id}/files
# ---------------------------------------------------------------------------

@router.get(
    "/{job_id}/files",
    response_model=list[JobFileSnapshot],
    summary="Per-file status, extraction method and category",
    responses={
        200: {"model": list[JobFileSnapshot]},
        404: {"model": ErrorResponse},
    },
)
async def list_audit_job_files(job_id: UUID, service: AuditService):
    files = await service.list_files(job_id)
    if files is None:
        return _not_found(job_id)
    return files
