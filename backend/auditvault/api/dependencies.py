"""
FastAPI dependency aliases.

Routes declare `service: AuditService`; tests swap the implementation via
app.dependency_overrides[get_audit_service].
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends

from auditvault.services.audit_jobs import AuditJobService, get_audit_service

AuditService = Annotated[AuditJobService, Depends(get_audit_service)]
