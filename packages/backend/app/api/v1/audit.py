from __future__ import annotations

import uuid
from datetime import datetime

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_admin
from app.core.problems import problem_response
from app.db.session import get_db_session
from app.models.audit_log import AuditLogAction
from app.models.user import User
from app.schemas.audit import AuditLogEntryResponse, AuditLogsPageResponse
from app.services.audit import AuditCategory, AuditFilterError, AuditTrailQuery, list_audit_trail


router = APIRouter(prefix="/api/v1/audit", tags=["audit"])


@router.get("/logs", response_model=AuditLogsPageResponse)
async def get_audit_logs(
    actor_id: uuid.UUID | None = Query(default=None),
    target_id: uuid.UUID | None = Query(default=None),
    action: AuditLogAction | None = Query(default=None),
    category: AuditCategory | None = Query(default=None),
    start_date: datetime | None = Query(default=None),
    end_date: datetime | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=50, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db_session),
) -> AuditLogsPageResponse:
    query = AuditTrailQuery(
        actor_id=actor_id,
        target_id=target_id,
        action=action,
        category=category,
        since=start_date,
        until=end_date,
    )
    try:
        trail = await list_audit_trail(db, current_user=current_user, query=query, page=page, per_page=per_page)
    except AuditFilterError as exc:
        return problem_response(status=400, title="Bad Request", detail=str(exc), slug="invalid-audit-filter")

    return AuditLogsPageResponse(
        items=[AuditLogEntryResponse.from_audit_log(entry) for entry in trail.items],
        total=trail.total,
        page=trail.page,
        per_page=trail.per_page,
    )
