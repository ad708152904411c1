from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field

from app.models.audit_log import AuditLogAction
from app.services.audit import category_of


def _as_action(value: object) -> AuditLogAction:
    if isinstance(value, AuditLogAction):
        return value
    # Raw rows from SQLite carry the member name rather than the value.
    text = str(value).strip().split(".")[-1]
    try:
        return AuditLogAction(text.lower())
    except ValueError:
        return AuditLogAction[text.upper()]


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=datetime.UTC)


class AuditLogEntryResponse(BaseModel):
    id: uuid.UUID
    org_id: uuid.UUID
    actor_id: uuid.UUID | None
    action: str
    category: str | None = None
    target_id: uuid.UUID | None
    ip_address: str
    user_agent: str
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime.datetime

    @classmethod
    def from_audit_log(cls, log: Any) -> "AuditLogEntryResponse":
        action = _as_action(log.action)
        category = category_of(action)
        return cls(
            id=log.id,
            org_id=log.org_id,
            actor_id=log.actor_id,
            action=action.value,
            category=category.value if category is not None else None,
            target_id=log.target_id,
            ip_address=log.ip_address,
            user_agent=log.user_agent,
            details=dict(log.details or {}),
            timestamp=_as_utc(log.timestamp),
        )


class AuditLogsPageResponse(BaseModel):
    items: list[AuditLogEntryResponse]
    total: int
    page: int
    per_page: int
