from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.db.session import get_session_factory
from app.models.audit_log import AuditLog, AuditLogAction


logger = logging.getLogger(__name__)

SYSTEM_IP = "0.0.0.0"


def build_audit_log(
    *,
    org_id: uuid.UUID,
    actor_id: uuid.UUID | None,
    action: AuditLogAction,
    target_id: uuid.UUID | None,
    ip_address: str,
    user_agent: str,
    details: dict[str, object] | None = None,
    timestamp: datetime.datetime | None = None,
) -> AuditLog:
    return AuditLog(
        org_id=org_id,
        actor_id=actor_id,
        action=action,
        target_id=target_id,
        ip_address=ip_address,
        user_agent=user_agent,
        geo_location="unknown",
        details=dict(details or {}),
        timestamp=timestamp or datetime.datetime.now(datetime.UTC),
    )


@dataclass
class ActivityLogger:
    """Writes activity rows in their own session.

    Used where the primary change is already committed (or lives at a provider), so a failed
    write is logged and dropped instead of failing the caller.
    """

    session_factory: async_sessionmaker[AsyncSession]

    async def log_custom_activity(
        self,
        *,
        org_id: uuid.UUID,
        actor_id: uuid.UUID | None,
        action: AuditLogAction,
        ip_address: str,
        user_agent: str,
        details: dict[str, object] | None = None,
        target_id: uuid.UUID | None = None,
    ) -> None:
        entry = build_audit_log(
            org_id=org_id,
            actor_id=actor_id,
            action=action,
            target_id=target_id,
            ip_address=ip_address,
            user_agent=user_agent,
            details=details,
        )
        try:
            async with self.session_factory() as session:
                session.add(entry)
                await session.commit()
        except SQLAlchemyError:
            logger.exception("failed to record activity %s for org %s", action.value, org_id)


def get_activity_logger() -> ActivityLogger:
    return ActivityLogger(session_factory=get_session_factory())
