from __future__ import annotations

import datetime
import json
import logging
import uuid
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.webhook_event import WebhookEvent, WebhookProvider
from app.security.field_encryption import encrypt_fields


logger = logging.getLogger(__name__)


class InvalidWebhookPayloadError(Exception):
    pass


class WebhookProcessingError(Exception):
    pass


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str | None
    event_type: str | None
    processed: bool
    duplicate: bool = False


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


async def _find_event(db: AsyncSession, provider: WebhookProvider, event_id: str) -> WebhookEvent | None:
    return (
        await db.execute(
            select(WebhookEvent).where(
                WebhookEvent.provider == provider,
                WebhookEvent.event_id == event_id,
            )
        )
    ).scalar_one_or_none()


async def record_event(
    db: AsyncSession,
    *,
    provider: WebhookProvider,
    event_id: str,
    event_type: str,
    payload: dict[str, Any],
    now: datetime.datetime | None = None,
) -> tuple[WebhookEvent, bool]:
    """Store a verified event once. Returns the row and whether it still needs processing."""
    existing = await _find_event(db, provider, event_id)
    if existing is not None:
        return existing, not existing.is_processed()

    event = WebhookEvent(
        id=uuid.uuid4(),
        provider=provider,
        event_id=event_id,
        event_type=event_type,
        payload=json.dumps(payload, separators=(",", ":"), sort_keys=True),
        received_at=now or _utc_now(),
    )
    if settings.encryption_passphrase:
        encrypt_fields(event, settings.encryption_passphrase)
    db.add(event)
    try:
        await db.commit()
    except IntegrityError:
        # Concurrent redelivery stored it first.
        await db.rollback()
        existing = await _find_event(db, provider, event_id)
        if existing is None:
            raise
        return existing, not existing.is_processed()
    return event, True


async def mark_processed(
    db: AsyncSession,
    event: WebhookEvent,
    *,
    now: datetime.datetime | None = None,
) -> None:
    event.processed_at = now or _utc_now()
    event.error = None
    await db.commit()


async def mark_failed(db: AsyncSession, event: WebhookEvent, *, error: str) -> None:
    provider, event_id = event.provider, event.event_id
    await db.rollback()
    event.error = error[:2000]
    await db.commit()
    logger.error("%s webhook %s failed: %s", provider.value, event_id, error)
