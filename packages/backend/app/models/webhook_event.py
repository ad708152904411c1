from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import DateTime, Enum, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class WebhookProvider(str, enum.Enum):
    STRIPE = "stripe"
    REVENUECAT = "revenuecat"


class WebhookEvent(Base):
    """Ledger of verified provider events, one row per (provider, event id)."""

    __tablename__ = "webhook_events"
    __table_args__ = (UniqueConstraint("provider", "event_id", name="uq_webhook_events_provider_event"),)

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    provider: Mapped[WebhookProvider] = mapped_column(
        Enum(WebhookProvider, name="webhook_provider", native_enum=True),
        nullable=False,
    )
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    # Raw provider payload; holds customer contact data so it is stored encrypted.
    payload: Mapped[str] = mapped_column(Text, nullable=False)
    received_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    processed_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @staticmethod
    def encrypted_fields() -> tuple[str, ...]:
        return ("payload",)

    def is_processed(self) -> bool:
        return self.processed_at is not None
