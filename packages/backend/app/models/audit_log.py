from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class AuditLogAction(str, enum.Enum):
    SHARE_ITEM = "share_item"
    RESHARE_ITEM = "reshare_item"
    UPDATE_SHARE = "update_share"
    REVOKE_SHARE = "revoke_share"
    EDIT_SHARED_ITEM = "edit_shared_item"
    SHARE_INVITE_SENT = "share_invite_sent"
    CHECKOUT_CREATED = "checkout_created"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_REACTIVATED = "subscription_reactivated"
    SUBSCRIPTION_SEATS_UPDATED = "subscription_seats_updated"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    MANUAL_GRANT = "manual_grant"
    MANUAL_REVOKE = "manual_revoke"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    BULK_EMAIL_QUEUED = "bulk_email_queued"


class ActivityDetail:
    ORGANIZATION_ID = "organization_id"
    ORGANIZATION_NAME = "organization_name"
    OLD_PLAN = "old_plan"
    NEW_PLAN = "new_plan"
    PLAN = "plan"
    BILLING_CYCLE = "billing_cycle"
    STATUS = "status"
    REASON = "reason"
    SUBSCRIPTION_ID = "subscription_id"
    SEATS_BEFORE = "seats_before"
    SEATS_AFTER = "seats_after"
    ENDS_AT = "ends_at"
    SOURCE = "source"
    RECIPIENT = "recipient"
    PERMISSIONS = "permissions"


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )
    actor_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )
    action: Mapped[AuditLogAction] = mapped_column(
        Enum(AuditLogAction, name="audit_log_action", native_enum=True),
        nullable=False,
    )
    target_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    ip_address: Mapped[str] = mapped_column(String(45), nullable=False)
    user_agent: Mapped[str] = mapped_column(Text, nullable=False)
    geo_location: Mapped[str] = mapped_column(String(255), nullable=False)
    details: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False, default=dict)
    timestamp: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
