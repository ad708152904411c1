from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class SubscriptionState(str, enum.Enum):
    DRAFT = "draft"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    EXPIRED = "expired"


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=datetime.UTC)


class Subscription(Base):
    """One row per organization (``org_id``) or per user for store purchases (``user_id``).

    Both provider ids empty means the row is managed by hand; for those rows ``renew_at`` holds
    the grant's end date rather than a renewal date.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    org_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    user_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=True,
        unique=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    state: Mapped[SubscriptionState] = mapped_column(
        Enum(SubscriptionState, name="subscription_state", native_enum=True),
        nullable=False,
        default=SubscriptionState.DRAFT,
    )
    seats_purchased: Mapped[int | None] = mapped_column(nullable=True)
    started_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    renew_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    cancel_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    ended_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    grace_period_ends_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    trial_ends_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    store_subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    provider_event_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    created_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime.datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        server_default=func.now(),
    )

    def is_active(self) -> bool:
        return self.state in (
            SubscriptionState.ACTIVE,
            SubscriptionState.TRIALING,
            SubscriptionState.PAST_DUE,
        )

    def can_write(self) -> bool:
        return self.state != SubscriptionState.EXPIRED

    def is_stripe_managed(self) -> bool:
        return bool(self.stripe_subscription_id)

    def is_provider_managed(self) -> bool:
        return bool(self.stripe_subscription_id) or bool(self.store_subscription_id)

    def is_manual(self) -> bool:
        return not self.is_provider_managed()

    def is_in_grace_period(self, now: datetime.datetime) -> bool:
        grace_end = _as_utc(self.grace_period_ends_at)
        return self.state == SubscriptionState.PAST_DUE and grace_end is not None and now < grace_end

    def should_expire(self, now: datetime.datetime) -> bool:
        grace_end = _as_utc(self.grace_period_ends_at)
        renew_at = _as_utc(self.renew_at)
        if self.state == SubscriptionState.PAST_DUE:
            return grace_end is not None and now > grace_end
        if self.state == SubscriptionState.CANCELED:
            return renew_at is not None and now > renew_at
        if self.state == SubscriptionState.ACTIVE and self.is_manual():
            return renew_at is not None and now > renew_at
        return False
