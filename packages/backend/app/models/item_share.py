from __future__ import annotations

import datetime
import uuid

from sqlalchemy import Boolean, DateTime, ForeignKey, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


def _as_utc(value: datetime.datetime) -> datetime.datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=datetime.UTC)


class ItemShare(Base):
    __tablename__ = "item_shares"
    __table_args__ = (
        UniqueConstraint("item_id", "shared_with_user_id", name="uq_item_shares_item_recipient"),
    )

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    item_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("vault_items.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    shared_by_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )
    shared_with_user_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    parent_share_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("item_shares.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
    )
    can_view: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="1")
    can_edit: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    can_share: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="0")
    # Item key wrapped under the recipient's public key; opaque to the server.
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
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

    def is_expired(self, now: datetime.datetime) -> bool:
        return self.expires_at is not None and _as_utc(self.expires_at) <= now
