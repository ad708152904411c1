from __future__ import annotations

import datetime
import enum
import uuid

from sqlalchemy import DateTime, Enum, ForeignKey, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from app.db.base import Base


class VaultItemType(str, enum.Enum):
    LOGIN = "login"
    SECURE_NOTE = "secure_note"
    CREDIT_CARD = "credit_card"
    BANK_ACCOUNT = "bank_account"
    SERVER = "server"
    EMAIL = "email"


class VaultItem(Base):
    """A vault entry. ``encrypted_data`` and ``encrypted_key`` are client ciphertext and are never decrypted here."""

    __tablename__ = "vault_items"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[VaultItemType] = mapped_column(
        Enum(VaultItemType, name="vault_item_type", native_enum=True),
        nullable=False,
    )
    encrypted_data: Mapped[str] = mapped_column(Text, nullable=False)
    encrypted_key: Mapped[str] = mapped_column(Text, nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
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
    deleted_at: Mapped[datetime.datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def is_owned_by(self, user_id: object) -> bool:
        return str(self.owner_id).replace("-", "").lower() == str(user_id).replace("-", "").lower()

    def replace_content(self, *, encrypted_data: str, name: str, now: datetime.datetime) -> None:
        """Swap in new client ciphertext. The item key is unchanged, so every share's wrapped key stays valid."""
        self.encrypted_data = encrypted_data
        self.name = name.strip()
        self.updated_at = now
