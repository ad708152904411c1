from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field


class CreateItemShareRequest(BaseModel):
    item_id: uuid.UUID
    shared_with_user_id: uuid.UUID | None = None
    shared_with_email: str | None = Field(default=None, min_length=3, max_length=320)
    can_view: bool | None = None
    can_edit: bool | None = None
    can_share: bool | None = None
    encrypted_key: str = Field(default="", max_length=16384)
    expires_at: datetime.datetime | None = None


class ReShareRequest(BaseModel):
    shared_with_user_id: uuid.UUID | None = None
    shared_with_email: str | None = Field(default=None, min_length=3, max_length=320)
    can_view: bool | None = None
    can_edit: bool | None = None
    can_share: bool | None = None
    encrypted_key: str = Field(default="", max_length=16384)
    expires_at: datetime.datetime | None = None


class UpdateSharePermissionsRequest(BaseModel):
    can_edit: bool | None = None
    can_share: bool | None = None
    expires_at: datetime.datetime | None = None
    # Distinct from omitting expires_at, which leaves the expiry unchanged.
    clear_expires_at: bool = False


class UpdateSharedItemRequest(BaseModel):
    encrypted_data: str = Field(min_length=1)
    name: str = Field(min_length=1, max_length=255)


class SharedItemResponse(BaseModel):
    id: uuid.UUID
    type: str
    name: str
    encrypted_data: str
    updated_at: datetime.datetime

    @classmethod
    def from_item(cls, item: Any) -> "SharedItemResponse":
        return cls(
            id=item.id,
            type=item.type.value if hasattr(item.type, "value") else str(item.type).lower(),
            name=item.name,
            encrypted_data=item.encrypted_data,
            updated_at=item.updated_at,
        )


class ItemShareResponse(BaseModel):
    id: uuid.UUID
    item_id: uuid.UUID
    owner_id: uuid.UUID
    shared_by_id: uuid.UUID
    shared_with_user_id: uuid.UUID
    shared_with_email: str | None = None
    parent_share_id: uuid.UUID | None = None
    can_view: bool
    can_edit: bool
    can_share: bool
    expires_at: datetime.datetime | None = None
    expired: bool = False
    created_at: datetime.datetime
    updated_at: datetime.datetime
    encrypted_key: str | None = None
    item: SharedItemResponse | None = None

    @classmethod
    def from_view(cls, view: Any) -> "ItemShareResponse":
        share = view.share
        return cls(
            id=share.id,
            item_id=share.item_id,
            owner_id=share.owner_id,
            shared_by_id=share.shared_by_id,
            shared_with_user_id=share.shared_with_user_id,
            shared_with_email=view.recipient_email,
            parent_share_id=share.parent_share_id,
            can_view=bool(share.can_view),
            can_edit=bool(share.can_edit),
            can_share=bool(share.can_share),
            expires_at=share.expires_at,
            expired=view.expired,
            created_at=share.created_at,
            updated_at=share.updated_at,
            encrypted_key=share.encrypted_key if view.include_key else None,
            item=SharedItemResponse.from_item(view.item) if view.item is not None else None,
        )


class ItemShareListResponse(BaseModel):
    items: list[ItemShareResponse]


class ShareInvitationResponse(BaseModel):
    invitation_sent: bool = True
    email: str
