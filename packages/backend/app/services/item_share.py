from __future__ import annotations

import datetime
import logging
import uuid
from dataclasses import dataclass

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import ActivityDetail, AuditLogAction
from app.models.item_share import ItemShare
from app.models.user import User, UserStatus
from app.models.vault_item import VaultItem
from app.schemas.item_share import (
    CreateItemShareRequest,
    ReShareRequest,
    UpdateSharedItemRequest,
    UpdateSharePermissionsRequest,
)
from app.services.activity import build_audit_log
from app.services.email import (
    EmailDeliveryError,
    EmailSender,
    build_share_invitation,
    build_share_notification,
)


logger = logging.getLogger(__name__)


class ItemShareNotFoundError(Exception):
    pass


class ItemShareForbiddenError(Exception):
    pass


class ItemShareValidationError(Exception):
    pass


class ItemShareConflictError(Exception):
    pass


@dataclass(frozen=True)
class SharePermissions:
    can_view: bool
    can_edit: bool
    can_share: bool

    @classmethod
    def of(cls, share: ItemShare) -> "SharePermissions":
        return cls(can_view=bool(share.can_view), can_edit=bool(share.can_edit), can_share=bool(share.can_share))

    def clamp_to(self, parent: "SharePermissions") -> "SharePermissions":
        return SharePermissions(
            can_view=self.can_view and parent.can_view,
            can_edit=self.can_edit and parent.can_edit,
            can_share=self.can_share and parent.can_share,
        )

    def as_details(self) -> dict[str, bool]:
        return {"can_view": self.can_view, "can_edit": self.can_edit, "can_share": self.can_share}


@dataclass(frozen=True)
class ShareInvitationSent:
    """Outcome of sharing with an address that has no account: nothing was stored."""

    email: str


@dataclass(frozen=True)
class ItemShareView:
    share: ItemShare
    item: VaultItem | None
    recipient_email: str | None
    include_key: bool
    expired: bool


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _normalize_uuid(value: object) -> str:
    return str(value).replace("-", "").lower()


def _uuid_match(column: object, value: object):
    return func.lower(func.replace(column, "-", "")) == _normalize_uuid(value)


def _uuids_equal(left: object, right: object) -> bool:
    if left is None or right is None:
        return False
    return _normalize_uuid(left) == _normalize_uuid(right)


def _to_utc_datetime(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def _earliest(*values: datetime.datetime | None) -> datetime.datetime | None:
    present = [_to_utc_datetime(value) for value in values if value is not None]
    return min(present) if present else None


def resolve_permissions(
    *,
    can_view: bool | None,
    can_edit: bool | None,
    can_share: bool | None,
) -> SharePermissions:
    if can_view is False:
        raise ItemShareValidationError("can_view cannot be disabled on a share")
    # Edit and re-share both imply view.
    return SharePermissions(can_view=True, can_edit=bool(can_edit), can_share=bool(can_share))


def _validate_expiry(expires_at: datetime.datetime | None, now: datetime.datetime) -> datetime.datetime | None:
    normalized = _to_utc_datetime(expires_at)
    if normalized is not None and normalized <= now:
        raise ItemShareValidationError("expires_at must be in the future")
    return normalized


async def _get_share(db: AsyncSession, share_id: object) -> ItemShare:
    share = (
        await db.execute(select(ItemShare).where(_uuid_match(ItemShare.id, share_id)))
    ).scalar_one_or_none()
    if share is None:
        raise ItemShareNotFoundError("share not found")
    return share


async def _get_live_item(db: AsyncSession, item_id: object) -> VaultItem:
    item = (
        await db.execute(
            select(VaultItem).where(
                _uuid_match(VaultItem.id, item_id),
                VaultItem.deleted_at.is_(None),
            )
        )
    ).scalar_one_or_none()
    if item is None:
        raise ItemShareNotFoundError("item not found")
    return item


async def _find_active_user(db: AsyncSession, user_id: object) -> User | None:
    return (
        await db.execute(
            select(User).where(
                _uuid_match(User.id, user_id),
                User.status == UserStatus.ACTIVE,
            )
        )
    ).scalar_one_or_none()


async def _find_received_share(db: AsyncSession, *, item_id: object, recipient_id: object) -> ItemShare | None:
    return (
        await db.execute(
            select(ItemShare).where(
                _uuid_match(ItemShare.item_id, item_id),
                _uuid_match(ItemShare.shared_with_user_id, recipient_id),
            )
        )
    ).scalar_one_or_none()


async def _resolve_recipient(
    db: AsyncSession,
    *,
    user_id: uuid.UUID | None,
    email: str | None,
) -> User | str:
    """Return the registered recipient, or the normalized address when nobody owns it yet."""
    normalized_email = (email or "").strip().lower()
    if user_id is not None and normalized_email:
        raise ItemShareValidationError("provide either shared_with_user_id or shared_with_email, not both")
    if user_id is None and not normalized_email:
        raise ItemShareValidationError("a recipient user id or email is required")

    if user_id is not None:
        recipient = await _find_active_user(db, user_id)
        if recipient is None:
            raise ItemShareNotFoundError("recipient not found")
        return recipient

    local_part, _, domain = normalized_email.partition("@")
    if not local_part or "." not in domain:
        raise ItemShareValidationError("recipient email is invalid")
    recipient = (
        await db.execute(
            select(User).where(
                func.lower(User.email) == normalized_email,
                User.status == UserStatus.ACTIVE,
            )
        )
    ).scalar_one_or_none()
    return recipient if recipient is not None else normalized_email


async def _send_share_invitation(
    db: AsyncSession,
    *,
    current_user: User,
    item: VaultItem,
    email: str,
    email_sender: EmailSender,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime,
) -> ShareInvitationSent:
    subject, body = build_share_invitation(sender_name=current_user.name, item_name=item.name)
    await email_sender.send_email(recipient_email=email, subject=subject, html_body=body)

    db.add(
        build_audit_log(
            org_id=current_user.org_id,
            actor_id=current_user.id,
            action=AuditLogAction.SHARE_INVITE_SENT,
            target_id=item.id,
            ip_address=client_ip,
            user_agent=user_agent,
            details={ActivityDetail.RECIPIENT: email},
            timestamp=now,
        )
    )
    await db.commit()
    logger.info("share invitation sent for item %s to an unregistered address", item.id)
    return ShareInvitationSent(email=email)


async def _notify_recipient(
    *,
    email_sender: EmailSender,
    sharer: User,
    recipient: User,
    item: VaultItem,
) -> None:
    subject, body = build_share_notification(sender_name=sharer.name, item_name=item.name)
    try:
        await email_sender.send_email(recipient_email=recipient.email, subject=subject, html_body=body)
    except EmailDeliveryError:
        logger.warning("share notification to user %s was not delivered", recipient.id, exc_info=True)


async def _store_share(
    db: AsyncSession,
    *,
    current_user: User,
    item: VaultItem,
    parent: ItemShare | None,
    recipient: User,
    permissions: SharePermissions,
    encrypted_key: str,
    expires_at: datetime.datetime | None,
    email_sender: EmailSender,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime,
) -> ItemShare:
    if _uuids_equal(recipient.id, current_user.id):
        raise ItemShareValidationError("cannot share an item with yourself")
    if item.is_owned_by(recipient.id):
        raise ItemShareValidationError("recipient already owns this item")
    wrapped_key = encrypted_key.strip()
    if not wrapped_key:
        raise ItemShareValidationError("encrypted_key is required")

    if parent is not None:
        permissions = permissions.clamp_to(SharePermissions.of(parent))
        expires_at = _earliest(expires_at, parent.expires_at)

    if await _find_received_share(db, item_id=item.id, recipient_id=recipient.id) is not None:
        raise ItemShareConflictError("item is already shared with this recipient")

    share = ItemShare(
        id=uuid.uuid4(),
        item_id=item.id,
        owner_id=item.owner_id,
        shared_by_id=current_user.id,
        shared_with_user_id=recipient.id,
        parent_share_id=parent.id if parent is not None else None,
        can_view=permissions.can_view,
        can_edit=permissions.can_edit,
        can_share=permissions.can_share,
        encrypted_key=wrapped_key,
        expires_at=expires_at,
        created_at=now,
        updated_at=now,
    )
    db.add(share)
    db.add(
        build_audit_log(
            org_id=current_user.org_id,
            actor_id=current_user.id,
            action=AuditLogAction.RESHARE_ITEM if parent is not None else AuditLogAction.SHARE_ITEM,
            target_id=share.id,
            ip_address=client_ip,
            user_agent=user_agent,
            details={
                ActivityDetail.RECIPIENT: str(recipient.id),
                ActivityDetail.PERMISSIONS: permissions.as_details(),
            },
            timestamp=now,
        )
    )
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise ItemShareConflictError("item is already shared with this recipient") from exc

    await _notify_recipient(email_sender=email_sender, sharer=current_user, recipient=recipient, item=item)
    return share


async def create_item_share(
    db: AsyncSession,
    *,
    current_user: User,
    payload: CreateItemShareRequest,
    email_sender: EmailSender,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> ItemShare | ShareInvitationSent:
    current_time = now or _utc_now()
    expires_at = _validate_expiry(payload.expires_at, current_time)
    permissions = resolve_permissions(
        can_view=payload.can_view,
        can_edit=payload.can_edit,
        can_share=payload.can_share,
    )
    item = await _get_live_item(db, payload.item_id)

    parent: ItemShare | None = None
    if not item.is_owned_by(current_user.id):
        parent = await _find_received_share(db, item_id=item.id, recipient_id=current_user.id)
        if parent is None or parent.is_expired(current_time) or not parent.can_share:
            raise ItemShareForbiddenError("not allowed to share this item")

    recipient = await _resolve_recipient(
        db,
        user_id=payload.shared_with_user_id,
        email=payload.shared_with_email,
    )
    if isinstance(recipient, str):
        return await _send_share_invitation(
            db,
            current_user=current_user,
            item=item,
            email=recipient,
            email_sender=email_sender,
            client_ip=client_ip,
            user_agent=user_agent,
            now=current_time,
        )

    return await _store_share(
        db,
        current_user=current_user,
        item=item,
        parent=parent,
        recipient=recipient,
        permissions=permissions,
        encrypted_key=payload.encrypted_key,
        expires_at=expires_at,
        email_sender=email_sender,
        client_ip=client_ip,
        user_agent=user_agent,
        now=current_time,
    )


async def reshare_item(
    db: AsyncSession,
    *,
    current_user: User,
    share_id: uuid.UUID,
    payload: ReShareRequest,
    email_sender: EmailSender,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> ItemShare | ShareInvitationSent:
    current_time = now or _utc_now()
    parent = await _get_share(db, share_id)
    if parent.is_expired(current_time):
        raise ItemShareNotFoundError("share not found")
    if not _uuids_equal(parent.shared_with_user_id, current_user.id):
        raise ItemShareForbiddenError("only the recipient of a share can re-share it")
    if not parent.can_share:
        raise ItemShareForbiddenError("share does not allow re-sharing")

    expires_at = _validate_expiry(payload.expires_at, current_time)
    permissions = resolve_permissions(
        can_view=payload.can_view,
        can_edit=payload.can_edit,
        can_share=payload.can_share,
    )
    item = await _get_live_item(db, parent.item_id)
    recipient = await _resolve_recipient(
        db,
        user_id=payload.shared_with_user_id,
        email=payload.shared_with_email,
    )
    if isinstance(recipient, str):
        return await _send_share_invitation(
            db,
            current_user=current_user,
            item=item,
            email=recipient,
            email_sender=email_sender,
            client_ip=client_ip,
            user_agent=user_agent,
            now=current_time,
        )

    return await _store_share(
        db,
        current_user=current_user,
        item=item,
        parent=parent,
        recipient=recipient,
        permissions=permissions,
        encrypted_key=payload.encrypted_key,
        expires_at=expires_at,
        email_sender=email_sender,
        client_ip=client_ip,
        user_agent=user_agent,
        now=current_time,
    )


async def _collect_descendants(db: AsyncSession, share: ItemShare) -> list[ItemShare]:
    descendants: list[ItemShare] = []
    frontier = [share.id]
    while frontier:
        parent_id = frontier.pop()
        children = (
            await db.execute(select(ItemShare).where(_uuid_match(ItemShare.parent_share_id, parent_id)))
        ).scalars().all()
        descendants.extend(children)
        frontier.extend(child.id for child in children)
    return descendants


async def update_share_permissions(
    db: AsyncSession,
    *,
    current_user: User,
    share_id: uuid.UUID,
    payload: UpdateSharePermissionsRequest,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> ItemShare:
    current_time = now or _utc_now()
    share = await _get_share(db, share_id)
    if not _uuids_equal(share.owner_id, current_user.id):
        raise ItemShareForbiddenError("only the item owner can change share permissions")
    if payload.clear_expires_at and payload.expires_at is not None:
        raise ItemShareValidationError("expires_at and clear_expires_at cannot be combined")
    expires_at = _validate_expiry(payload.expires_at, current_time)

    if payload.can_edit is not None:
        share.can_edit = payload.can_edit
    if payload.can_share is not None:
        share.can_share = payload.can_share
    share.can_view = True
    if payload.clear_expires_at:
        share.expires_at = None
    elif expires_at is not None:
        share.expires_at = expires_at
    share.updated_at = current_time

    if share.parent_share_id is not None:
        _clamp_to_parent(share, await _get_share(db, share.parent_share_id))
    await _clamp_descendants(db, share, current_time)
    db.add(
        build_audit_log(
            org_id=current_user.org_id,
            actor_id=current_user.id,
            action=AuditLogAction.UPDATE_SHARE,
            target_id=share.id,
            ip_address=client_ip,
            user_agent=user_agent,
            details={ActivityDetail.PERMISSIONS: SharePermissions.of(share).as_details()},
            timestamp=current_time,
        )
    )
    await db.commit()
    return share


def _clamp_to_parent(share: ItemShare, parent: ItemShare) -> None:
    clamped = SharePermissions.of(share).clamp_to(SharePermissions.of(parent))
    share.can_view = clamped.can_view
    share.can_edit = clamped.can_edit
    share.can_share = clamped.can_share
    share.expires_at = _earliest(share.expires_at, parent.expires_at)


async def _clamp_descendants(db: AsyncSession, share: ItemShare, now: datetime.datetime) -> None:
    """Re-shares may never hold more than the share they came from."""
    frontier = [share]
    while frontier:
        parent = frontier.pop()
        children = (
            await db.execute(select(ItemShare).where(_uuid_match(ItemShare.parent_share_id, parent.id)))
        ).scalars().all()
        for child in children:
            _clamp_to_parent(child, parent)
            child.updated_at = now
            frontier.append(child)


async def revoke_item_share(
    db: AsyncSession,
    *,
    current_user: User,
    share_id: uuid.UUID,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> None:
    current_time = now or _utc_now()
    share = await _get_share(db, share_id)
    if not _uuids_equal(share.owner_id, current_user.id):
        raise ItemShareForbiddenError("only the item owner can revoke a share")

    descendants = await _collect_descendants(db, share)
    for child in reversed(descendants):
        await db.delete(child)
    await db.delete(share)
    db.add(
        build_audit_log(
            org_id=current_user.org_id,
            actor_id=current_user.id,
            action=AuditLogAction.REVOKE_SHARE,
            target_id=share.id,
            ip_address=client_ip,
            user_agent=user_agent,
            details={ActivityDetail.RECIPIENT: str(share.shared_with_user_id)},
            timestamp=current_time,
        )
    )
    await db.commit()


async def get_item_share(
    db: AsyncSession,
    *,
    current_user: User,
    share_id: uuid.UUID,
    now: datetime.datetime | None = None,
) -> ItemShareView:
    current_time = now or _utc_now()
    share = await _get_share(db, share_id)
    if share.is_expired(current_time):
        raise ItemShareNotFoundError("share not found")

    is_owner = _uuids_equal(share.owner_id, current_user.id)
    is_recipient = _uuids_equal(share.shared_with_user_id, current_user.id)
    if not is_owner and not is_recipient:
        raise ItemShareForbiddenError("not allowed to view this share")

    item = await _get_live_item(db, share.item_id)
    recipient = current_user if is_recipient else await _find_active_user(db, share.shared_with_user_id)
    return ItemShareView(
        share=share,
        item=item,
        recipient_email=recipient.email if recipient is not None else None,
        # The owner already holds the item key under their own wrapping.
        include_key=is_recipient and not is_owner,
        expired=False,
    )


async def list_owned_shares(
    db: AsyncSession,
    *,
    current_user: User,
    now: datetime.datetime | None = None,
) -> list[ItemShareView]:
    current_time = now or _utc_now()
    shares = list(
        (
            await db.execute(
                select(ItemShare)
                .where(_uuid_match(ItemShare.owner_id, current_user.id))
                .order_by(ItemShare.created_at.desc(), ItemShare.id.desc())
            )
        ).scalars().all()
    )
    recipients = await _load_users(db, [share.shared_with_user_id for share in shares])
    return [
        ItemShareView(
            share=share,
            item=None,
            recipient_email=recipients.get(_normalize_uuid(share.shared_with_user_id)),
            include_key=False,
            expired=share.is_expired(current_time),
        )
        for share in shares
    ]


async def list_received_shares(
    db: AsyncSession,
    *,
    current_user: User,
    now: datetime.datetime | None = None,
) -> list[ItemShareView]:
    current_time = now or _utc_now()
    shares = (
        await db.execute(
            select(ItemShare)
            .where(_uuid_match(ItemShare.shared_with_user_id, current_user.id))
            .order_by(ItemShare.created_at.desc(), ItemShare.id.desc())
        )
    ).scalars().all()

    views: list[ItemShareView] = []
    for share in shares:
        if share.is_expired(current_time):
            continue
        try:
            item = await _get_live_item(db, share.item_id)
        except ItemShareNotFoundError:
            continue
        views.append(
            ItemShareView(
                share=share,
                item=item,
                recipient_email=current_user.email,
                include_key=True,
                expired=False,
            )
        )
    return views


async def _load_users(db: AsyncSession, user_ids: list[uuid.UUID]) -> dict[str, str]:
    wanted = {_normalize_uuid(user_id) for user_id in user_ids}
    if not wanted:
        return {}
    users = (
        await db.execute(select(User).where(func.lower(func.replace(User.id, "-", "")).in_(wanted)))
    ).scalars().all()
    return {_normalize_uuid(user.id): user.email for user in users}


async def update_shared_item(
    db: AsyncSession,
    *,
    current_user: User,
    share_id: uuid.UUID,
    payload: UpdateSharedItemRequest,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> VaultItem:
    current_time = now or _utc_now()
    share = await _get_share(db, share_id)
    if share.is_expired(current_time):
        raise ItemShareNotFoundError("share not found")
    if not _uuids_equal(share.shared_with_user_id, current_user.id):
        raise ItemShareForbiddenError("only the recipient can edit through a share")
    if not share.can_edit:
        raise ItemShareForbiddenError("share does not allow editing")

    item = await _get_live_item(db, share.item_id)
    item.replace_content(encrypted_data=payload.encrypted_data, name=payload.name, now=current_time)
    db.add(
        build_audit_log(
            org_id=current_user.org_id,
            actor_id=current_user.id,
            action=AuditLogAction.EDIT_SHARED_ITEM,
            target_id=item.id,
            ip_address=client_ip,
            user_agent=user_agent,
            details={"share_id": str(share.id)},
            timestamp=current_time,
        )
    )
    await db.commit()
    return item
