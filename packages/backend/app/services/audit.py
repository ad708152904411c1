from __future__ import annotations

import datetime
import enum
from dataclasses import dataclass

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog, AuditLogAction
from app.models.user import User


MAX_PAGE_SIZE = 100


class AuditFilterError(Exception):
    pass


class AuditCategory(str, enum.Enum):
    SHARING = "sharing"
    BILLING = "billing"
    MAIL = "mail"


CATEGORY_ACTIONS: dict[AuditCategory, frozenset[AuditLogAction]] = {
    AuditCategory.SHARING: frozenset(
        {
            AuditLogAction.SHARE_ITEM,
            AuditLogAction.RESHARE_ITEM,
            AuditLogAction.UPDATE_SHARE,
            AuditLogAction.REVOKE_SHARE,
            AuditLogAction.EDIT_SHARED_ITEM,
            AuditLogAction.SHARE_INVITE_SENT,
        }
    ),
    AuditCategory.BILLING: frozenset(
        {
            AuditLogAction.CHECKOUT_CREATED,
            AuditLogAction.SUBSCRIPTION_CREATED,
            AuditLogAction.SUBSCRIPTION_UPDATED,
            AuditLogAction.SUBSCRIPTION_CANCELED,
            AuditLogAction.SUBSCRIPTION_REACTIVATED,
            AuditLogAction.SUBSCRIPTION_SEATS_UPDATED,
            AuditLogAction.SUBSCRIPTION_EXPIRED,
            AuditLogAction.MANUAL_GRANT,
            AuditLogAction.MANUAL_REVOKE,
            AuditLogAction.INVOICE_PAID,
            AuditLogAction.INVOICE_PAYMENT_FAILED,
        }
    ),
    AuditCategory.MAIL: frozenset({AuditLogAction.BULK_EMAIL_QUEUED}),
}


def category_of(action: AuditLogAction) -> AuditCategory | None:
    for category, actions in CATEGORY_ACTIONS.items():
        if action in actions:
            return category
    return None


def _uuid_match(column: object, value: object):
    return func.lower(func.replace(column, "-", "")) == str(value).replace("-", "").lower()


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=datetime.UTC)


@dataclass(frozen=True)
class AuditTrailQuery:
    actor_id: object | None = None
    target_id: object | None = None
    action: AuditLogAction | None = None
    category: AuditCategory | None = None
    since: datetime.datetime | None = None
    until: datetime.datetime | None = None

    def apply(self, statement: Select) -> Select:
        since, until = _as_utc(self.since), _as_utc(self.until)
        if since is not None and until is not None and since > until:
            raise AuditFilterError("start_date must be less than or equal to end_date")
        if self.action is not None and self.category is not None and category_of(self.action) != self.category:
            raise AuditFilterError(f"action {self.action.value} is not in category {self.category.value}")

        if self.actor_id is not None:
            statement = statement.where(_uuid_match(AuditLog.actor_id, self.actor_id))
        if self.target_id is not None:
            statement = statement.where(_uuid_match(AuditLog.target_id, self.target_id))
        if self.action is not None:
            statement = statement.where(AuditLog.action == self.action)
        elif self.category is not None:
            statement = statement.where(AuditLog.action.in_(sorted(CATEGORY_ACTIONS[self.category])))
        if since is not None:
            statement = statement.where(AuditLog.timestamp >= since)
        if until is not None:
            statement = statement.where(AuditLog.timestamp <= until)
        return statement


@dataclass(frozen=True)
class AuditTrailPage:
    items: list[AuditLog]
    total: int
    page: int
    per_page: int


async def list_audit_trail(
    db: AsyncSession,
    *,
    current_user: User,
    query: AuditTrailQuery,
    page: int = 1,
    per_page: int = 50,
) -> AuditTrailPage:
    """Newest-first page of the caller's organization trail.

    Rows written for other organizations (a platform admin's grants land on the customer's
    trail, not the admin's) are never visible here.
    """
    page = max(1, page)
    per_page = max(1, min(per_page, MAX_PAGE_SIZE))
    scoped = query.apply(select(AuditLog).where(_uuid_match(AuditLog.org_id, current_user.org_id)))

    total = int((await db.execute(select(func.count()).select_from(scoped.subquery()))).scalar_one())
    rows = await db.execute(
        scoped.order_by(AuditLog.timestamp.desc(), AuditLog.id.desc()).limit(per_page).offset((page - 1) * per_page)
    )
    return AuditTrailPage(items=list(rows.scalars().all()), total=total, page=page, per_page=per_page)
