from __future__ import annotations

import asyncio
import calendar
import datetime
import logging
import uuid
import weakref
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.audit_log import ActivityDetail, AuditLogAction
from app.models.organization import Organization
from app.models.plan import BillingCycle, Plan
from app.models.subscription import Subscription, SubscriptionState
from app.models.user import User, UserRole, UserStatus
from app.services.activity import SYSTEM_IP, build_audit_log


logger = logging.getLogger(__name__)


class SubscriptionNotFoundError(Exception):
    pass


class SubscriptionForbiddenError(Exception):
    pass


class SubscriptionValidationError(Exception):
    pass


class ProviderManagedSubscriptionError(Exception):
    """A manual grant or revoke was attempted on a provider-managed subscription."""


class PlanNotFoundError(Exception):
    pass


class OrganizationNotFoundError(Exception):
    pass


class SubscriptionGateway(Protocol):
    async def cancel_at_period_end(self, stripe_subscription_id: str) -> Mapping[str, Any]: ...

    async def reactivate(self, stripe_subscription_id: str) -> Mapping[str, Any]: ...

    async def update_quantity(self, stripe_subscription_id: str, quantity: int) -> Mapping[str, Any]: ...


@dataclass(frozen=True)
class AdminSubscriptionRow:
    organization: Organization
    subscription: Subscription | None
    plan: Plan | None
    owner: User | None
    member_count: int
    is_manual: bool
    days_to_end: int | None
    risk_expiring: bool


@dataclass(frozen=True)
class AdminSubscriptionPage:
    items: list[AdminSubscriptionRow]
    total: int


_STRIPE_STATUS_STATES: dict[str, SubscriptionState] = {
    "active": SubscriptionState.ACTIVE,
    "trialing": SubscriptionState.TRIALING,
    "past_due": SubscriptionState.PAST_DUE,
    "unpaid": SubscriptionState.PAST_DUE,
    "canceled": SubscriptionState.EXPIRED,
    "incomplete_expired": SubscriptionState.EXPIRED,
    "incomplete": SubscriptionState.DRAFT,
    "paused": SubscriptionState.CANCELED,
}

_subscription_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


def subscription_lock(key: str) -> asyncio.Lock:
    """Process-local lock serializing read-modify-write on one subscription row.

    Complements ``SELECT ... FOR UPDATE`` for backends without row locks.
    """
    lock = _subscription_locks.get(key)
    if lock is None:
        lock = asyncio.Lock()
        _subscription_locks[key] = lock
    return lock


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _normalize_uuid(value: object) -> str:
    return str(value).replace("-", "").lower()


def _uuid_match(column: object, value: object):
    return func.lower(func.replace(column, "-", "")) == _normalize_uuid(value)


def _to_utc_datetime(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def from_unix_timestamp(value: object) -> datetime.datetime | None:
    if value in (None, "", 0):
        return None
    return datetime.datetime.fromtimestamp(int(value), tz=datetime.UTC)


def add_billing_cycle(start: datetime.datetime, cycle: BillingCycle | str | None) -> datetime.datetime:
    months = 12 if str(getattr(cycle, "value", cycle)).lower() == BillingCycle.YEARLY.value else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def plan_code_base(code: str) -> str:
    return code.split("-")[0].strip().lower()


def _state_value(state: object) -> str:
    return str(getattr(state, "value", state)).lower()


async def get_plan_by_code(db: AsyncSession, code: str) -> Plan:
    normalized = code.strip().lower()
    plan = (await db.execute(select(Plan).where(func.lower(Plan.code) == normalized))).scalar_one_or_none()
    if plan is None:
        raise PlanNotFoundError(f"plan {code!r} not found")
    return plan


async def get_plan_by_id(db: AsyncSession, plan_id: object) -> Plan | None:
    return (await db.execute(select(Plan).where(_uuid_match(Plan.id, plan_id)))).scalar_one_or_none()


async def get_organization(db: AsyncSession, org_id: object) -> Organization:
    organization = (
        await db.execute(select(Organization).where(_uuid_match(Organization.id, org_id)))
    ).scalar_one_or_none()
    if organization is None:
        raise OrganizationNotFoundError("organization not found")
    return organization


async def get_org_subscription(
    db: AsyncSession,
    org_id: object,
    *,
    for_update: bool = False,
) -> Subscription | None:
    statement = select(Subscription).where(_uuid_match(Subscription.org_id, org_id))
    if for_update:
        statement = statement.with_for_update()
    return (await db.execute(statement)).scalar_one_or_none()


async def count_active_members(db: AsyncSession, org_id: object) -> int:
    count = (
        await db.execute(
            select(func.count())
            .select_from(User)
            .where(_uuid_match(User.org_id, org_id), User.status == UserStatus.ACTIVE)
        )
    ).scalar_one()
    return int(count or 0)


def _require_org_admin(current_user: User, org_id: object) -> None:
    if _normalize_uuid(current_user.org_id) != _normalize_uuid(org_id) or not current_user.is_org_admin():
        raise SubscriptionForbiddenError("organization admin access is required")


async def grant_manual_subscription(
    db: AsyncSession,
    *,
    actor: User,
    org_id: uuid.UUID,
    plan_code: str,
    ends_at: datetime.datetime,
    note: str | None,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> Subscription:
    current_time = now or _utc_now()
    normalized_end = _to_utc_datetime(ends_at)
    if normalized_end is None or normalized_end <= current_time:
        raise SubscriptionValidationError("ends_at must be in the future")

    organization = await get_organization(db, org_id)
    plan = await get_plan_by_code(db, plan_code)
    if not plan.is_active:
        raise SubscriptionValidationError(f"plan {plan.code!r} is not active")

    async with subscription_lock(f"org:{_normalize_uuid(organization.id)}"):
        subscription = await get_org_subscription(db, organization.id, for_update=True)
        if subscription is not None and subscription.is_provider_managed():
            raise ProviderManagedSubscriptionError(
                "organization has a provider-managed subscription; cancel it there first"
            )

        old_plan = await get_plan_by_id(db, subscription.plan_id) if subscription is not None else None
        created = subscription is None
        if subscription is None:
            subscription = Subscription(id=uuid.uuid4(), org_id=organization.id, created_at=current_time)
            db.add(subscription)

        subscription.plan_id = plan.id
        subscription.state = SubscriptionState.ACTIVE
        subscription.started_at = current_time
        # For hand-managed rows renew_at is the end of the grant.
        subscription.renew_at = normalized_end
        subscription.cancel_at = None
        subscription.ended_at = None
        subscription.grace_period_ends_at = None
        subscription.trial_ends_at = None
        subscription.stripe_subscription_id = None
        subscription.note = (note or "").strip() or None
        subscription.updated_at = current_time

        db.add(
            build_audit_log(
                org_id=organization.id,
                actor_id=actor.id,
                action=AuditLogAction.MANUAL_GRANT,
                target_id=subscription.id,
                ip_address=client_ip,
                user_agent=user_agent,
                details={
                    ActivityDetail.ORGANIZATION_ID: str(organization.id),
                    ActivityDetail.ORGANIZATION_NAME: organization.name,
                    ActivityDetail.OLD_PLAN: old_plan.code if old_plan is not None else None,
                    ActivityDetail.NEW_PLAN: plan.code,
                    ActivityDetail.REASON: subscription.note,
                    ActivityDetail.ENDS_AT: normalized_end.isoformat(),
                },
                timestamp=current_time,
            )
        )
        await db.commit()

    logger.info(
        "manual subscription %s for org %s: plan=%s ends_at=%s",
        "granted" if created else "updated",
        organization.id,
        plan.code,
        normalized_end.isoformat(),
    )
    return subscription


async def revoke_manual_subscription(
    db: AsyncSession,
    *,
    actor: User,
    org_id: uuid.UUID,
    note: str | None,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> Subscription:
    current_time = now or _utc_now()
    organization = await get_organization(db, org_id)

    async with subscription_lock(f"org:{_normalize_uuid(organization.id)}"):
        subscription = await get_org_subscription(db, organization.id, for_update=True)
        if subscription is None:
            raise SubscriptionNotFoundError("organization has no subscription")
        if subscription.is_provider_managed():
            raise ProviderManagedSubscriptionError(
                "organization has a provider-managed subscription; cancel it there first"
            )

        plan = await get_plan_by_id(db, subscription.plan_id)
        subscription.state = SubscriptionState.EXPIRED
        subscription.ended_at = current_time
        subscription.updated_at = current_time
        reason = (note or "").strip() or None
        if reason:
            subscription.note = reason

        db.add(
            build_audit_log(
                org_id=organization.id,
                actor_id=actor.id,
                action=AuditLogAction.MANUAL_REVOKE,
                target_id=subscription.id,
                ip_address=client_ip,
                user_agent=user_agent,
                details={
                    ActivityDetail.ORGANIZATION_ID: str(organization.id),
                    ActivityDetail.ORGANIZATION_NAME: organization.name,
                    ActivityDetail.OLD_PLAN: plan.code if plan is not None else None,
                    ActivityDetail.NEW_PLAN: None,
                    ActivityDetail.REASON: reason,
                },
                timestamp=current_time,
            )
        )
        await db.commit()

    logger.info("manual subscription revoked for org %s", organization.id)
    return subscription


async def _load_stripe_subscription_for_org(
    db: AsyncSession,
    *,
    current_user: User,
) -> Subscription:
    subscription = await get_org_subscription(db, current_user.org_id, for_update=True)
    if subscription is None:
        raise SubscriptionNotFoundError("organization has no subscription")
    if not subscription.is_stripe_managed():
        raise SubscriptionValidationError("subscription is not managed by Stripe")
    return subscription


async def cancel_subscription(
    db: AsyncSession,
    *,
    current_user: User,
    gateway: SubscriptionGateway,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> Subscription:
    """Cancel at period end: access continues until the provider ends the subscription."""
    current_time = now or _utc_now()
    _require_org_admin(current_user, current_user.org_id)

    async with subscription_lock(f"org:{_normalize_uuid(current_user.org_id)}"):
        subscription = await _load_stripe_subscription_for_org(db, current_user=current_user)
        if subscription.state in (SubscriptionState.EXPIRED, SubscriptionState.CANCELED):
            raise SubscriptionValidationError("subscription is already canceled or expired")
        if subscription.cancel_at is not None:
            raise SubscriptionValidationError("subscription is already scheduled to cancel")

        provider_subscription = await gateway.cancel_at_period_end(subscription.stripe_subscription_id)
        period_end = _provider_period_end(provider_subscription)
        if period_end is not None:
            subscription.renew_at = period_end
        subscription.cancel_at = _to_utc_datetime(subscription.renew_at) or current_time
        subscription.updated_at = current_time

        db.add(
            build_audit_log(
                org_id=current_user.org_id,
                actor_id=current_user.id,
                action=AuditLogAction.SUBSCRIPTION_CANCELED,
                target_id=subscription.id,
                ip_address=client_ip,
                user_agent=user_agent,
                details={
                    ActivityDetail.ORGANIZATION_ID: str(current_user.org_id),
                    ActivityDetail.SUBSCRIPTION_ID: subscription.stripe_subscription_id,
                    ActivityDetail.ENDS_AT: subscription.cancel_at.isoformat(),
                },
                timestamp=current_time,
            )
        )
        await db.commit()

    logger.info("subscription for org %s set to cancel at %s", current_user.org_id, subscription.cancel_at)
    return subscription


async def reactivate_subscription(
    db: AsyncSession,
    *,
    current_user: User,
    gateway: SubscriptionGateway,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> Subscription:
    current_time = now or _utc_now()
    _require_org_admin(current_user, current_user.org_id)

    async with subscription_lock(f"org:{_normalize_uuid(current_user.org_id)}"):
        subscription = await _load_stripe_subscription_for_org(db, current_user=current_user)
        if subscription.cancel_at is None:
            raise SubscriptionValidationError("subscription is not scheduled to cancel")
        period_end = _to_utc_datetime(subscription.renew_at)
        if not subscription.is_active() or (period_end is not None and period_end <= current_time):
            raise SubscriptionValidationError("subscription period has already ended")

        await gateway.reactivate(subscription.stripe_subscription_id)
        subscription.cancel_at = None
        subscription.updated_at = current_time

        db.add(
            build_audit_log(
                org_id=current_user.org_id,
                actor_id=current_user.id,
                action=AuditLogAction.SUBSCRIPTION_REACTIVATED,
                target_id=subscription.id,
                ip_address=client_ip,
                user_agent=user_agent,
                details={
                    ActivityDetail.ORGANIZATION_ID: str(current_user.org_id),
                    ActivityDetail.SUBSCRIPTION_ID: subscription.stripe_subscription_id,
                },
                timestamp=current_time,
            )
        )
        await db.commit()

    logger.info("subscription for org %s reactivated", current_user.org_id)
    return subscription


async def update_subscription_seats(
    db: AsyncSession,
    *,
    current_user: User,
    seats: int,
    gateway: SubscriptionGateway,
    client_ip: str,
    user_agent: str,
    now: datetime.datetime | None = None,
) -> Subscription:
    """Forward a seat change to Stripe; proration and the stored count follow its webhook."""
    current_time = now or _utc_now()
    _require_org_admin(current_user, current_user.org_id)
    if seats < 1:
        raise SubscriptionValidationError("seats must be at least 1")

    async with subscription_lock(f"org:{_normalize_uuid(current_user.org_id)}"):
        subscription = await _load_stripe_subscription_for_org(db, current_user=current_user)
        plan = await get_plan_by_id(db, subscription.plan_id)
        if plan is None:
            raise PlanNotFoundError("subscription plan not found")
        if plan_code_base(plan.code) not in {code.lower() for code in settings.seat_plan_codes}:
            raise SubscriptionValidationError(f"plan {plan.code!r} does not support seat changes")

        member_count = await count_active_members(db, current_user.org_id)
        if seats < member_count:
            raise SubscriptionValidationError(
                f"seats ({seats}) cannot be fewer than current members ({member_count})"
            )
        if plan.max_users is not None and seats > plan.max_users:
            raise SubscriptionValidationError(f"seats exceed the plan limit of {plan.max_users}")

        seats_before = subscription.seats_purchased
        if seats_before == seats:
            return subscription

        await gateway.update_quantity(subscription.stripe_subscription_id, seats)
        subscription.seats_purchased = seats
        subscription.updated_at = current_time
        db.add(
            build_audit_log(
                org_id=current_user.org_id,
                actor_id=current_user.id,
                action=AuditLogAction.SUBSCRIPTION_SEATS_UPDATED,
                target_id=subscription.id,
                ip_address=client_ip,
                user_agent=user_agent,
                details={
                    ActivityDetail.ORGANIZATION_ID: str(current_user.org_id),
                    ActivityDetail.PLAN: plan.code,
                    ActivityDetail.SEATS_BEFORE: seats_before,
                    ActivityDetail.SEATS_AFTER: seats,
                },
                timestamp=current_time,
            )
        )
        await db.commit()

    logger.info("seats for org %s changed %s -> %s", current_user.org_id, seats_before, seats)
    return subscription


def _provider_items(provider_subscription: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    items = provider_subscription.get("items") or {}
    data = items.get("data") if isinstance(items, Mapping) else None
    return list(data or [])


def _provider_period_end(provider_subscription: Mapping[str, Any]) -> datetime.datetime | None:
    period_end = provider_subscription.get("current_period_end")
    if not period_end:
        items = _provider_items(provider_subscription)
        period_end = items[0].get("current_period_end") if items else None
    return from_unix_timestamp(period_end)


def provider_price_id(provider_subscription: Mapping[str, Any]) -> str | None:
    items = _provider_items(provider_subscription)
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id") if isinstance(price, Mapping) else str(price)


def provider_quantity(provider_subscription: Mapping[str, Any]) -> int | None:
    items = _provider_items(provider_subscription)
    if not items:
        return None
    quantity = int(items[0].get("quantity") or 0)
    return quantity if quantity > 0 else None


async def resolve_plan_for_price(db: AsyncSession, price_id: str | None) -> Plan:
    if not price_id:
        raise PlanNotFoundError("subscription has no price")
    for key, configured_price in settings.stripe_prices.items():
        if configured_price == price_id:
            return await get_plan_by_code(db, plan_code_base(key))
    plan = (await db.execute(select(Plan).where(Plan.stripe_price_id == price_id))).scalar_one_or_none()
    if plan is None:
        raise PlanNotFoundError(f"unknown price id {price_id!r}")
    return plan


async def upsert_from_stripe(
    db: AsyncSession,
    *,
    provider_subscription: Mapping[str, Any],
    org_id: object | None = None,
    event_at: datetime.datetime | None = None,
    actor_id: uuid.UUID | None = None,
    client_ip: str = SYSTEM_IP,
    user_agent: str = "stripe-webhook",
    now: datetime.datetime | None = None,
) -> Subscription:
    """Re-derive the organization's subscription row from a Stripe subscription object.

    Safe to repeat: the same object yields the same row. Events older than the newest one
    already applied are ignored.
    """
    current_time = now or _utc_now()
    stripe_subscription_id = str(provider_subscription.get("id") or "")
    if not stripe_subscription_id:
        raise SubscriptionValidationError("stripe subscription id is missing")

    metadata = provider_subscription.get("metadata") or {}
    resolved_org_id = org_id or metadata.get("organization_id")
    if not resolved_org_id:
        raise SubscriptionValidationError("organization_id missing from subscription metadata")
    organization = await get_organization(db, resolved_org_id)

    plan = await resolve_plan_for_price(db, provider_price_id(provider_subscription))
    if not plan.is_active:
        raise SubscriptionValidationError(f"plan {plan.code!r} is not active")

    status = str(provider_subscription.get("status") or "").lower()
    state = _STRIPE_STATUS_STATES.get(status, SubscriptionState.DRAFT)
    event_time = _to_utc_datetime(event_at)

    async with subscription_lock(f"org:{_normalize_uuid(organization.id)}"):
        subscription = (
            await db.execute(
                select(Subscription)
                .where(Subscription.stripe_subscription_id == stripe_subscription_id)
                .with_for_update()
            )
        ).scalar_one_or_none()
        if subscription is None:
            subscription = await get_org_subscription(db, organization.id, for_update=True)

        last_applied = _to_utc_datetime(subscription.provider_event_at) if subscription is not None else None
        if event_time is not None and last_applied is not None and event_time < last_applied:
            logger.info(
                "ignoring stale stripe event for subscription %s (event %s < applied %s)",
                stripe_subscription_id,
                event_time.isoformat(),
                last_applied.isoformat(),
            )
            return subscription

        created = subscription is None
        old_plan = None
        if subscription is None:
            subscription = Subscription(id=uuid.uuid4(), org_id=organization.id, created_at=current_time)
            db.add(subscription)
        else:
            old_plan = await get_plan_by_id(db, subscription.plan_id)

        previous_state = subscription.state
        subscription.plan_id = plan.id
        subscription.stripe_subscription_id = stripe_subscription_id
        subscription.store_subscription_id = None
        subscription.state = state
        subscription.seats_purchased = provider_quantity(provider_subscription)
        subscription.started_at = (
            _to_utc_datetime(subscription.started_at)
            or from_unix_timestamp(provider_subscription.get("start_date"))
            or current_time
        )

        period_end = _provider_period_end(provider_subscription)
        if period_end is None and created:
            period_end = add_billing_cycle(current_time, plan.billing_cycle)
        if period_end is not None:
            subscription.renew_at = period_end

        trial_end = from_unix_timestamp(provider_subscription.get("trial_end"))
        if state == SubscriptionState.TRIALING:
            subscription.trial_ends_at = trial_end or (
                current_time + datetime.timedelta(days=plan.trial_days) if plan.has_trial() else None
            )
        else:
            subscription.trial_ends_at = None

        if provider_subscription.get("cancel_at_period_end"):
            subscription.cancel_at = _to_utc_datetime(subscription.renew_at)
        else:
            subscription.cancel_at = from_unix_timestamp(provider_subscription.get("cancel_at"))

        if state == SubscriptionState.PAST_DUE:
            if subscription.grace_period_ends_at is None:
                subscription.grace_period_ends_at = current_time + datetime.timedelta(
                    days=settings.subscription_grace_period_days
                )
        else:
            subscription.grace_period_ends_at = None

        if state == SubscriptionState.EXPIRED:
            subscription.ended_at = (
                from_unix_timestamp(provider_subscription.get("ended_at"))
                or _to_utc_datetime(subscription.ended_at)
                or current_time
            )
        else:
            subscription.ended_at = None

        if event_time is not None:
            subscription.provider_event_at = event_time
        subscription.updated_at = current_time

        db.add(
            build_audit_log(
                org_id=organization.id,
                actor_id=actor_id,
                action=AuditLogAction.SUBSCRIPTION_CREATED if created else AuditLogAction.SUBSCRIPTION_UPDATED,
                target_id=subscription.id,
                ip_address=client_ip,
                user_agent=user_agent,
                details={
                    ActivityDetail.ORGANIZATION_ID: str(organization.id),
                    ActivityDetail.ORGANIZATION_NAME: organization.name,
                    ActivityDetail.SUBSCRIPTION_ID: stripe_subscription_id,
                    ActivityDetail.OLD_PLAN: old_plan.code if old_plan is not None else None,
                    ActivityDetail.NEW_PLAN: plan.code,
                    ActivityDetail.BILLING_CYCLE: _state_value(plan.billing_cycle),
                    ActivityDetail.STATUS: status,
                    ActivityDetail.SOURCE: "stripe",
                },
                timestamp=current_time,
            )
        )
        await db.commit()

    logger.info(
        "stripe subscription %s applied to org %s: %s -> %s (plan=%s)",
        stripe_subscription_id,
        organization.id,
        _state_value(previous_state) if previous_state is not None else "none",
        _state_value(state),
        plan.code,
    )
    return subscription


def subscription_lock_key(subscription: Subscription) -> str:
    if subscription.org_id is not None:
        return f"org:{_normalize_uuid(subscription.org_id)}"
    return f"user:{_normalize_uuid(subscription.user_id)}"


async def _get_by_stripe_id(db: AsyncSession, stripe_subscription_id: str) -> Subscription:
    subscription = (
        await db.execute(
            select(Subscription).where(Subscription.stripe_subscription_id == stripe_subscription_id)
        )
    ).scalar_one_or_none()
    if subscription is None:
        raise SubscriptionNotFoundError(f"no subscription for {stripe_subscription_id}")
    return subscription


async def handle_payment_success(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    period_end: datetime.datetime | None = None,
    details: dict[str, object] | None = None,
    now: datetime.datetime | None = None,
) -> Subscription:
    current_time = now or _utc_now()
    subscription = await _get_by_stripe_id(db, stripe_subscription_id)
    async with subscription_lock(subscription_lock_key(subscription)):
        await db.refresh(subscription, with_for_update=True)
        if subscription.state in (SubscriptionState.DRAFT, SubscriptionState.TRIALING):
            subscription.state = SubscriptionState.ACTIVE
            subscription.started_at = current_time
        elif subscription.state == SubscriptionState.PAST_DUE:
            subscription.state = SubscriptionState.ACTIVE
        elif subscription.state == SubscriptionState.EXPIRED:
            subscription.state = SubscriptionState.ACTIVE
            subscription.started_at = current_time
            subscription.ended_at = None
        subscription.grace_period_ends_at = None

        next_renewal = _to_utc_datetime(period_end)
        if next_renewal is None:
            plan = await get_plan_by_id(db, subscription.plan_id)
            next_renewal = add_billing_cycle(current_time, plan.billing_cycle if plan is not None else None)
        subscription.renew_at = next_renewal
        subscription.updated_at = current_time

        if subscription.org_id is not None:
            db.add(
                build_audit_log(
                    org_id=subscription.org_id,
                    actor_id=None,
                    action=AuditLogAction.INVOICE_PAID,
                    target_id=subscription.id,
                    ip_address=SYSTEM_IP,
                    user_agent="stripe-webhook",
                    details={ActivityDetail.SUBSCRIPTION_ID: stripe_subscription_id, **(details or {})},
                    timestamp=current_time,
                )
            )
        await db.commit()

    logger.info("payment succeeded for %s; renews at %s", stripe_subscription_id, next_renewal.isoformat())
    return subscription


async def handle_payment_failed(
    db: AsyncSession,
    *,
    stripe_subscription_id: str,
    details: dict[str, object] | None = None,
    now: datetime.datetime | None = None,
) -> Subscription:
    current_time = now or _utc_now()
    subscription = await _get_by_stripe_id(db, stripe_subscription_id)
    async with subscription_lock(subscription_lock_key(subscription)):
        await db.refresh(subscription, with_for_update=True)
        if subscription.state == SubscriptionState.EXPIRED:
            logger.info("payment failure for expired subscription %s ignored", stripe_subscription_id)
            return subscription

        subscription.state = SubscriptionState.PAST_DUE
        if subscription.grace_period_ends_at is None:
            subscription.grace_period_ends_at = current_time + datetime.timedelta(
                days=settings.subscription_grace_period_days
            )
        subscription.updated_at = current_time

        if subscription.org_id is not None:
            db.add(
                build_audit_log(
                    org_id=subscription.org_id,
                    actor_id=None,
                    action=AuditLogAction.INVOICE_PAYMENT_FAILED,
                    target_id=subscription.id,
                    ip_address=SYSTEM_IP,
                    user_agent="stripe-webhook",
                    details={ActivityDetail.SUBSCRIPTION_ID: stripe_subscription_id, **(details or {})},
                    timestamp=current_time,
                )
            )
        await db.commit()

    logger.warning(
        "payment failed for %s; grace period ends %s",
        stripe_subscription_id,
        _to_utc_datetime(subscription.grace_period_ends_at),
    )
    return subscription


async def expire_subscription(
    db: AsyncSession,
    *,
    subscription: Subscription,
    reason: str,
    now: datetime.datetime | None = None,
) -> Subscription:
    current_time = now or _utc_now()
    if subscription.state == SubscriptionState.EXPIRED:
        return subscription

    subscription.state = SubscriptionState.EXPIRED
    subscription.ended_at = current_time
    subscription.cancel_at = None
    subscription.grace_period_ends_at = None
    subscription.updated_at = current_time

    org_id = subscription.org_id
    if org_id is None and subscription.user_id is not None:
        owner = (
            await db.execute(select(User).where(_uuid_match(User.id, subscription.user_id)))
        ).scalar_one_or_none()
        org_id = owner.org_id if owner is not None else None
    if org_id is not None:
        db.add(
            build_audit_log(
                org_id=org_id,
                actor_id=None,
                action=AuditLogAction.SUBSCRIPTION_EXPIRED,
                target_id=subscription.id,
                ip_address=SYSTEM_IP,
                user_agent="subscription-worker",
                details={ActivityDetail.REASON: reason},
                timestamp=current_time,
            )
        )
    await db.commit()
    logger.info("subscription %s expired (%s)", subscription.id, reason)
    return subscription


def _expiry_reason(subscription: Subscription) -> str:
    if subscription.state == SubscriptionState.PAST_DUE:
        return "grace_period_ended"
    if subscription.state == SubscriptionState.CANCELED:
        return "canceled_period_ended"
    return "manual_grant_ended"


async def check_expired_subscriptions(
    db: AsyncSession,
    *,
    now: datetime.datetime | None = None,
) -> int:
    """Expire every subscription whose grace period, canceled period or manual grant has ended."""
    current_time = now or _utc_now()
    candidates = (
        await db.execute(
            select(Subscription).where(
                Subscription.state.in_(
                    [SubscriptionState.PAST_DUE, SubscriptionState.CANCELED, SubscriptionState.ACTIVE]
                )
            )
        )
    ).scalars().all()

    expired = 0
    for subscription in candidates:
        if not subscription.should_expire(current_time):
            continue
        async with subscription_lock(subscription_lock_key(subscription)):
            # A grant or renewal may have landed since the candidate query.
            await db.refresh(subscription, with_for_update=True)
            if not subscription.should_expire(current_time):
                logger.info("subscription %s changed before expiry; skipped", subscription.id)
                continue
            await expire_subscription(
                db,
                subscription=subscription,
                reason=_expiry_reason(subscription),
                now=current_time,
            )
        expired += 1
    return expired


async def list_admin_subscriptions(
    db: AsyncSession,
    *,
    search: str | None = None,
    limit: int = 20,
    offset: int = 0,
    now: datetime.datetime | None = None,
) -> AdminSubscriptionPage:
    current_time = now or _utc_now()
    statement = select(Organization)
    count_statement = select(func.count()).select_from(Organization)
    needle = (search or "").strip().lower()
    if needle:
        condition = func.lower(Organization.name).contains(needle)
        statement = statement.where(condition)
        count_statement = count_statement.where(condition)

    total = int((await db.execute(count_statement)).scalar_one() or 0)
    organizations = (
        await db.execute(
            statement.order_by(Organization.created_at.desc(), Organization.id.desc()).limit(limit).offset(offset)
        )
    ).scalars().all()

    warning_cutoff = current_time + datetime.timedelta(days=settings.manual_expiry_warning_days)
    rows: list[AdminSubscriptionRow] = []
    for organization in organizations:
        subscription = await get_org_subscription(db, organization.id)
        plan = await get_plan_by_id(db, subscription.plan_id) if subscription is not None else None
        owner = (
            await db.execute(
                select(User)
                .where(_uuid_match(User.org_id, organization.id), User.role == UserRole.OWNER)
                .order_by(User.created_at.asc())
                .limit(1)
            )
        ).scalar_one_or_none()

        is_manual = subscription is not None and subscription.is_manual()
        days_to_end: int | None = None
        risk_expiring = False
        renew_at = _to_utc_datetime(subscription.renew_at) if subscription is not None else None
        if is_manual and renew_at is not None:
            days_to_end = int((renew_at - current_time).total_seconds() // 86400)
            risk_expiring = renew_at < warning_cutoff

        rows.append(
            AdminSubscriptionRow(
                organization=organization,
                subscription=subscription,
                plan=plan,
                owner=owner,
                member_count=await count_active_members(db, organization.id),
                is_manual=is_manual,
                days_to_end=days_to_end,
                risk_expiring=risk_expiring,
            )
        )
    return AdminSubscriptionPage(items=rows, total=total)
