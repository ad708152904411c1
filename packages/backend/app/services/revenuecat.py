from __future__ import annotations

import datetime
import hmac
import json
import logging
import uuid
from collections.abc import Awaitable, Callable

from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.audit_log import ActivityDetail, AuditLogAction
from app.models.plan import Plan
from app.models.subscription import Subscription, SubscriptionState
from app.models.user import User
from app.models.webhook_event import WebhookProvider
from app.services.activity import SYSTEM_IP, build_audit_log
from app.services.subscription import (
    PlanNotFoundError,
    SubscriptionNotFoundError,
    add_billing_cycle,
    expire_subscription,
    get_plan_by_code,
    get_plan_by_id,
    subscription_lock,
)
from app.services.webhook_ledger import (
    InvalidWebhookPayloadError,
    WebhookOutcome,
    WebhookProcessingError,
    mark_failed,
    mark_processed,
    record_event,
)


logger = logging.getLogger(__name__)

INITIAL_PURCHASE = "INITIAL_PURCHASE"
NON_RENEWING_PURCHASE = "NON_RENEWING_PURCHASE"
RENEWAL = "RENEWAL"
PRODUCT_CHANGE = "PRODUCT_CHANGE"
CANCELLATION = "CANCELLATION"
UNCANCELLATION = "UNCANCELLATION"
BILLING_ISSUE = "BILLING_ISSUE"
SUBSCRIBER_ALIAS = "SUBSCRIBER_ALIAS"
SUBSCRIPTION_PAUSED = "SUBSCRIPTION_PAUSED"
SUBSCRIPTION_EXTENDED = "SUBSCRIPTION_EXTENDED"
EXPIRATION = "EXPIRATION"
TRANSFER = "TRANSFER"
TEST = "TEST"
TEMPORARY_ENTITLEMENT_GRANT = "TEMPORARY_ENTITLEMENT_GRANT"


class InvalidRevenueCatAuthorizationError(Exception):
    pass


class UnknownProductIDError(Exception):
    pass


class RevenueCatUserNotFoundError(Exception):
    pass


def _from_ms(value: int | None) -> datetime.datetime | None:
    if not value:
        return None
    return datetime.datetime.fromtimestamp(value / 1000, tz=datetime.UTC)


def _to_utc_datetime(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.UTC)
    return value.astimezone(datetime.UTC)


def _utc_now() -> datetime.datetime:
    return datetime.datetime.now(datetime.UTC)


def _normalize_uuid(value: object) -> str:
    return str(value).replace("-", "").lower()


def _uuid_match(column: object, value: object):
    return func.lower(func.replace(column, "-", "")) == _normalize_uuid(value)


class RevenueCatEvent(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    type: str
    app_user_id: str = ""
    product_id: str = ""
    new_product_id: str | None = None
    store: str = ""
    environment: str | None = None
    period_type: str | None = None
    event_timestamp_ms: int | None = None
    purchased_at_ms: int | None = None
    expiration_at_ms: int | None = None
    grace_period_expiration_at_ms: int | None = None
    auto_resume_at_ms: int | None = None
    transaction_id: str | None = None
    original_transaction_id: str | None = None
    cancel_reason: str | None = None

    def transaction_key(self) -> str:
        return self.original_transaction_id or self.transaction_id or self.id

    def store_subscription_id(self) -> str:
        return f"rc_{self.store}_{self.transaction_key()}"

    def occurred_at(self) -> datetime.datetime | None:
        return _from_ms(self.event_timestamp_ms)

    def purchased_at(self) -> datetime.datetime | None:
        return _from_ms(self.purchased_at_ms)

    def expires_at(self) -> datetime.datetime | None:
        return _from_ms(self.expiration_at_ms)

    def grace_period_expires_at(self) -> datetime.datetime | None:
        return _from_ms(self.grace_period_expiration_at_ms)

    def auto_resume_at(self) -> datetime.datetime | None:
        return _from_ms(self.auto_resume_at_ms)

    def is_trial(self) -> bool:
        return (self.period_type or "").upper() == "TRIAL"


class RevenueCatWebhook(BaseModel):
    model_config = ConfigDict(extra="ignore")

    api_version: str | None = None
    event: RevenueCatEvent


def verify_authorization(authorization: str | None, secret: str) -> None:
    """Plain shared-secret check on the ``Authorization`` header, compared in constant time."""
    if not secret:
        logger.warning("revenuecat webhook secret is not configured; authorization check skipped")
        return
    token = (authorization or "").strip()
    if token.lower().startswith("bearer "):
        token = token[7:].strip()
    if not hmac.compare_digest(token.encode("utf-8"), secret.encode("utf-8")):
        raise InvalidRevenueCatAuthorizationError("authorization header does not match")


async def _find_user(db: AsyncSession, app_user_id: str) -> User:
    try:
        user_uuid = uuid.UUID(app_user_id)
    except ValueError as exc:
        raise RevenueCatUserNotFoundError(f"app_user_id {app_user_id!r} is not a user id") from exc
    user = (await db.execute(select(User).where(_uuid_match(User.id, user_uuid)))).scalar_one_or_none()
    if user is None:
        raise RevenueCatUserNotFoundError(f"no user for app_user_id {app_user_id}")
    return user


async def _plan_for_product(db: AsyncSession, product_id: str) -> Plan:
    product = settings.revenuecat_products.get(product_id)
    if product is None:
        raise UnknownProductIDError(f"unknown product id {product_id!r}")
    return await get_plan_by_code(db, product.plan_code)


async def _user_subscription(db: AsyncSession, user: User) -> Subscription | None:
    return (
        await db.execute(select(Subscription).where(_uuid_match(Subscription.user_id, user.id)).with_for_update())
    ).scalar_one_or_none()


def _is_stale(subscription: Subscription, event: RevenueCatEvent) -> bool:
    occurred_at = event.occurred_at()
    last_applied = _to_utc_datetime(subscription.provider_event_at)
    return occurred_at is not None and last_applied is not None and occurred_at < last_applied


def _touch(subscription: Subscription, event: RevenueCatEvent, now: datetime.datetime) -> None:
    occurred_at = event.occurred_at()
    if occurred_at is not None:
        subscription.provider_event_at = occurred_at
    subscription.updated_at = now


def _renewal_date(event: RevenueCatEvent, plan: Plan | None, now: datetime.datetime) -> datetime.datetime:
    expires_at = event.expires_at()
    if expires_at is not None:
        return expires_at
    cycle = plan.billing_cycle if plan is not None else None
    product = settings.revenuecat_products.get(event.product_id)
    if product is not None:
        cycle = product.billing_cycle
    return add_billing_cycle(event.purchased_at() or now, cycle)


async def _handle_initial_purchase(
    db: AsyncSession,
    user: User,
    event: RevenueCatEvent,
    now: datetime.datetime,
) -> None:
    plan = await _plan_for_product(db, event.product_id)
    subscription = await _user_subscription(db, user)
    if subscription is not None and _is_stale(subscription, event):
        logger.info("stale revenuecat %s for user %s ignored", event.type, user.id)
        return

    created = subscription is None
    old_plan = None
    if subscription is None:
        subscription = Subscription(id=uuid.uuid4(), user_id=user.id, created_at=now)
        db.add(subscription)
    else:
        old_plan = await get_plan_by_id(db, subscription.plan_id)

    store_subscription_id = event.store_subscription_id()
    if subscription.store_subscription_id != store_subscription_id or subscription.started_at is None:
        subscription.started_at = event.purchased_at() or now
    subscription.plan_id = plan.id
    subscription.store_subscription_id = store_subscription_id
    subscription.stripe_subscription_id = None
    subscription.state = SubscriptionState.TRIALING if event.is_trial() else SubscriptionState.ACTIVE
    subscription.renew_at = _renewal_date(event, plan, now)
    subscription.trial_ends_at = subscription.renew_at if event.is_trial() else None
    subscription.cancel_at = None
    subscription.ended_at = None
    subscription.grace_period_ends_at = None
    _touch(subscription, event, now)

    db.add(
        build_audit_log(
            org_id=user.org_id,
            actor_id=user.id,
            action=AuditLogAction.SUBSCRIPTION_CREATED if created else AuditLogAction.SUBSCRIPTION_UPDATED,
            target_id=subscription.id,
            ip_address=SYSTEM_IP,
            user_agent="revenuecat-webhook",
            details={
                ActivityDetail.SUBSCRIPTION_ID: store_subscription_id,
                ActivityDetail.OLD_PLAN: old_plan.code if old_plan is not None else None,
                ActivityDetail.NEW_PLAN: plan.code,
                ActivityDetail.SOURCE: "revenuecat",
                "store": event.store,
                "environment": event.environment,
            },
            timestamp=now,
        )
    )
    await db.commit()
    logger.info("revenuecat subscription %s applied for user %s (plan=%s)", store_subscription_id, user.id, plan.code)


async def _handle_renewal(db: AsyncSession, user: User, event: RevenueCatEvent, now: datetime.datetime) -> None:
    subscription = await _user_subscription(db, user)
    if subscription is None or subscription.store_subscription_id != event.store_subscription_id():
        logger.info("renewal for unknown store subscription %s; creating it", event.store_subscription_id())
        await _handle_initial_purchase(db, user, event, now)
        return
    if _is_stale(subscription, event):
        logger.info("stale revenuecat renewal for user %s ignored", user.id)
        return

    plan = await get_plan_by_id(db, subscription.plan_id)
    subscription.state = SubscriptionState.ACTIVE
    subscription.renew_at = _renewal_date(event, plan, now)
    subscription.grace_period_ends_at = None
    subscription.cancel_at = None
    subscription.ended_at = None
    subscription.trial_ends_at = None
    _touch(subscription, event, now)
    await db.commit()
    logger.info("revenuecat subscription renewed for user %s until %s", user.id, subscription.renew_at)


async def _require_subscription(db: AsyncSession, user: User, event: RevenueCatEvent) -> Subscription:
    subscription = await _user_subscription(db, user)
    if subscription is None:
        raise SubscriptionNotFoundError(f"user {user.id} has no store subscription for {event.type}")
    return subscription


async def _handle_product_change(
    db: AsyncSession,
    user: User,
    event: RevenueCatEvent,
    now: datetime.datetime,
) -> None:
    if not event.new_product_id:
        raise InvalidWebhookPayloadError("PRODUCT_CHANGE without new_product_id")
    plan = await _plan_for_product(db, event.new_product_id)
    subscription = await _require_subscription(db, user, event)
    if _is_stale(subscription, event):
        return

    old_plan = await get_plan_by_id(db, subscription.plan_id)
    subscription.plan_id = plan.id
    expires_at = event.expires_at()
    if expires_at is not None:
        subscription.renew_at = expires_at
    _touch(subscription, event, now)
    db.add(
        build_audit_log(
            org_id=user.org_id,
            actor_id=user.id,
            action=AuditLogAction.SUBSCRIPTION_UPDATED,
            target_id=subscription.id,
            ip_address=SYSTEM_IP,
            user_agent="revenuecat-webhook",
            details={
                ActivityDetail.OLD_PLAN: old_plan.code if old_plan is not None else None,
                ActivityDetail.NEW_PLAN: plan.code,
                ActivityDetail.SOURCE: "revenuecat",
            },
            timestamp=now,
        )
    )
    await db.commit()


async def _handle_cancellation(db: AsyncSession, user: User, event: RevenueCatEvent, now: datetime.datetime) -> None:
    subscription = await _user_subscription(db, user)
    if subscription is None:
        logger.warning("cancellation for user %s without a subscription ignored", user.id)
        return
    if _is_stale(subscription, event):
        return

    subscription.state = SubscriptionState.CANCELED
    subscription.cancel_at = event.occurred_at() or now
    expires_at = event.expires_at()
    if expires_at is not None:
        subscription.renew_at = expires_at
    _touch(subscription, event, now)
    db.add(
        build_audit_log(
            org_id=user.org_id,
            actor_id=user.id,
            action=AuditLogAction.SUBSCRIPTION_CANCELED,
            target_id=subscription.id,
            ip_address=SYSTEM_IP,
            user_agent="revenuecat-webhook",
            details={ActivityDetail.REASON: event.cancel_reason, ActivityDetail.SOURCE: "revenuecat"},
            timestamp=now,
        )
    )
    await db.commit()


async def _handle_uncancellation(
    db: AsyncSession,
    user: User,
    event: RevenueCatEvent,
    now: datetime.datetime,
) -> None:
    subscription = await _require_subscription(db, user, event)
    if _is_stale(subscription, event):
        return
    subscription.state = SubscriptionState.ACTIVE
    subscription.cancel_at = None
    expires_at = event.expires_at()
    if expires_at is not None:
        subscription.renew_at = expires_at
    _touch(subscription, event, now)
    await db.commit()


async def _handle_billing_issue(db: AsyncSession, user: User, event: RevenueCatEvent, now: datetime.datetime) -> None:
    subscription = await _user_subscription(db, user)
    if subscription is None:
        logger.warning("billing issue for user %s without a subscription ignored", user.id)
        return
    if _is_stale(subscription, event):
        return
    subscription.state = SubscriptionState.PAST_DUE
    subscription.grace_period_ends_at = event.grace_period_expires_at() or (
        (event.occurred_at() or now) + datetime.timedelta(days=settings.subscription_grace_period_days)
    )
    _touch(subscription, event, now)
    await db.commit()
    logger.warning("revenuecat billing issue for user %s; grace until %s", user.id, subscription.grace_period_ends_at)


async def _handle_expiration(db: AsyncSession, user: User, event: RevenueCatEvent, now: datetime.datetime) -> None:
    subscription = await _user_subscription(db, user)
    if subscription is None:
        logger.warning("expiration for user %s without a subscription ignored", user.id)
        return
    if _is_stale(subscription, event):
        return
    _touch(subscription, event, now)
    await expire_subscription(db, subscription=subscription, reason="store_expiration", now=now)


async def _handle_paused(db: AsyncSession, user: User, event: RevenueCatEvent, now: datetime.datetime) -> None:
    subscription = await _require_subscription(db, user, event)
    if _is_stale(subscription, event):
        return
    subscription.state = SubscriptionState.CANCELED
    subscription.cancel_at = event.occurred_at() or now
    resume_at = event.auto_resume_at()
    if resume_at is not None:
        subscription.renew_at = resume_at
    _touch(subscription, event, now)
    await db.commit()


async def _handle_extended(db: AsyncSession, user: User, event: RevenueCatEvent, now: datetime.datetime) -> None:
    subscription = await _require_subscription(db, user, event)
    if _is_stale(subscription, event):
        return
    expires_at = event.expires_at()
    if expires_at is not None:
        subscription.renew_at = expires_at
    if subscription.state in (SubscriptionState.EXPIRED, SubscriptionState.CANCELED):
        subscription.state = SubscriptionState.ACTIVE
        subscription.started_at = now
        subscription.cancel_at = None
        subscription.ended_at = None
    _touch(subscription, event, now)
    await db.commit()


EventHandler = Callable[[AsyncSession, User, RevenueCatEvent, datetime.datetime], Awaitable[None]]

HANDLERS: dict[str, EventHandler] = {
    INITIAL_PURCHASE: _handle_initial_purchase,
    RENEWAL: _handle_renewal,
    PRODUCT_CHANGE: _handle_product_change,
    CANCELLATION: _handle_cancellation,
    UNCANCELLATION: _handle_uncancellation,
    BILLING_ISSUE: _handle_billing_issue,
    EXPIRATION: _handle_expiration,
    SUBSCRIPTION_PAUSED: _handle_paused,
    SUBSCRIPTION_EXTENDED: _handle_extended,
}


# Delivered by RevenueCat but carrying nothing the subscription row tracks.
IGNORED_EVENT_TYPES = frozenset({NON_RENEWING_PURCHASE, SUBSCRIBER_ALIAS, TRANSFER, TEST, TEMPORARY_ENTITLEMENT_GRANT})


async def apply_event(
    db: AsyncSession,
    event: RevenueCatEvent,
    *,
    now: datetime.datetime | None = None,
) -> bool:
    """Apply one event to the user's subscription. Returns False for accepted-but-ignored types.

    Each handler re-derives the target state from the event, so redelivery is harmless.
    """
    handler = HANDLERS.get(event.type)
    if handler is None:
        if event.type in IGNORED_EVENT_TYPES:
            logger.info("revenuecat event %s (%s) ignored", event.id, event.type)
        else:
            logger.warning("revenuecat event %s has unrecognized type %s", event.id, event.type)
        return False

    current_time = now or _utc_now()
    user = await _find_user(db, event.app_user_id)
    async with subscription_lock(f"user:{_normalize_uuid(user.id)}"):
        await handler(db, user, event, current_time)
    return True


_TERMINAL_ERRORS = (
    UnknownProductIDError,
    RevenueCatUserNotFoundError,
    PlanNotFoundError,
    SubscriptionNotFoundError,
    InvalidWebhookPayloadError,
)


async def handle_revenuecat_webhook(
    db: AsyncSession,
    *,
    payload: bytes,
    authorization: str | None,
    now: datetime.datetime | None = None,
) -> WebhookOutcome:
    verify_authorization(authorization, settings.revenuecat_webhook_secret)
    try:
        webhook = RevenueCatWebhook.model_validate_json(payload)
    except ValidationError as exc:
        raise InvalidWebhookPayloadError("revenuecat payload is not a valid event envelope") from exc

    event = webhook.event
    logger.info(
        "revenuecat webhook received: %s %s store=%s environment=%s",
        event.type,
        event.id,
        event.store,
        event.environment,
    )
    ledger_row, pending = await record_event(
        db,
        provider=WebhookProvider.REVENUECAT,
        event_id=event.id,
        event_type=event.type,
        payload=json.loads(payload),
        now=now,
    )
    if not pending:
        logger.info("revenuecat event %s already processed", event.id)
        return WebhookOutcome(event_id=event.id, event_type=event.type, processed=True, duplicate=True)

    try:
        applied = await apply_event(db, event, now=now)
    except _TERMINAL_ERRORS as exc:
        await mark_failed(db, ledger_row, error=f"{type(exc).__name__}: {exc}")
        raise
    except Exception as exc:
        await mark_failed(db, ledger_row, error=f"{type(exc).__name__}: {exc}")
        raise WebhookProcessingError(f"revenuecat event {event.id} failed") from exc

    await mark_processed(db, ledger_row, now=now)
    return WebhookOutcome(event_id=event.id, event_type=event.type, processed=applied)
