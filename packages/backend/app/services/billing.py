from __future__ import annotations

import datetime
import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import stripe
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.settings import settings
from app.models.audit_log import ActivityDetail, AuditLogAction
from app.models.organization import Organization
from app.models.plan import Plan
from app.models.subscription import Subscription
from app.models.user import User
from app.models.webhook_event import WebhookProvider
from app.services.activity import ActivityLogger
from app.services.stripe_gateway import BillingProviderError, StripeGateway, construct_stripe_event
from app.services.subscription import (
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    count_active_members,
    from_unix_timestamp,
    get_org_subscription,
    get_organization,
    get_plan_by_code,
    get_plan_by_id,
    handle_payment_failed,
    handle_payment_success,
    upsert_from_stripe,
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


class InvalidStripeSignatureError(Exception):
    pass


@dataclass(frozen=True)
class InvoiceSummary:
    id: str | None
    status: str | None
    amount_cents: int
    currency: str
    issued_at: datetime.datetime | None
    paid_at: datetime.datetime | None
    hosted_invoice_url: str | None
    invoice_pdf_url: str | None


@dataclass(frozen=True)
class BillingInfo:
    organization: Organization
    subscription: Subscription | None
    plan: Plan | None
    member_count: int
    invoices: list[InvoiceSummary] = field(default_factory=list)


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str
    seats: int


def _invoice_summary(invoice: Mapping[str, Any]) -> InvoiceSummary:
    transitions = invoice.get("status_transitions") or {}
    return InvoiceSummary(
        id=invoice.get("id"),
        status=invoice.get("status"),
        amount_cents=int(invoice.get("amount_paid") or 0),
        currency=str(invoice.get("currency") or "usd"),
        issued_at=from_unix_timestamp(invoice.get("created")),
        paid_at=from_unix_timestamp(transitions.get("paid_at")),
        hosted_invoice_url=invoice.get("hosted_invoice_url"),
        invoice_pdf_url=invoice.get("invoice_pdf"),
    )


async def get_billing_info(
    db: AsyncSession,
    *,
    current_user: User,
    gateway: StripeGateway,
) -> BillingInfo:
    organization = await get_organization(db, current_user.org_id)
    subscription = await get_org_subscription(db, organization.id)
    plan = await get_plan_by_id(db, subscription.plan_id) if subscription is not None else None
    member_count = await count_active_members(db, organization.id)

    invoices: list[InvoiceSummary] = []
    if organization.stripe_customer_id:
        try:
            raw_invoices = await gateway.list_invoices(organization.stripe_customer_id, limit=10)
        except BillingProviderError:
            logger.warning("invoice listing failed for org %s; returning billing info without it", organization.id)
        else:
            invoices = [_invoice_summary(invoice) for invoice in raw_invoices]

    return BillingInfo(
        organization=organization,
        subscription=subscription,
        plan=plan,
        member_count=member_count,
        invoices=invoices,
    )


def _price_for(plan: Plan, billing_cycle: str) -> str:
    price_id = settings.stripe_prices.get(f"{plan.code}-{billing_cycle}")
    if not price_id and str(getattr(plan.billing_cycle, "value", plan.billing_cycle)) == billing_cycle:
        price_id = plan.stripe_price_id
    if not price_id:
        raise SubscriptionValidationError(f"no Stripe price configured for {plan.code}-{billing_cycle}")
    return price_id


async def create_checkout_session(
    db: AsyncSession,
    *,
    current_user: User,
    plan_code: str,
    billing_cycle: str,
    seats: int,
    gateway: StripeGateway,
    activity_logger: ActivityLogger,
    client_ip: str,
    user_agent: str,
) -> CheckoutSession:
    organization = await get_organization(db, current_user.org_id)
    plan = await get_plan_by_code(db, plan_code)
    if not plan.is_active:
        raise SubscriptionValidationError(f"plan {plan.code!r} is not active")
    normalized_cycle = billing_cycle.strip().lower()
    price_id = _price_for(plan, normalized_cycle)

    member_count = await count_active_members(db, organization.id)
    quantity = max(seats, member_count, 1)
    if quantity != seats:
        logger.info(
            "checkout seats for org %s raised from %s to %s to cover members",
            organization.id,
            seats,
            quantity,
        )

    if not organization.stripe_customer_id:
        customer = await gateway.create_customer(
            name=organization.name,
            email=organization.billing_email or current_user.email,
            org_id=str(organization.id),
        )
        organization.stripe_customer_id = customer["id"]
        await db.commit()

    base_url = settings.frontend_base_url.rstrip("/")
    metadata = {
        "organization_id": str(organization.id),
        "plan": plan.code,
        "billing_cycle": normalized_cycle,
    }
    session = await gateway.create_checkout_session(
        customer_id=organization.stripe_customer_id,
        price_id=price_id,
        quantity=quantity,
        success_url=f"{base_url}/billing?success=true",
        cancel_url=f"{base_url}/billing?canceled=true",
        metadata=metadata,
    )

    # The session already exists at Stripe; a lost audit row must not fail the request.
    await activity_logger.log_custom_activity(
        org_id=organization.id,
        actor_id=current_user.id,
        action=AuditLogAction.CHECKOUT_CREATED,
        target_id=organization.id,
        ip_address=client_ip,
        user_agent=user_agent,
        details={
            ActivityDetail.ORGANIZATION_ID: str(organization.id),
            ActivityDetail.ORGANIZATION_NAME: organization.name,
            ActivityDetail.PLAN: plan.code,
            ActivityDetail.BILLING_CYCLE: normalized_cycle,
            ActivityDetail.SEATS_AFTER: quantity,
            "session_id": session.get("id"),
        },
    )
    logger.info("checkout session %s created for org %s", session.get("id"), organization.id)
    return CheckoutSession(session_id=str(session.get("id")), url=str(session.get("url")), seats=quantity)


async def sync_subscription(
    db: AsyncSession,
    *,
    current_user: User,
    gateway: StripeGateway,
    client_ip: str,
    user_agent: str,
) -> Subscription:
    """Pull the organization's subscription from Stripe when webhooks were missed."""
    organization = await get_organization(db, current_user.org_id)
    if not organization.stripe_customer_id:
        raise SubscriptionValidationError("organization has no Stripe customer")

    candidates = await gateway.list_customer_subscriptions(organization.stripe_customer_id)
    if not candidates:
        raise SubscriptionNotFoundError("no Stripe subscriptions found for this organization")
    chosen = next(
        (candidate for candidate in candidates if candidate.get("status") in ("active", "trialing")),
        candidates[0],
    )

    subscription = await upsert_from_stripe(
        db,
        provider_subscription=chosen,
        org_id=organization.id,
        actor_id=current_user.id,
        client_ip=client_ip,
        user_agent=user_agent,
    )
    logger.info("synced stripe subscription %s for org %s", chosen.get("id"), organization.id)
    return subscription


def _event_time(event: Mapping[str, Any]) -> datetime.datetime | None:
    return from_unix_timestamp(event.get("created"))


async def _org_id_for_customer(db: AsyncSession, customer_id: object) -> object | None:
    if not customer_id:
        return None
    return (
        await db.execute(select(Organization.id).where(Organization.stripe_customer_id == str(customer_id)))
    ).scalar_one_or_none()


def _invoice_subscription_id(invoice: Mapping[str, Any]) -> str | None:
    subscription_id = invoice.get("subscription")
    if not subscription_id:
        parent = invoice.get("parent") or {}
        details = parent.get("subscription_details") or {}
        subscription_id = details.get("subscription")
    if isinstance(subscription_id, Mapping):
        subscription_id = subscription_id.get("id")
    return str(subscription_id) if subscription_id else None


def _invoice_period_end(invoice: Mapping[str, Any]) -> datetime.datetime | None:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None
    return from_unix_timestamp((lines[0].get("period") or {}).get("end"))


async def _handle_checkout_completed(
    db: AsyncSession,
    event: Mapping[str, Any],
    gateway: StripeGateway,
) -> None:
    session = event["data"]["object"]
    metadata = session.get("metadata") or {}
    org_id = metadata.get("organization_id")
    if not org_id:
        raise SubscriptionValidationError(f"checkout session {session.get('id')} has no organization_id")

    organization = await get_organization(db, org_id)
    customer_id = session.get("customer")
    if customer_id and organization.stripe_customer_id != customer_id:
        organization.stripe_customer_id = str(customer_id)
        await db.commit()

    stripe_subscription_id = session.get("subscription")
    if not stripe_subscription_id:
        logger.info("checkout session %s has no subscription; nothing to apply", session.get("id"))
        return
    provider_subscription = await gateway.retrieve_subscription(str(stripe_subscription_id))
    await upsert_from_stripe(
        db,
        provider_subscription=provider_subscription,
        org_id=organization.id,
        event_at=_event_time(event),
    )


async def _handle_subscription_changed(db: AsyncSession, event: Mapping[str, Any]) -> None:
    provider_subscription = event["data"]["object"]
    metadata = provider_subscription.get("metadata") or {}
    org_id = metadata.get("organization_id") or await _org_id_for_customer(db, provider_subscription.get("customer"))
    await upsert_from_stripe(
        db,
        provider_subscription=provider_subscription,
        org_id=org_id,
        event_at=_event_time(event),
    )


async def _handle_subscription_deleted(db: AsyncSession, event: Mapping[str, Any]) -> None:
    provider_subscription = event["data"]["object"]
    known = (
        await db.execute(
            select(Subscription.id).where(Subscription.stripe_subscription_id == provider_subscription.get("id"))
        )
    ).scalar_one_or_none()
    if known is None:
        logger.info("deleted stripe subscription %s is unknown; ignoring", provider_subscription.get("id"))
        return
    await _handle_subscription_changed(db, event)


async def _handle_invoice_paid(db: AsyncSession, event: Mapping[str, Any], gateway: StripeGateway) -> None:
    invoice = event["data"]["object"]
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if stripe_subscription_id is None:
        logger.info("invoice %s is not for a subscription; skipping", invoice.get("id"))
        return
    try:
        await handle_payment_success(
            db,
            stripe_subscription_id=stripe_subscription_id,
            period_end=_invoice_period_end(invoice),
            details={"invoice_id": invoice.get("id"), "amount_cents": invoice.get("amount_paid")},
        )
    except SubscriptionNotFoundError:
        # Payment arrived before the subscription events: build the row from Stripe.
        provider_subscription = await gateway.retrieve_subscription(stripe_subscription_id)
        metadata = provider_subscription.get("metadata") or {}
        org_id = metadata.get("organization_id") or await _org_id_for_customer(
            db, provider_subscription.get("customer")
        )
        await upsert_from_stripe(
            db,
            provider_subscription=provider_subscription,
            org_id=org_id,
            event_at=_event_time(event),
        )


async def _handle_invoice_failed(db: AsyncSession, event: Mapping[str, Any]) -> None:
    invoice = event["data"]["object"]
    stripe_subscription_id = _invoice_subscription_id(invoice)
    if stripe_subscription_id is None:
        logger.info("failed invoice %s is not for a subscription; skipping", invoice.get("id"))
        return
    try:
        await handle_payment_failed(
            db,
            stripe_subscription_id=stripe_subscription_id,
            details={"invoice_id": invoice.get("id"), "attempt_count": invoice.get("attempt_count")},
        )
    except SubscriptionNotFoundError:
        logger.warning("payment failed for unknown stripe subscription %s", stripe_subscription_id)


async def _dispatch(db: AsyncSession, event: Mapping[str, Any], gateway: StripeGateway) -> None:
    event_type = event.get("type")
    if event_type == "checkout.session.completed":
        await _handle_checkout_completed(db, event, gateway)
    elif event_type in ("customer.subscription.created", "customer.subscription.updated"):
        await _handle_subscription_changed(db, event)
    elif event_type == "customer.subscription.deleted":
        await _handle_subscription_deleted(db, event)
    elif event_type in ("invoice.payment_succeeded", "invoice.paid"):
        await _handle_invoice_paid(db, event, gateway)
    elif event_type == "invoice.payment_failed":
        await _handle_invoice_failed(db, event)
    else:
        logger.info("stripe event type %s ignored", event_type)


async def handle_stripe_webhook(
    db: AsyncSession,
    *,
    payload: bytes,
    signature: str,
    gateway: StripeGateway,
    now: datetime.datetime | None = None,
) -> WebhookOutcome:
    if not settings.stripe_webhook_secret:
        raise InvalidStripeSignatureError("stripe webhook secret is not configured")
    try:
        event = construct_stripe_event(payload, signature, settings.stripe_webhook_secret)
    except stripe.SignatureVerificationError as exc:
        raise InvalidStripeSignatureError(str(exc)) from exc
    except ValueError as exc:
        raise InvalidWebhookPayloadError(str(exc)) from exc

    event_id = str(event.get("id") or "")
    event_type = str(event.get("type") or "")
    if not event_id or not event_type or "object" not in (event.get("data") or {}):
        raise InvalidWebhookPayloadError("stripe event is missing id, type or data")
    logger.info("stripe webhook verified: %s %s", event_type, event_id)

    ledger_row, pending = await record_event(
        db,
        provider=WebhookProvider.STRIPE,
        event_id=event_id,
        event_type=event_type,
        payload=event,
        now=now,
    )
    if not pending:
        logger.info("stripe event %s already processed", event_id)
        return WebhookOutcome(event_id=event_id, event_type=event_type, processed=True, duplicate=True)

    try:
        await _dispatch(db, event, gateway)
    except Exception as exc:
        await mark_failed(db, ledger_row, error=f"{type(exc).__name__}: {exc}")
        raise WebhookProcessingError(f"stripe event {event_id} failed") from exc

    await mark_processed(db, ledger_row, now=now)
    logger.info("stripe webhook processed: %s %s", event_type, event_id)
    return WebhookOutcome(event_id=event_id, event_type=event_type, processed=True)
