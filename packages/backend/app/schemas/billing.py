from __future__ import annotations

import datetime
import uuid
from typing import Any, Literal

from pydantic import BaseModel, Field


def _enum_value(value: object) -> str | None:
    if value is None:
        return None
    return str(getattr(value, "value", value)).lower()


def _as_utc(value: datetime.datetime | None) -> datetime.datetime | None:
    if value is None:
        return None
    return value if value.tzinfo is not None else value.replace(tzinfo=datetime.UTC)


class PlanResponse(BaseModel):
    id: uuid.UUID
    code: str
    name: str
    billing_cycle: str
    price_cents: int
    currency: str
    trial_days: int
    max_users: int | None = None
    max_items: int | None = None

    @classmethod
    def from_plan(cls, plan: Any) -> "PlanResponse":
        return cls(
            id=plan.id,
            code=plan.code,
            name=plan.name,
            billing_cycle=_enum_value(plan.billing_cycle) or "monthly",
            price_cents=plan.price_cents,
            currency=plan.currency,
            trial_days=plan.trial_days,
            max_users=plan.max_users,
            max_items=plan.max_items,
        )


class SubscriptionResponse(BaseModel):
    id: uuid.UUID
    state: str
    plan: PlanResponse | None = None
    seats_purchased: int | None = None
    started_at: datetime.datetime | None = None
    renew_at: datetime.datetime | None = None
    cancel_at: datetime.datetime | None = None
    ended_at: datetime.datetime | None = None
    grace_period_ends_at: datetime.datetime | None = None
    trial_ends_at: datetime.datetime | None = None
    is_manual: bool
    is_active: bool
    can_write: bool
    note: str | None = None

    @classmethod
    def from_subscription(cls, subscription: Any, plan: Any | None) -> "SubscriptionResponse":
        return cls(
            id=subscription.id,
            state=_enum_value(subscription.state) or "draft",
            plan=PlanResponse.from_plan(plan) if plan is not None else None,
            seats_purchased=subscription.seats_purchased,
            started_at=_as_utc(subscription.started_at),
            renew_at=_as_utc(subscription.renew_at),
            cancel_at=_as_utc(subscription.cancel_at),
            ended_at=_as_utc(subscription.ended_at),
            grace_period_ends_at=_as_utc(subscription.grace_period_ends_at),
            trial_ends_at=_as_utc(subscription.trial_ends_at),
            is_manual=subscription.is_manual(),
            is_active=subscription.is_active(),
            can_write=subscription.can_write(),
            note=subscription.note,
        )


class InvoiceResponse(BaseModel):
    id: str | None = None
    status: str | None = None
    amount_cents: int
    currency: str
    issued_at: datetime.datetime | None = None
    paid_at: datetime.datetime | None = None
    hosted_invoice_url: str | None = None
    invoice_pdf_url: str | None = None

    @classmethod
    def from_summary(cls, invoice: Any) -> "InvoiceResponse":
        return cls(
            id=invoice.id,
            status=invoice.status,
            amount_cents=invoice.amount_cents,
            currency=invoice.currency,
            issued_at=invoice.issued_at,
            paid_at=invoice.paid_at,
            hosted_invoice_url=invoice.hosted_invoice_url,
            invoice_pdf_url=invoice.invoice_pdf_url,
        )


class BillingInfoResponse(BaseModel):
    organization_id: uuid.UUID
    organization_name: str
    subscription: SubscriptionResponse | None = None
    member_count: int
    seats: int | None = None
    invoices: list[InvoiceResponse] = Field(default_factory=list)

    @classmethod
    def from_info(cls, info: Any) -> "BillingInfoResponse":
        subscription = info.subscription
        return cls(
            organization_id=info.organization.id,
            organization_name=info.organization.name,
            subscription=(
                SubscriptionResponse.from_subscription(subscription, info.plan) if subscription is not None else None
            ),
            member_count=info.member_count,
            seats=subscription.seats_purchased if subscription is not None else None,
            invoices=[InvoiceResponse.from_summary(invoice) for invoice in info.invoices],
        )


class CheckoutRequest(BaseModel):
    plan: str = Field(min_length=1, max_length=64)
    billing_cycle: Literal["monthly", "yearly"] = "monthly"
    seats: int = Field(default=1, ge=1, le=10000)


class CheckoutResponse(BaseModel):
    session_id: str
    url: str
    seats: int


class SeatsUpdateRequest(BaseModel):
    seats: int = Field(ge=1, le=10000)
