from __future__ import annotations

import datetime
import uuid
from typing import Any

from pydantic import BaseModel, Field

from app.schemas.billing import SubscriptionResponse


class GrantSubscriptionRequest(BaseModel):
    plan_code: str = Field(min_length=1, max_length=64)
    ends_at: datetime.datetime
    note: str | None = Field(default=None, max_length=2000)


class RevokeSubscriptionRequest(BaseModel):
    note: str | None = Field(default=None, max_length=2000)


class AdminSubscriptionItemResponse(BaseModel):
    organization_id: uuid.UUID
    organization_name: str
    owner_email: str | None = None
    member_count: int
    subscription: SubscriptionResponse | None = None
    is_manual: bool
    days_to_end: int | None = None
    risk_expiring: bool

    @classmethod
    def from_row(cls, row: Any) -> "AdminSubscriptionItemResponse":
        return cls(
            organization_id=row.organization.id,
            organization_name=row.organization.name,
            owner_email=row.owner.email if row.owner is not None else None,
            member_count=row.member_count,
            subscription=(
                SubscriptionResponse.from_subscription(row.subscription, row.plan)
                if row.subscription is not None
                else None
            ),
            is_manual=row.is_manual,
            days_to_end=row.days_to_end,
            risk_expiring=row.risk_expiring,
        )


class AdminSubscriptionListResponse(BaseModel):
    items: list[AdminSubscriptionItemResponse]
    total: int
    limit: int
    offset: int


class BulkEmailRequest(BaseModel):
    recipients: list[str] = Field(min_length=1)
    subject: str
    message: str


class BulkEmailFailureResponse(BaseModel):
    email: str
    error: str


class BulkEmailJobResponse(BaseModel):
    id: str
    state: str
    subject: str
    created_at: datetime.datetime
    started_at: datetime.datetime | None = None
    ended_at: datetime.datetime | None = None
    total: int
    sent: int
    failed: int
    failures: list[BulkEmailFailureResponse] = Field(default_factory=list)
    error: str | None = None

    @classmethod
    def from_job(cls, job: Any) -> "BulkEmailJobResponse":
        return cls(
            id=job.id,
            state=job.state,
            subject=job.subject,
            created_at=job.created_at,
            started_at=job.started_at,
            ended_at=job.ended_at,
            total=job.total,
            sent=job.sent,
            failed=job.failed,
            failures=[BulkEmailFailureResponse(email=failure.email, error=failure.error) for failure in job.failures],
            error=job.error,
        )


class BulkEmailCreatedResponse(BaseModel):
    job: BulkEmailJobResponse
    invalid: list[str] = Field(default_factory=list)
