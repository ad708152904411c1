from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_platform_admin
from app.api.v1.billing import billing_problem
from app.api.v1.item_shares import get_email_sender
from app.core.problems import problem_response
from app.db.session import get_db_session
from app.models.user import User
from app.schemas.admin import (
    AdminSubscriptionItemResponse,
    AdminSubscriptionListResponse,
    BulkEmailCreatedResponse,
    BulkEmailJobResponse,
    BulkEmailRequest,
    GrantSubscriptionRequest,
    RevokeSubscriptionRequest,
)
from app.schemas.billing import SubscriptionResponse
from app.services.bulk_email import (
    BulkEmailJobNotFoundError,
    BulkEmailRegistry,
    BulkEmailValidationError,
    create_bulk_email_job,
    get_bulk_email_registry,
)
from app.services.email import EmailSender
from app.services.subscription import (
    OrganizationNotFoundError,
    PlanNotFoundError,
    ProviderManagedSubscriptionError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    get_plan_by_id,
    grant_manual_subscription,
    list_admin_subscriptions,
    revoke_manual_subscription,
)


router = APIRouter(prefix="/api/v1/admin", tags=["admin"])

_SUBSCRIPTION_ERRORS = (
    SubscriptionNotFoundError,
    PlanNotFoundError,
    OrganizationNotFoundError,
    SubscriptionValidationError,
    ProviderManagedSubscriptionError,
)


def _request_context(request: Request) -> tuple[str, str]:
    client_ip = request.client.host if request.client and request.client.host else "0.0.0.0"
    return client_ip, request.headers.get("user-agent", "")


@router.get("/subscriptions", response_model=AdminSubscriptionListResponse)
async def list_subscriptions_endpoint(
    search: str | None = Query(default=None, max_length=255),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _: User = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
) -> AdminSubscriptionListResponse:
    page = await list_admin_subscriptions(db, search=search, limit=limit, offset=offset)
    return AdminSubscriptionListResponse(
        items=[AdminSubscriptionItemResponse.from_row(row) for row in page.items],
        total=page.total,
        limit=limit,
        offset=offset,
    )


@router.post("/organizations/{org_id}/subscription/grant", response_model=SubscriptionResponse)
async def grant_subscription_endpoint(
    org_id: uuid.UUID,
    payload: GrantSubscriptionRequest,
    request: Request,
    current_user: User = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    client_ip, user_agent = _request_context(request)
    try:
        subscription = await grant_manual_subscription(
            db,
            actor=current_user,
            org_id=org_id,
            plan_code=payload.plan_code,
            ends_at=payload.ends_at,
            note=payload.note,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SUBSCRIPTION_ERRORS as exc:
        return billing_problem(exc)
    plan = await get_plan_by_id(db, subscription.plan_id)
    return SubscriptionResponse.from_subscription(subscription, plan)


@router.post("/organizations/{org_id}/subscription/revoke", response_model=SubscriptionResponse)
async def revoke_subscription_endpoint(
    org_id: uuid.UUID,
    payload: RevokeSubscriptionRequest,
    request: Request,
    current_user: User = Depends(require_platform_admin),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    client_ip, user_agent = _request_context(request)
    try:
        subscription = await revoke_manual_subscription(
            db,
            actor=current_user,
            org_id=org_id,
            note=payload.note,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _SUBSCRIPTION_ERRORS as exc:
        return billing_problem(exc)
    plan = await get_plan_by_id(db, subscription.plan_id)
    return SubscriptionResponse.from_subscription(subscription, plan)


@router.post("/mail/bulk", response_model=BulkEmailCreatedResponse, status_code=202)
async def create_bulk_email_endpoint(
    payload: BulkEmailRequest,
    request: Request,
    current_user: User = Depends(require_platform_admin),
    registry: BulkEmailRegistry = Depends(get_bulk_email_registry),
    email_sender: EmailSender = Depends(get_email_sender),
    db: AsyncSession = Depends(get_db_session),
) -> BulkEmailCreatedResponse:
    client_ip, user_agent = _request_context(request)
    try:
        queued = await create_bulk_email_job(
            db,
            registry=registry,
            actor=current_user,
            recipients=payload.recipients,
            subject=payload.subject,
            message=payload.message,
            email_sender=email_sender,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except BulkEmailValidationError as exc:
        return problem_response(status=422, title="Unprocessable Entity", detail=str(exc), slug="bulk-email-invalid")
    return BulkEmailCreatedResponse(job=BulkEmailJobResponse.from_job(queued.job), invalid=queued.invalid)


@router.get("/mail/bulk/{job_id}", response_model=BulkEmailJobResponse)
async def get_bulk_email_job_endpoint(
    job_id: str,
    _: User = Depends(require_platform_admin),
    registry: BulkEmailRegistry = Depends(get_bulk_email_registry),
) -> BulkEmailJobResponse:
    try:
        job = await registry.get(job_id)
    except BulkEmailJobNotFoundError as exc:
        return problem_response(status=404, title="Not Found", detail=str(exc), slug="bulk-email-job-not-found")
    return BulkEmailJobResponse.from_job(job)
