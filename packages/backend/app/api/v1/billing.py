from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.dependencies.auth import require_admin
from app.core.problems import problem_response
from app.db.session import get_db_session
from app.models.subscription import Subscription
from app.models.user import User
from app.schemas.billing import (
    BillingInfoResponse,
    CheckoutRequest,
    CheckoutResponse,
    SeatsUpdateRequest,
    SubscriptionResponse,
)
from app.services.activity import ActivityLogger, get_activity_logger
from app.services.billing import create_checkout_session, get_billing_info, sync_subscription
from app.services.stripe_gateway import BillingProviderError, StripeGateway, get_stripe_gateway
from app.services.subscription import (
    OrganizationNotFoundError,
    PlanNotFoundError,
    ProviderManagedSubscriptionError,
    SubscriptionForbiddenError,
    SubscriptionNotFoundError,
    SubscriptionValidationError,
    cancel_subscription,
    get_plan_by_id,
    reactivate_subscription,
    update_subscription_seats,
)


router = APIRouter(prefix="/api/v1/billing", tags=["billing"])

_BILLING_ERRORS = (
    SubscriptionNotFoundError,
    PlanNotFoundError,
    OrganizationNotFoundError,
    SubscriptionForbiddenError,
    SubscriptionValidationError,
    ProviderManagedSubscriptionError,
    BillingProviderError,
)


def _request_context(request: Request) -> tuple[str, str]:
    client_ip = request.client.host if request.client and request.client.host else "0.0.0.0"
    return client_ip, request.headers.get("user-agent", "")


def billing_problem(exc: Exception) -> JSONResponse:
    if isinstance(exc, (SubscriptionNotFoundError, PlanNotFoundError, OrganizationNotFoundError)):
        return problem_response(status=404, title="Not Found", detail=str(exc), slug="subscription-not-found")
    if isinstance(exc, SubscriptionForbiddenError):
        return problem_response(status=403, title="Forbidden", detail=str(exc), slug="subscription-forbidden")
    if isinstance(exc, SubscriptionValidationError):
        return problem_response(
            status=422,
            title="Unprocessable Entity",
            detail=str(exc),
            slug="subscription-invalid",
        )
    if isinstance(exc, ProviderManagedSubscriptionError):
        return problem_response(status=409, title="Conflict", detail=str(exc), slug="provider-managed-subscription")
    if isinstance(exc, BillingProviderError):
        return problem_response(status=502, title="Bad Gateway", detail=str(exc), slug="billing-provider-error")
    raise exc


async def _subscription_response(db: AsyncSession, subscription: Subscription) -> SubscriptionResponse:
    plan = await get_plan_by_id(db, subscription.plan_id)
    return SubscriptionResponse.from_subscription(subscription, plan)


@router.get("", response_model=BillingInfoResponse)
async def get_billing_info_endpoint(
    current_user: User = Depends(require_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db_session),
) -> BillingInfoResponse:
    try:
        info = await get_billing_info(db, current_user=current_user, gateway=gateway)
    except _BILLING_ERRORS as exc:
        return billing_problem(exc)
    return BillingInfoResponse.from_info(info)


@router.post("/checkout", response_model=CheckoutResponse, status_code=201)
async def create_checkout_endpoint(
    payload: CheckoutRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    activity_logger: ActivityLogger = Depends(get_activity_logger),
    db: AsyncSession = Depends(get_db_session),
) -> CheckoutResponse:
    client_ip, user_agent = _request_context(request)
    try:
        session = await create_checkout_session(
            db,
            current_user=current_user,
            plan_code=payload.plan,
            billing_cycle=payload.billing_cycle,
            seats=payload.seats,
            gateway=gateway,
            activity_logger=activity_logger,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _BILLING_ERRORS as exc:
        return billing_problem(exc)
    return CheckoutResponse(session_id=session.session_id, url=session.url, seats=session.seats)


@router.post("/sync", response_model=SubscriptionResponse)
async def sync_subscription_endpoint(
    request: Request,
    current_user: User = Depends(require_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    client_ip, user_agent = _request_context(request)
    try:
        subscription = await sync_subscription(
            db,
            current_user=current_user,
            gateway=gateway,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _BILLING_ERRORS as exc:
        return billing_problem(exc)
    return await _subscription_response(db, subscription)


@router.post("/cancel", response_model=SubscriptionResponse)
async def cancel_subscription_endpoint(
    request: Request,
    current_user: User = Depends(require_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    client_ip, user_agent = _request_context(request)
    try:
        subscription = await cancel_subscription(
            db,
            current_user=current_user,
            gateway=gateway,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _BILLING_ERRORS as exc:
        return billing_problem(exc)
    return await _subscription_response(db, subscription)


@router.post("/reactivate", response_model=SubscriptionResponse)
async def reactivate_subscription_endpoint(
    request: Request,
    current_user: User = Depends(require_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    client_ip, user_agent = _request_context(request)
    try:
        subscription = await reactivate_subscription(
            db,
            current_user=current_user,
            gateway=gateway,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _BILLING_ERRORS as exc:
        return billing_problem(exc)
    return await _subscription_response(db, subscription)


@router.patch("/seats", response_model=SubscriptionResponse)
async def update_seats_endpoint(
    payload: SeatsUpdateRequest,
    request: Request,
    current_user: User = Depends(require_admin),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db_session),
) -> SubscriptionResponse:
    client_ip, user_agent = _request_context(request)
    try:
        subscription = await update_subscription_seats(
            db,
            current_user=current_user,
            seats=payload.seats,
            gateway=gateway,
            client_ip=client_ip,
            user_agent=user_agent,
        )
    except _BILLING_ERRORS as exc:
        return billing_problem(exc)
    return await _subscription_response(db, subscription)
