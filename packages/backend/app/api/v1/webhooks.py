from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.problems import problem_response
from app.db.session import get_db_session
from app.schemas.webhooks import WebhookAckResponse
from app.services.billing import InvalidStripeSignatureError, handle_stripe_webhook
from app.services.revenuecat import (
    InvalidRevenueCatAuthorizationError,
    RevenueCatUserNotFoundError,
    UnknownProductIDError,
    handle_revenuecat_webhook,
)
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.services.subscription import PlanNotFoundError, SubscriptionNotFoundError
from app.services.webhook_ledger import InvalidWebhookPayloadError, WebhookProcessingError


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/stripe", response_model=WebhookAckResponse)
async def stripe_webhook_endpoint(
    request: Request,
    stripe_signature: str = Header(default="", alias="Stripe-Signature"),
    gateway: StripeGateway = Depends(get_stripe_gateway),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookAckResponse:
    payload = await request.body()
    try:
        outcome = await handle_stripe_webhook(db, payload=payload, signature=stripe_signature, gateway=gateway)
    except (InvalidStripeSignatureError, InvalidWebhookPayloadError) as exc:
        # Acknowledged so Stripe stops redelivering something that can never verify.
        logger.warning("stripe webhook rejected: %s", exc)
        return WebhookAckResponse(received=True, processed=False)
    except WebhookProcessingError as exc:
        return problem_response(
            status=500,
            title="Internal Server Error",
            detail=str(exc),
            slug="webhook-processing-failed",
        )
    return WebhookAckResponse(received=True, processed=outcome.processed, duplicate=outcome.duplicate)


@router.post("/revenuecat", response_model=WebhookAckResponse)
async def revenuecat_webhook_endpoint(
    request: Request,
    authorization: str | None = Header(default=None),
    db: AsyncSession = Depends(get_db_session),
) -> WebhookAckResponse:
    payload = await request.body()
    try:
        outcome = await handle_revenuecat_webhook(db, payload=payload, authorization=authorization)
    except InvalidRevenueCatAuthorizationError as exc:
        logger.warning("revenuecat webhook rejected: %s", exc)
        return problem_response(status=401, title="Unauthorized", detail=str(exc), slug="invalid-webhook-authorization")
    except InvalidWebhookPayloadError as exc:
        logger.warning("revenuecat webhook payload invalid: %s", exc)
        return problem_response(status=400, title="Bad Request", detail=str(exc), slug="invalid-webhook-payload")
    except (UnknownProductIDError, RevenueCatUserNotFoundError, PlanNotFoundError, SubscriptionNotFoundError) as exc:
        return problem_response(
            status=422,
            title="Unprocessable Entity",
            detail=str(exc),
            slug="webhook-event-rejected",
        )
    except WebhookProcessingError as exc:
        return problem_response(
            status=500,
            title="Internal Server Error",
            detail=str(exc),
            slug="webhook-processing-failed",
        )
    return WebhookAckResponse(received=True, processed=outcome.processed, duplicate=outcome.duplicate)
