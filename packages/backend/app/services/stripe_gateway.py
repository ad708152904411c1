from __future__ import annotations

import json
import logging
from typing import Any

import stripe

from app.core.settings import settings


logger = logging.getLogger(__name__)


class BillingProviderError(Exception):
    pass


def _plain(value: Any) -> dict[str, Any]:
    # Round-trip through JSON so nested StripeObjects become plain dicts and lists.
    return json.loads(str(value)) if hasattr(value, "to_dict") else dict(value)


class StripeGateway:
    """Thin async wrapper around the Stripe API returning plain dicts.

    Every call carries the configured timeout; SDK errors are re-raised as
    ``BillingProviderError`` with the operation in the message.
    """

    def __init__(self, api_key: str, *, timeout_seconds: float) -> None:
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._client: stripe.StripeClient | None = None

    @property
    def client(self) -> stripe.StripeClient:
        if not self._api_key:
            raise BillingProviderError("stripe is not configured")
        if self._client is None:
            self._client = stripe.StripeClient(
                self._api_key,
                http_client=stripe.HTTPXClient(timeout=self._timeout_seconds),
            )
        return self._client

    async def _call(self, operation: str, coroutine_factory) -> dict[str, Any]:
        try:
            return _plain(await coroutine_factory())
        except stripe.StripeError as exc:
            logger.error("stripe %s failed: %s", operation, exc.user_message or exc)
            raise BillingProviderError(f"stripe {operation} failed: {exc.user_message or exc}") from exc

    async def create_customer(self, *, name: str, email: str | None, org_id: str) -> dict[str, Any]:
        params: dict[str, Any] = {"name": name, "metadata": {"organization_id": org_id}}
        if email:
            params["email"] = email
        return await self._call("customer create", lambda: self.client.customers.create_async(params=params))

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        price_id: str,
        quantity: int,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "mode": "subscription",
            "customer": customer_id,
            "line_items": [{"price": price_id, "quantity": quantity}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        return await self._call(
            "checkout session create",
            lambda: self.client.checkout.sessions.create_async(params=params),
        )

    async def retrieve_subscription(self, stripe_subscription_id: str) -> dict[str, Any]:
        return await self._call(
            "subscription retrieve",
            lambda: self.client.subscriptions.retrieve_async(stripe_subscription_id),
        )

    async def list_customer_subscriptions(self, customer_id: str) -> list[dict[str, Any]]:
        page = await self._call(
            "subscription list",
            lambda: self.client.subscriptions.list_async(
                params={"customer": customer_id, "status": "all", "limit": 20}
            ),
        )
        return list(page.get("data") or [])

    async def cancel_at_period_end(self, stripe_subscription_id: str) -> dict[str, Any]:
        return await self._call(
            "subscription cancel",
            lambda: self.client.subscriptions.update_async(
                stripe_subscription_id,
                params={"cancel_at_period_end": True},
            ),
        )

    async def reactivate(self, stripe_subscription_id: str) -> dict[str, Any]:
        return await self._call(
            "subscription reactivate",
            lambda: self.client.subscriptions.update_async(
                stripe_subscription_id,
                params={"cancel_at_period_end": False},
            ),
        )

    async def update_quantity(self, stripe_subscription_id: str, quantity: int) -> dict[str, Any]:
        subscription = await self.retrieve_subscription(stripe_subscription_id)
        items = (subscription.get("items") or {}).get("data") or []
        if not items:
            raise BillingProviderError(f"stripe subscription {stripe_subscription_id} has no items")
        return await self._call(
            "subscription quantity update",
            lambda: self.client.subscriptions.update_async(
                stripe_subscription_id,
                params={
                    "items": [{"id": items[0]["id"], "quantity": quantity}],
                    "proration_behavior": "create_prorations",
                },
            ),
        )

    async def list_invoices(self, customer_id: str, *, limit: int = 10) -> list[dict[str, Any]]:
        page = await self._call(
            "invoice list",
            lambda: self.client.invoices.list_async(params={"customer": customer_id, "limit": limit}),
        )
        return list(page.get("data") or [])


def construct_stripe_event(payload: bytes, signature: str, secret: str) -> dict[str, Any]:
    """Verify the ``Stripe-Signature`` header and return the event as a plain dict.

    Raises ``stripe.SignatureVerificationError`` or ``ValueError``.
    """
    stripe.Webhook.construct_event(payload, signature, secret)
    return json.loads(payload)


_gateway: StripeGateway | None = None


def get_stripe_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway(settings.stripe_secret_key, timeout_seconds=settings.stripe_timeout_seconds)
    return _gateway
