from __future__ import annotations

import datetime
import json
import uuid
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

from app.core.settings import RevenueCatProduct, settings
from app.main import app
from conftest import sqlite_timestamp


SECRET = "rc_webhook_secret"
PRODUCT = "passwall_premium_monthly"


def _ms(value: datetime.datetime) -> int:
    return int(value.timestamp() * 1000)


def _event(
    user_id: uuid.UUID,
    event_type: str,
    *,
    event_id: str | None = None,
    at: datetime.datetime,
    expires: datetime.datetime | None = None,
    product_id: str = PRODUCT,
    **extra: Any,
) -> bytes:
    event = {
        "id": event_id or f"evt_{uuid.uuid4().hex}",
        "type": event_type,
        "app_user_id": str(user_id),
        "product_id": product_id,
        "store": "APP_STORE",
        "environment": "SANDBOX",
        "period_type": "NORMAL",
        "event_timestamp_ms": _ms(at),
        "purchased_at_ms": _ms(at),
        "original_transaction_id": "1000000001",
        "transaction_id": "1000000001",
        **extra,
    }
    if expires is not None:
        event["expiration_at_ms"] = _ms(expires)
    return json.dumps({"api_version": "1.0", "event": event}).encode("utf-8")


@pytest.fixture
def revenuecat_settings(monkeypatch):
    monkeypatch.setattr(settings, "revenuecat_webhook_secret", SECRET)
    monkeypatch.setattr(settings, "revenuecat_products", {PRODUCT: RevenueCatProduct(plan_code="premium")})


async def _subscriber(seed):
    org_id = await seed.organization(name="Personal")
    user_id = await seed.user(org_id=org_id, email="mobile@example.com", role="OWNER")
    await seed.plan(code="premium")
    return org_id, user_id


async def _post(client: AsyncClient, payload: bytes, *, authorization: str = f"Bearer {SECRET}"):
    return await client.post(
        "/api/v1/webhooks/revenuecat",
        content=payload,
        headers={"Authorization": authorization, "Content-Type": "application/json"},
    )


async def _subscription(seed):
    return await seed.fetch_one(
        "SELECT state, renew_at, store_subscription_id, grace_period_ends_at, cancel_at FROM subscriptions"
    )


@pytest.mark.asyncio
async def test_wrong_authorization_is_rejected(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await _post(client, _event(user_id, "INITIAL_PURCHASE", at=now), authorization="Bearer nope")

    assert response.status_code == 401
    assert await seed.count("webhook_events") == 0


@pytest.mark.asyncio
async def test_malformed_payload_is_rejected(seed, revenuecat_settings) -> None:
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        not_json = await _post(client, b"{not json")
        no_event = await _post(client, json.dumps({"api_version": "1.0"}).encode("utf-8"))

    assert not_json.status_code == 400
    assert no_event.status_code == 400


@pytest.mark.asyncio
async def test_unknown_product_is_rejected_and_recorded(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)
    payload = _event(user_id, "INITIAL_PURCHASE", event_id="evt_unknown_product", at=now, product_id="mystery")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await _post(client, payload)

    assert response.status_code == 422
    assert response.json()["type"] == "https://passwall.io/errors/webhook-event-rejected"
    ledger = await seed.fetch_one("SELECT event_id, processed_at, error FROM webhook_events")
    assert ledger["event_id"] == "evt_unknown_product"
    assert ledger["processed_at"] is None
    assert ledger["error"].startswith("UnknownProductIDError")
    assert await seed.count("subscriptions") == 0


@pytest.mark.asyncio
async def test_unknown_user_is_rejected(seed, revenuecat_settings) -> None:
    await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await _post(client, _event(uuid.uuid4(), "INITIAL_PURCHASE", at=now))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_initial_purchase_creates_user_subscription_once(seed, revenuecat_settings) -> None:
    org_id, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)
    expires = now + datetime.timedelta(days=30)
    payload = _event(user_id, "INITIAL_PURCHASE", event_id="evt_purchase", at=now, expires=expires)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        first = await _post(client, payload)
        second = await _post(client, payload)

    assert first.status_code == 200
    assert first.json() == {"received": True, "processed": True, "duplicate": False}
    assert second.json()["duplicate"] is True
    row = await _subscription(seed)
    assert row["state"] == "ACTIVE"
    assert row["store_subscription_id"] == "rc_APP_STORE_1000000001"
    assert row["renew_at"] == sqlite_timestamp(datetime.datetime.fromtimestamp(_ms(expires) / 1000, tz=datetime.UTC))
    assert await seed.audit_actions() == ["SUBSCRIPTION_CREATED"]
    audit = await seed.fetch_one("SELECT org_id FROM audit_logs")
    assert audit == {"org_id": org_id.hex}


@pytest.mark.asyncio
async def test_trial_purchase_starts_trialing(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)
    payload = _event(
        user_id,
        "INITIAL_PURCHASE",
        at=now,
        expires=now + datetime.timedelta(days=7),
        period_type="TRIAL",
    )

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await _post(client, payload)

    assert response.status_code == 200
    row = await seed.fetch_one("SELECT state, trial_ends_at, renew_at FROM subscriptions")
    assert row["state"] == "TRIALING"
    assert row["trial_ends_at"] == row["renew_at"]


@pytest.mark.asyncio
async def test_repeated_renewals_converge_on_same_row(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)
    expires = now + datetime.timedelta(days=60)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _post(client, _event(user_id, "INITIAL_PURCHASE", at=now, expires=now + datetime.timedelta(days=30)))
        renewal_at = now + datetime.timedelta(days=30)
        first = await _post(client, _event(user_id, "RENEWAL", event_id="evt_r1", at=renewal_at, expires=expires))
        after_first = await _subscription(seed)
        second = await _post(client, _event(user_id, "RENEWAL", event_id="evt_r2", at=renewal_at, expires=expires))

    assert first.status_code == 200
    assert second.status_code == 200
    assert second.json()["duplicate"] is False
    assert await _subscription(seed) == after_first
    assert after_first["state"] == "ACTIVE"
    assert await seed.count("subscriptions") == 1
    assert await seed.count("webhook_events") == 3


@pytest.mark.asyncio
async def test_billing_issue_then_expiration(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)
    grace_end = now + datetime.timedelta(days=16)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _post(client, _event(user_id, "INITIAL_PURCHASE", at=now, expires=now + datetime.timedelta(days=1)))
        issue = await _post(
            client,
            _event(
                user_id,
                "BILLING_ISSUE",
                at=now + datetime.timedelta(days=1),
                grace_period_expiration_at_ms=_ms(grace_end),
            ),
        )
        past_due = await _subscription(seed)
        expired = await _post(client, _event(user_id, "EXPIRATION", at=now + datetime.timedelta(days=17)))

    assert issue.status_code == 200
    assert past_due["state"] == "PAST_DUE"
    assert past_due["grace_period_ends_at"] == sqlite_timestamp(
        datetime.datetime.fromtimestamp(_ms(grace_end) / 1000, tz=datetime.UTC)
    )
    assert expired.status_code == 200
    row = await _subscription(seed)
    assert row["state"] == "EXPIRED"
    assert row["grace_period_ends_at"] is None
    assert await seed.audit_actions() == ["SUBSCRIPTION_CREATED", "SUBSCRIPTION_EXPIRED"]


@pytest.mark.asyncio
async def test_out_of_order_cancellation_is_ignored(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _post(client, _event(user_id, "INITIAL_PURCHASE", at=now, expires=now + datetime.timedelta(days=30)))
        stale = await _post(client, _event(user_id, "CANCELLATION", at=now - datetime.timedelta(hours=1)))

    assert stale.status_code == 200
    row = await _subscription(seed)
    assert row["state"] == "ACTIVE"
    assert row["cancel_at"] is None


@pytest.mark.asyncio
async def test_cancellation_keeps_access_until_expiry(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)
    expires = now + datetime.timedelta(days=30)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        await _post(client, _event(user_id, "INITIAL_PURCHASE", at=now, expires=expires))
        canceled = await _post(
            client,
            _event(
                user_id,
                "CANCELLATION",
                at=now + datetime.timedelta(days=2),
                expires=expires,
                cancel_reason="UNSUBSCRIBE",
            ),
        )

    assert canceled.status_code == 200
    row = await _subscription(seed)
    assert row["state"] == "CANCELED"
    assert row["cancel_at"] is not None
    assert (await seed.audit_details("SUBSCRIPTION_CANCELED"))[0]["reason"] == "UNSUBSCRIBE"


@pytest.mark.asyncio
async def test_uncancellation_without_subscription_is_rejected(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await _post(client, _event(user_id, "UNCANCELLATION", at=now))

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_test_event_is_acknowledged_without_changes(seed, revenuecat_settings) -> None:
    _, user_id = await _subscriber(seed)
    now = datetime.datetime.now(datetime.UTC)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await _post(client, _event(user_id, "TEST", at=now))

    assert response.status_code == 200
    assert response.json() == {"received": True, "processed": False, "duplicate": False}
    assert await seed.count("subscriptions") == 0
