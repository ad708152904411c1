from __future__ import annotations

import datetime

import pytest

from app.services.revenuecat import (
    InvalidRevenueCatAuthorizationError,
    RevenueCatEvent,
    RevenueCatWebhook,
    verify_authorization,
)


def test_verify_authorization_accepts_raw_and_bearer_secret() -> None:
    verify_authorization("rc-secret", "rc-secret")
    verify_authorization("Bearer rc-secret", "rc-secret")


@pytest.mark.parametrize("header", [None, "", "rc-secre", "Bearer other"])
def test_verify_authorization_rejects_mismatch(header) -> None:
    with pytest.raises(InvalidRevenueCatAuthorizationError):
        verify_authorization(header, "rc-secret")


def test_verify_authorization_skips_check_without_configured_secret(caplog) -> None:
    verify_authorization(None, "")

    assert "not configured" in caplog.text


def test_transaction_key_prefers_original_transaction() -> None:
    event = RevenueCatEvent(
        id="evt",
        type="RENEWAL",
        store="APP_STORE",
        transaction_id="2000",
        original_transaction_id="1000",
    )

    assert event.transaction_key() == "1000"
    assert event.store_subscription_id() == "rc_APP_STORE_1000"
    assert RevenueCatEvent(id="evt", type="RENEWAL", transaction_id="2000").transaction_key() == "2000"
    assert RevenueCatEvent(id="evt", type="RENEWAL").transaction_key() == "evt"


def test_event_timestamps_are_utc_datetimes() -> None:
    event = RevenueCatEvent(
        id="evt",
        type="INITIAL_PURCHASE",
        period_type="trial",
        event_timestamp_ms=1767225600000,
        expiration_at_ms=1767225600500,
    )

    assert event.occurred_at() == datetime.datetime(2026, 1, 1, tzinfo=datetime.UTC)
    assert event.expires_at() == datetime.datetime(2026, 1, 1, 0, 0, 0, 500000, tzinfo=datetime.UTC)
    assert event.purchased_at() is None
    assert event.is_trial() is True


def test_webhook_envelope_ignores_unknown_fields() -> None:
    webhook = RevenueCatWebhook.model_validate(
        {
            "api_version": "1.0",
            "event": {"id": "evt", "type": "TEST", "aliases": ["a"], "price": 9.99},
        }
    )

    assert webhook.event.type == "TEST"
