from __future__ import annotations

import asyncio

import pytest
from httpx import ASGITransport, AsyncClient

from app.api.v1.item_shares import get_email_sender
from app.main import app
from app.services.bulk_email import BulkEmailRegistry, get_bulk_email_registry
from conftest import bearer


@pytest.fixture
def bulk_registry(session_factory, email_sender) -> BulkEmailRegistry:
    registry = BulkEmailRegistry(batch_size=10, batch_delay_seconds=0, max_attempts=2, initial_backoff_seconds=0)
    app.dependency_overrides[get_bulk_email_registry] = lambda: registry
    app.dependency_overrides[get_email_sender] = lambda: email_sender
    return registry


async def _platform_admin(seed) -> dict[str, str]:
    org_id = await seed.organization(name="Passwall Staff")
    admin_id = await seed.user(org_id=org_id, email="staff@passwall.io", role="OWNER", is_platform_admin=True)
    return bearer(admin_id, org_id, "staff@passwall.io", role="owner")


async def _wait_until_done(client: AsyncClient, job_id: str, headers: dict[str, str]) -> dict:
    for _ in range(100):
        response = await client.get(f"/api/v1/admin/mail/bulk/{job_id}", headers=headers)
        body = response.json()
        if body["state"] in ("finished", "failed"):
            return body
        await asyncio.sleep(0.01)
    raise AssertionError(f"bulk email job {job_id} did not finish")


@pytest.mark.asyncio
async def test_bulk_email_skips_malformed_addresses_and_sends_the_rest(seed, bulk_registry, email_sender) -> None:
    headers = await _platform_admin(seed)
    recipients = [f"customer{index}@example.com" for index in range(22)]
    recipients += ["missing-at-sign", "two@@example.com", "@example.com"]

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        created = await client.post(
            "/api/v1/admin/mail/bulk",
            json={"recipients": recipients, "subject": "Scheduled maintenance", "message": "We will be down briefly."},
            headers=headers,
        )
        assert created.status_code == 202
        body = created.json()
        finished = await _wait_until_done(client, body["job"]["id"], headers)

    assert len(body["invalid"]) == 3
    assert body["job"]["total"] == 22
    assert finished["state"] == "finished"
    assert (finished["sent"], finished["failed"]) == (22, 0)
    assert len(email_sender.sent) == 22
    assert email_sender.sent[0]["subject"] == "Scheduled maintenance"
    assert await seed.audit_actions() == ["BULK_EMAIL_QUEUED"]
    details = (await seed.audit_details("BULK_EMAIL_QUEUED"))[0]
    assert (details["total"], details["invalid"]) == (22, 3)


@pytest.mark.asyncio
async def test_bulk_email_without_valid_recipients_is_rejected(seed, bulk_registry) -> None:
    headers = await _platform_admin(seed)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/v1/admin/mail/bulk",
            json={"recipients": ["nope"], "subject": "Hello", "message": "Body"},
            headers=headers,
        )

    assert response.status_code == 422
    assert response.json()["type"] == "https://passwall.io/errors/bulk-email-invalid"
    assert await seed.count("audit_logs") == 0


@pytest.mark.asyncio
async def test_bulk_email_requires_platform_admin(seed, bulk_registry) -> None:
    org_id = await seed.organization()
    owner_id = await seed.user(org_id=org_id, email="owner@acme.example", role="OWNER")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.post(
            "/api/v1/admin/mail/bulk",
            json={"recipients": ["a@example.com"], "subject": "Hello", "message": "Body"},
            headers=bearer(owner_id, org_id, "owner@acme.example", role="owner"),
        )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_unknown_bulk_email_job_returns_not_found(seed, bulk_registry) -> None:
    headers = await _platform_admin(seed)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/admin/mail/bulk/does-not-exist", headers=headers)

    assert response.status_code == 404
    assert response.json()["type"] == "https://passwall.io/errors/bulk-email-job-not-found"
