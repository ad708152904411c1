from __future__ import annotations

import datetime
import uuid

import pytest
from httpx import ASGITransport, AsyncClient

from app.main import app
from app.models.audit_log import AuditLogAction
from app.services.activity import build_audit_log
from conftest import bearer


BASE_TIME = datetime.datetime(2026, 3, 1, 12, 0, tzinfo=datetime.UTC)


async def _write_trail(session_factory, org_id: uuid.UUID, actor_id: uuid.UUID, other_org_id: uuid.UUID) -> uuid.UUID:
    target_id = uuid.uuid4()
    entries = [
        (org_id, AuditLogAction.SHARE_ITEM, target_id, BASE_TIME),
        (org_id, AuditLogAction.UPDATE_SHARE, target_id, BASE_TIME + datetime.timedelta(hours=1)),
        (org_id, AuditLogAction.REVOKE_SHARE, uuid.uuid4(), BASE_TIME + datetime.timedelta(days=2)),
        (other_org_id, AuditLogAction.SHARE_ITEM, uuid.uuid4(), BASE_TIME),
    ]
    async with session_factory() as session:
        for entry_org, action, entry_target, timestamp in entries:
            session.add(
                build_audit_log(
                    org_id=entry_org,
                    actor_id=actor_id if entry_org == org_id else None,
                    action=action,
                    target_id=entry_target,
                    ip_address="10.0.0.1",
                    user_agent="pytest",
                    details={"item_name": "GitHub"},
                    timestamp=timestamp,
                )
            )
        await session.commit()
    return target_id


async def _org_with_admin(seed):
    org_id = await seed.organization()
    admin_id = await seed.user(org_id=org_id, email="admin@acme.example", role="ADMIN")
    return org_id, admin_id, bearer(admin_id, org_id, "admin@acme.example", role="admin")


@pytest.mark.asyncio
async def test_audit_logs_are_scoped_to_org_and_newest_first(session_factory, seed) -> None:
    org_id, admin_id, headers = await _org_with_admin(seed)
    other_org_id = await seed.organization(name="Other")
    await _write_trail(session_factory, org_id, admin_id, other_org_id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/audit/logs", headers=headers)

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 3
    assert [item["action"] for item in body["items"]] == ["revoke_share", "update_share", "share_item"]
    assert body["items"][0]["details"] == {"item_name": "GitHub"}
    assert {item["org_id"] for item in body["items"]} == {str(org_id)}


@pytest.mark.asyncio
async def test_audit_logs_filter_by_action_target_and_dates(session_factory, seed) -> None:
    org_id, admin_id, headers = await _org_with_admin(seed)
    other_org_id = await seed.organization(name="Other")
    target_id = await _write_trail(session_factory, org_id, admin_id, other_org_id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        by_action = await client.get("/api/v1/audit/logs", params={"action": "share_item"}, headers=headers)
        by_target = await client.get("/api/v1/audit/logs", params={"target_id": str(target_id)}, headers=headers)
        by_window = await client.get(
            "/api/v1/audit/logs",
            params={"start_date": "2026-03-02T00:00:00Z", "end_date": "2026-03-04T00:00:00Z"},
            headers=headers,
        )
        paged = await client.get("/api/v1/audit/logs", params={"page": 2, "per_page": 2}, headers=headers)

    assert by_action.json()["total"] == 1
    assert by_target.json()["total"] == 2
    assert [item["action"] for item in by_window.json()["items"]] == ["revoke_share"]
    assert paged.json()["page"] == 2
    assert [item["action"] for item in paged.json()["items"]] == ["share_item"]


@pytest.mark.asyncio
async def test_audit_logs_reject_inverted_date_range(seed) -> None:
    _, _, headers = await _org_with_admin(seed)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get(
            "/api/v1/audit/logs",
            params={"start_date": "2026-03-05T00:00:00Z", "end_date": "2026-03-01T00:00:00Z"},
            headers=headers,
        )

    assert response.status_code == 400
    assert response.json()["type"] == "https://passwall.io/errors/invalid-audit-filter"


@pytest.mark.asyncio
async def test_audit_logs_require_admin(seed) -> None:
    org_id = await seed.organization()
    member_id = await seed.user(org_id=org_id, email="member@acme.example")

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        response = await client.get("/api/v1/audit/logs", headers=bearer(member_id, org_id, "member@acme.example"))

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_audit_logs_filter_by_category(session_factory, seed) -> None:
    org_id, admin_id, headers = await _org_with_admin(seed)
    other_org_id = await seed.organization(name="Other")
    await _write_trail(session_factory, org_id, admin_id, other_org_id)

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        sharing = await client.get("/api/v1/audit/logs", params={"category": "sharing"}, headers=headers)
        billing = await client.get("/api/v1/audit/logs", params={"category": "billing"}, headers=headers)
        mismatched = await client.get(
            "/api/v1/audit/logs",
            params={"category": "billing", "action": "share_item"},
            headers=headers,
        )

    assert sharing.json()["total"] == 3
    assert {item["category"] for item in sharing.json()["items"]} == {"sharing"}
    assert billing.json() == {"items": [], "total": 0, "page": 1, "per_page": 50}
    assert mismatched.status_code == 400
