from __future__ import annotations

import datetime
import uuid

import pytest
from fastapi import Depends, FastAPI
from httpx import ASGITransport, AsyncClient

from app.api.dependencies.auth import get_current_user, require_admin, require_platform_admin
from app.db.session import get_db_session
from app.models.user import User
from app.security.tokens import issue_access_token
from conftest import bearer


def _build_test_app(session_factory) -> FastAPI:
    app = FastAPI()

    @app.get("/protected")
    async def protected(user: User = Depends(get_current_user)) -> dict[str, str]:
        return {"email": user.email}

    @app.get("/admin")
    async def admin_only(_: User = Depends(require_admin)) -> dict[str, bool]:
        return {"ok": True}

    @app.get("/platform")
    async def platform_only(_: User = Depends(require_platform_admin)) -> dict[str, bool]:
        return {"ok": True}

    async def override_get_db_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db_session] = override_get_db_session
    return app


async def _get(app: FastAPI, path: str, headers: dict[str, str] | None = None):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(path, headers=headers or {})


@pytest.mark.asyncio
async def test_valid_token_resolves_current_user(session_factory, seed) -> None:
    org_id = await seed.organization()
    user_id = await seed.user(org_id=org_id, email="dep@example.com")

    response = await _get(_build_test_app(session_factory), "/protected", bearer(user_id, org_id, "dep@example.com"))

    assert response.status_code == 200
    assert response.json() == {"email": "dep@example.com"}


@pytest.mark.asyncio
async def test_missing_and_expired_tokens_get_bearer_challenge(session_factory) -> None:
    expired_token, _ = issue_access_token(
        user_id=uuid.uuid4(),
        org_id=uuid.uuid4(),
        email="expired@example.com",
        role="member",
        now=datetime.datetime.now(datetime.UTC),
        expires_in=datetime.timedelta(seconds=-1),
    )
    app = _build_test_app(session_factory)

    missing = await _get(app, "/protected")
    expired = await _get(app, "/protected", {"Authorization": f"Bearer {expired_token}"})

    assert missing.status_code == 401
    assert expired.status_code == 401
    assert expired.headers["www-authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_token_for_suspended_user_is_rejected(session_factory, seed) -> None:
    org_id = await seed.organization()
    user_id = await seed.user(org_id=org_id, email="gone@example.com", status="SUSPENDED")

    response = await _get(_build_test_app(session_factory), "/protected", bearer(user_id, org_id, "gone@example.com"))

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_token_with_stale_email_is_rejected(session_factory, seed) -> None:
    org_id = await seed.organization()
    user_id = await seed.user(org_id=org_id, email="current@example.com")

    response = await _get(_build_test_app(session_factory), "/protected", bearer(user_id, org_id, "old@example.com"))

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_require_admin_uses_stored_role(session_factory, seed) -> None:
    org_id = await seed.organization()
    member_id = await seed.user(org_id=org_id, email="member@example.com")
    admin_id = await seed.user(org_id=org_id, email="admin@example.com", role="ADMIN")
    app = _build_test_app(session_factory)

    # The token claims admin but the row says member.
    member = await _get(app, "/admin", bearer(member_id, org_id, "member@example.com", role="admin"))
    admin = await _get(app, "/admin", bearer(admin_id, org_id, "admin@example.com", role="admin"))

    assert member.status_code == 403
    assert admin.status_code == 200


@pytest.mark.asyncio
async def test_require_platform_admin_ignores_org_role(session_factory, seed) -> None:
    org_id = await seed.organization()
    owner_id = await seed.user(org_id=org_id, email="owner@example.com", role="OWNER")
    staff_id = await seed.user(org_id=org_id, email="staff@example.com", is_platform_admin=True)
    app = _build_test_app(session_factory)

    owner = await _get(app, "/platform", bearer(owner_id, org_id, "owner@example.com", role="owner"))
    staff = await _get(app, "/platform", bearer(staff_id, org_id, "staff@example.com"))

    assert owner.status_code == 403
    assert staff.status_code == 200
