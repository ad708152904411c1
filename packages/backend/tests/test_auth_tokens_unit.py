from __future__ import annotations

import datetime
import uuid

import jwt
import pytest

from app.core.settings import settings
from app.security.tokens import AccessTokenValidationError, issue_access_token, validate_access_token


def test_issued_token_validates_with_claims_intact() -> None:
    now = datetime.datetime.now(datetime.UTC).replace(microsecond=0)
    user_id = uuid.uuid4()
    org_id = uuid.uuid4()

    token, expiry = issue_access_token(
        user_id=user_id,
        org_id=org_id,
        email="unit@example.com",
        role="admin",
        now=now,
    )
    payload = validate_access_token(token)

    assert payload.sub == user_id
    assert payload.org_id == org_id
    assert payload.email == "unit@example.com"
    assert payload.role == "admin"
    assert payload.iss == "passwall"
    assert payload.iat == now
    assert payload.exp == expiry.replace(microsecond=0)
    assert expiry - now == datetime.timedelta(minutes=settings.jwt_access_ttl_minutes)


def test_expired_token_is_rejected() -> None:
    token, _ = issue_access_token(
        user_id=uuid.uuid4(),
        org_id=uuid.uuid4(),
        email="expired@example.com",
        role="member",
        now=datetime.datetime.now(datetime.UTC),
        expires_in=datetime.timedelta(seconds=-1),
    )

    with pytest.raises(AccessTokenValidationError):
        validate_access_token(token)


def test_token_from_another_issuer_is_rejected(monkeypatch) -> None:
    token, _ = issue_access_token(user_id=uuid.uuid4(), org_id=uuid.uuid4(), email="a@example.com", role="member")
    monkeypatch.setattr(settings, "jwt_issuer", "someone-else")

    with pytest.raises(AccessTokenValidationError):
        validate_access_token(token)


def test_token_missing_org_claim_is_rejected() -> None:
    now = datetime.datetime.now(datetime.UTC)
    token = jwt.encode(
        {
            "sub": str(uuid.uuid4()),
            "email": "a@example.com",
            "role": "member",
            "iss": settings.jwt_issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + datetime.timedelta(minutes=5)).timestamp()),
        },
        settings.normalized_jwt_private_key,
        algorithm="RS256",
    )

    with pytest.raises(AccessTokenValidationError):
        validate_access_token(token)


def test_token_with_non_uuid_subject_is_rejected() -> None:
    now = datetime.datetime.now(datetime.UTC)
    token = jwt.encode(
        {
            "sub": "not-a-uuid",
            "org_id": str(uuid.uuid4()),
            "email": "a@example.com",
            "role": "member",
            "iss": settings.jwt_issuer,
            "iat": int(now.timestamp()),
            "exp": int((now + datetime.timedelta(minutes=5)).timestamp()),
        },
        settings.normalized_jwt_private_key,
        algorithm="RS256",
    )

    with pytest.raises(AccessTokenValidationError):
        validate_access_token(token)
