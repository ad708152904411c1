from __future__ import annotations

import datetime
import uuid
from dataclasses import dataclass
from typing import Any

import jwt
from jwt import InvalidTokenError

from app.core.settings import settings


ALGORITHM = "RS256"
REQUIRED_CLAIMS = ("sub", "org_id", "email", "role", "iat", "exp", "iss")
KNOWN_ROLES = frozenset({"owner", "admin", "member"})


class AccessTokenValidationError(Exception):
    pass


@dataclass(frozen=True)
class AccessTokenPayload:
    """Claims of a verified access token.

    ``role`` is informational; authorization decisions read the role stored on the user row.
    """

    sub: uuid.UUID
    org_id: uuid.UUID
    email: str
    role: str
    iat: datetime.datetime
    exp: datetime.datetime
    iss: str

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "AccessTokenPayload":
        role = str(claims["role"]).lower()
        if role not in KNOWN_ROLES:
            raise ValueError(f"unknown role {role!r}")
        return cls(
            sub=uuid.UUID(claims["sub"]),
            org_id=uuid.UUID(claims["org_id"]),
            email=str(claims["email"]),
            role=role,
            iat=datetime.datetime.fromtimestamp(int(claims["iat"]), tz=datetime.UTC),
            exp=datetime.datetime.fromtimestamp(int(claims["exp"]), tz=datetime.UTC),
            iss=str(claims["iss"]),
        )


def issue_access_token(
    *,
    user_id: uuid.UUID,
    org_id: uuid.UUID,
    email: str,
    role: str,
    now: datetime.datetime | None = None,
    expires_in: datetime.timedelta | None = None,
) -> tuple[str, datetime.datetime]:
    issued_at = now or datetime.datetime.now(datetime.UTC)
    lifetime = expires_in if expires_in is not None else datetime.timedelta(minutes=settings.jwt_access_ttl_minutes)
    expiry = issued_at + lifetime
    claims = {
        "iss": settings.jwt_issuer,
        "sub": str(user_id),
        "org_id": str(org_id),
        "email": email,
        "role": role,
        "iat": int(issued_at.timestamp()),
        "exp": int(expiry.timestamp()),
    }
    return jwt.encode(claims, settings.normalized_jwt_private_key, algorithm=ALGORITHM), expiry


def validate_access_token(token: str) -> AccessTokenPayload:
    try:
        claims = jwt.decode(
            token,
            settings.normalized_jwt_public_key,
            algorithms=[ALGORITHM],
            issuer=settings.jwt_issuer,
            options={"require": list(REQUIRED_CLAIMS)},
        )
        return AccessTokenPayload.from_claims(claims)
    except InvalidTokenError as exc:
        raise AccessTokenValidationError("invalid access token") from exc
    except (ValueError, KeyError, TypeError) as exc:
        raise AccessTokenValidationError("malformed access token payload") from exc
