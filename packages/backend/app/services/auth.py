from __future__ import annotations

import uuid

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import User, UserStatus
from app.security.tokens import AccessTokenValidationError, validate_access_token


class InvalidAccessTokenError(Exception):
    pass


def _normalize_uuid(value: object) -> str:
    return str(value).replace("-", "").lower()


def _uuid_match(column: object, value: object):
    return func.lower(func.replace(column, "-", "")) == _normalize_uuid(value)


def _coerce_uuid(value: object) -> uuid.UUID | None:
    if isinstance(value, uuid.UUID):
        return value
    if value is None:
        return None
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _uuids_equal(left: object, right: object) -> bool:
    return _coerce_uuid(left) == _coerce_uuid(right)


async def get_user_from_access_token(db: AsyncSession, access_token: str) -> User:
    try:
        claims = validate_access_token(access_token)
    except AccessTokenValidationError as exc:
        raise InvalidAccessTokenError("invalid access token") from exc

    user = (
        await db.execute(
            select(User).where(
                _uuid_match(User.id, claims.sub),
                User.status == UserStatus.ACTIVE,
            )
        )
    ).scalar_one_or_none()
    if (
        user is None
        or user.email != claims.email
        or not _uuids_equal(user.org_id, claims.org_id)
    ):
        raise InvalidAccessTokenError("invalid access token")
    return user
