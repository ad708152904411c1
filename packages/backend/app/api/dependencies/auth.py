from __future__ import annotations

from collections.abc import Awaitable, Callable

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from app.db.session import get_db_session
from app.models.user import User, UserRole
from app.services.auth import InvalidAccessTokenError, get_user_from_access_token


bearer_scheme = HTTPBearer(auto_error=False)

# Membership roles, weakest first.
ROLE_ORDER: tuple[UserRole, ...] = (UserRole.MEMBER, UserRole.ADMIN, UserRole.OWNER)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def _role_rank(role: object) -> int | None:
    try:
        resolved = role if isinstance(role, UserRole) else UserRole(str(role).strip().lower())
    except ValueError:
        return None
    return ROLE_ORDER.index(resolved)


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    if credentials is None or not credentials.credentials.strip():
        raise _unauthorized("Missing bearer token.")
    if credentials.scheme.lower() != "bearer":
        raise _unauthorized("Invalid authorization scheme.")
    try:
        return await get_user_from_access_token(db, credentials.credentials)
    except InvalidAccessTokenError as exc:
        raise _unauthorized("Invalid or expired access token.") from exc


def require_org_role(minimum: UserRole) -> Callable[[User], Awaitable[User]]:
    """Dependency admitting members whose stored role is at least ``minimum``."""
    required_rank = ROLE_ORDER.index(minimum)

    async def dependency(current_user: User = Depends(get_current_user)) -> User:
        rank = _role_rank(current_user.role)
        if rank is None or rank < required_rank:
            raise _forbidden("Insufficient permissions for this resource.")
        return current_user

    return dependency


def require_admin(current_user: User = Depends(require_org_role(UserRole.ADMIN))) -> User:
    return current_user


def require_platform_admin(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.is_platform_admin:
        raise _forbidden("Platform administrator access is required.")
    return current_user
