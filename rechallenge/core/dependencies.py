"""
FastAPI Dependencies for Re-Challenge CTF Platform.

Reusable dependencies for database sessions, bearer authentication and
role/approval checks.
"""

from datetime import datetime, timezone
from typing import Annotated, AsyncGenerator

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rechallenge.core.database import get_db
from rechallenge.core.errors import AuthenticationError, PermissionDeniedError
from rechallenge.models.user import User
from rechallenge.services.auth_service import token_subject
from rechallenge.services.rate_limiter import (
    SubmissionRateLimiter,
    get_submission_rate_limiter,
)

# Security scheme for API documentation
security = HTTPBearer(auto_error=False)


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting database sessions."""
    async for session in get_db():
        yield session


DbSession = Annotated[AsyncSession, Depends(get_db_session)]


async def get_current_user(
    session: DbSession,
    authorization: Annotated[HTTPAuthorizationCredentials | None, Depends(security)] = None,
) -> User:
    """
    Get the currently authenticated user from the Bearer token.

    Raises:
        AuthenticationError: If the token is missing, invalid or expired,
            or the user no longer exists
    """
    if not authorization or not authorization.credentials:
        raise AuthenticationError(
            "Access token required",
            code="TOKEN_REQUIRED",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = token_subject(authorization.credentials)
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()

    if not user:
        raise AuthenticationError("User not found", code="USER_NOT_FOUND")

    user.last_activity = datetime.now(timezone.utc)
    return user


CurrentUser = Annotated[User, Depends(get_current_user)]


async def require_approved(user: CurrentUser) -> User:
    """
    Require an approved account (admins always pass).

    Raises:
        PermissionDeniedError: If the account is pending approval
    """
    if not user.can_play:
        raise PermissionDeniedError("Account pending approval", code="PENDING_APPROVAL")
    return user


ApprovedUser = Annotated[User, Depends(require_approved)]


async def require_admin(user: CurrentUser) -> User:
    """
    Require that the current user is an admin.

    Raises:
        PermissionDeniedError: If user is not an admin
    """
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required", code="ADMIN_ACCESS_REQUIRED")
    return user


AdminUser = Annotated[User, Depends(require_admin)]


RateLimiter = Annotated[SubmissionRateLimiter, Depends(get_submission_rate_limiter)]
