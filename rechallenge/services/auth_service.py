"""
Authentication Service for Re-Challenge CTF Platform.

Handles user registration, credential checks, password changes and
JWT bearer tokens. New accounts start unapproved; an admin approves them
before they may start the challenge.
"""

import logging
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any

from email_validator import EmailNotValidError, validate_email
from fastapi import status
from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rechallenge.core.config import get_settings
from rechallenge.core.errors import AppError, AuthenticationError, InvalidInputError, PermissionDeniedError
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.models.progress import ChallengeProgress
from rechallenge.models.user import User

logger = logging.getLogger(__name__)
settings = get_settings()
pwd_context = CryptContext(
    schemes=["bcrypt"],
    deprecated="auto",
    bcrypt__rounds=settings.bcrypt_rounds,
)


class CredentialsError(AppError):
    """Unknown email or wrong password (deliberately indistinguishable)."""

    code = "INVALID_CREDENTIALS"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid email or password"


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """Verify a plain password against a hashed password."""
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    """Hash a plain password."""
    return pwd_context.hash(password)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, settings.secret_key, algorithm=settings.algorithm)
    return encoded_jwt


def create_user_token(user: User) -> str:
    """Create an access token whose subject is the user id."""
    return create_access_token({"sub": str(user.id)})


def decode_token(token: str) -> dict[str, Any]:
    """Decode and validate a JWT token."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
    except ExpiredSignatureError as e:
        raise AuthenticationError("Token expired", code="TOKEN_EXPIRED") from e
    except JWTError as e:
        raise AuthenticationError("Invalid token", code="INVALID_TOKEN") from e
    return payload


def token_subject(token: str) -> uuid.UUID:
    """Extract the user id from a token."""
    payload = decode_token(token)
    try:
        return uuid.UUID(str(payload.get("sub")))
    except ValueError as e:
        raise AuthenticationError("Invalid token payload", code="INVALID_TOKEN") from e


def validate_password_pair(password: str, confirm_password: str) -> None:
    """Check confirmation and minimum length."""
    if password != confirm_password:
        raise InvalidInputError("Passwords do not match", code="PASSWORD_MISMATCH")
    if len(password) < settings.password_min_length:
        raise InvalidInputError(
            f"Password must be at least {settings.password_min_length} characters long",
            code="PASSWORD_TOO_SHORT",
        )


def normalize_email(email: str) -> str:
    """Validate an address's syntax and return it lowercased."""
    try:
        validated = validate_email(email.strip(), check_deliverability=False)
    except EmailNotValidError as e:
        raise InvalidInputError(
            "Please provide a valid email address", code="INVALID_EMAIL"
        ) from e
    return validated.normalized.lower()


async def register_user(
    session: AsyncSession,
    username: str,
    email: str,
    password: str,
    confirm_password: str,
) -> User:
    """
    Register a new, unapproved user with an empty progress record.

    Raises:
        AppError: If registration is closed or validation fails
    """
    username = username.strip()

    validate_password_pair(password, confirm_password)
    if len(username) < 3:
        raise InvalidInputError(
            "Username must be at least 3 characters long", code="USERNAME_TOO_SHORT"
        )
    email = normalize_email(email)

    config = await ChallengeConfig.get(session)
    if not config.registration_open:
        raise PermissionDeniedError("Registration is currently closed", code="REGISTRATION_CLOSED")

    result = await session.execute(
        select(User).where(
            or_(User.email == email, func.lower(User.username) == username.lower())
        )
    )
    existing = result.scalars().first()
    if existing is not None:
        if existing.email == email:
            raise InvalidInputError("Email already registered", code="EMAIL_EXISTS")
        raise InvalidInputError("Username already taken", code="USERNAME_EXISTS")

    user = User(
        username=username,
        email=email,
        password_hash=get_password_hash(password),
        is_approved=False,
    )
    user.progress = ChallengeProgress.pristine()
    session.add(user)
    await session.commit()
    await session.refresh(user)

    logger.info(f"Registered user {user.username} ({user.id}), pending approval")
    return user


async def authenticate_user(
    session: AsyncSession,
    email: str,
    password: str,
) -> User:
    """
    Authenticate a user by email and password.

    Unapproved users may log in; approval is enforced per endpoint.

    Raises:
        CredentialsError: If authentication fails
    """
    result = await session.execute(
        select(User).where(User.email == email.strip().lower())
    )
    user = result.scalar_one_or_none()

    if not user or not verify_password(password, user.password_hash):
        logger.warning(f"Failed login attempt for {email!r}")
        raise CredentialsError()

    user.last_activity = datetime.now(timezone.utc)
    await session.commit()
    return user


async def change_password(
    session: AsyncSession,
    user: User,
    current_password: str,
    new_password: str,
    confirm_password: str,
) -> None:
    """
    Replace a user's password after verifying the current one.

    Raises:
        InvalidInputError: On mismatch, weak password or wrong current password
    """
    validate_password_pair(new_password, confirm_password)
    if not verify_password(current_password, user.password_hash):
        raise InvalidInputError(
            "Current password is incorrect", code="INCORRECT_CURRENT_PASSWORD"
        )
    user.password_hash = get_password_hash(new_password)
    await session.commit()
    logger.info(f"Password changed for user {user.id}")
