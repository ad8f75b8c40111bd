"""
Authentication API Endpoints for Re-Challenge CTF Platform.

Handles user registration, login, token refresh and password changes.
"""

from typing import Any

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, Field

from rechallenge.core.config import get_settings
from rechallenge.core.dependencies import CurrentUser, DbSession
from rechallenge.middleware.security import rate_limit_login
from rechallenge.services import auth_service

router = APIRouter(prefix="/auth", tags=["Authentication"])
settings = get_settings()


# ============== Request/Response Models ==============

class RegisterRequest(BaseModel):
    """User registration request."""

    username: str = Field(..., max_length=30)
    email: str = Field(..., max_length=255)
    password: str = Field(..., max_length=128)
    confirm_password: str = Field(..., alias="confirmPassword", max_length=128)

    model_config = {
        "populate_by_name": True,
        "json_schema_extra": {
            "example": {
                "username": "hacker123",
                "email": "user@example.com",
                "password": "securepassword",
                "confirmPassword": "securepassword",
            }
        },
    }


class LoginRequest(BaseModel):
    """User login request."""

    email: str = Field(..., description="Email address")
    password: str = Field(..., description="Password")


class ChangePasswordRequest(BaseModel):
    """Password change request."""

    current_password: str = Field(..., alias="currentPassword")
    new_password: str = Field(..., alias="newPassword", max_length=128)
    confirm_password: str = Field(..., alias="confirmPassword", max_length=128)

    model_config = {"populate_by_name": True}


class AuthResponse(BaseModel):
    """Authentication response with user data and token."""

    message: str
    token: str
    user: dict[str, Any]
    expiresIn: int


class TokenResponse(BaseModel):
    """Token response for API clients."""

    token: str
    tokenType: str = "bearer"
    expiresIn: int


# ============== Endpoints ==============

@router.post(
    "/register",
    response_model=AuthResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register(data: RegisterRequest, session: DbSession) -> AuthResponse:
    """
    Register a new user account.

    New accounts need admin approval before they can start the challenge.
    """
    user = await auth_service.register_user(
        session=session,
        username=data.username,
        email=data.email,
        password=data.password,
        confirm_password=data.confirm_password,
    )

    return AuthResponse(
        message="Registration successful. Please wait for admin approval.",
        token=auth_service.create_user_token(user),
        user=user.to_dict(),
        expiresIn=settings.access_token_expire_minutes * 60,
    )


@router.post("/login", response_model=AuthResponse)
@rate_limit_login()
async def login(request: Request, data: LoginRequest, session: DbSession) -> AuthResponse:
    """
    Authenticate with email and password.

    Limited per client address.
    """
    user = await auth_service.authenticate_user(
        session=session,
        email=data.email,
        password=data.password,
    )

    return AuthResponse(
        message="Login successful",
        token=auth_service.create_user_token(user),
        user=user.to_dict(),
        expiresIn=settings.access_token_expire_minutes * 60,
    )


@router.get("/me")
async def get_me(user: CurrentUser) -> dict[str, Any]:
    """Get the current authenticated user's information."""
    return {"user": user.to_dict()}


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(user: CurrentUser) -> TokenResponse:
    """Issue a fresh access token for a still-valid one."""
    return TokenResponse(
        token=auth_service.create_user_token(user),
        expiresIn=settings.access_token_expire_minutes * 60,
    )


@router.put("/change-password")
async def change_password(
    data: ChangePasswordRequest,
    user: CurrentUser,
    session: DbSession,
) -> dict[str, str]:
    """Change the current user's password."""
    await auth_service.change_password(
        session=session,
        user=user,
        current_password=data.current_password,
        new_password=data.new_password,
        confirm_password=data.confirm_password,
    )
    return {"message": "Password changed successfully"}
