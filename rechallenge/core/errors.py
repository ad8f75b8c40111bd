"""
Error taxonomy and JSON exception handlers for the Re-Challenge platform.

Every failure surfaced to a client carries a stable machine-readable
``code`` and a human ``message``, rendered as::

    {"error": "<message>", "code": "<CODE>", ...extra}
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

logger = logging.getLogger(__name__)


class AppError(Exception):
    """Base application error rendered as a structured JSON response."""

    code: str = "APP_ERROR"
    status_code: int = status.HTTP_400_BAD_REQUEST
    message: str = "Request failed"

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
        **extra: Any,
    ):
        self.message = message or self.message
        self.code = code or self.code
        self.status_code = status_code or self.status_code
        self.headers = headers
        self.extra = extra
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to the JSON body sent to clients."""
        return {"error": self.message, "code": self.code, **self.extra}


class InvalidInputError(AppError):
    """Missing or malformed request input."""

    code = "VALIDATION_ERROR"
    status_code = status.HTTP_400_BAD_REQUEST
    message = "Invalid request"


class AuthenticationError(AppError):
    """Missing, invalid or expired credentials."""

    code = "AUTH_REQUIRED"
    status_code = status.HTTP_401_UNAUTHORIZED
    message = "Authentication required"


class PermissionDeniedError(AppError):
    """Authenticated but not allowed to perform the action."""

    code = "FORBIDDEN"
    status_code = status.HTTP_403_FORBIDDEN
    message = "Access denied"


class NotFoundError(AppError):
    """Requested resource does not exist."""

    code = "NOT_FOUND"
    status_code = status.HTTP_404_NOT_FOUND
    message = "Resource not found"


class ConflictError(AppError):
    """Request conflicts with the current state of a resource."""

    code = "CONFLICT"
    status_code = status.HTTP_409_CONFLICT
    message = "Conflicting request"


class ConcurrentUpdateError(ConflictError):
    """Optimistic version check lost against a concurrent writer."""

    code = "CONCURRENT_UPDATE"
    message = "The record was modified by another request. Please retry."


class RateLimitedError(AppError):
    """Too many requests within the sliding window."""

    code = "RATE_LIMIT_EXCEEDED"
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    message = "Too many submission attempts. Please wait a moment."

    def __init__(self, retry_after: int, message: str | None = None):
        super().__init__(
            message,
            headers={"Retry-After": str(retry_after)},
            retryAfter=retry_after,
        )
        self.retry_after = retry_after


# ============== Exception Handlers ==============


async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Render an AppError as structured JSON."""
    if exc.status_code >= 500:
        logger.error(f"{exc.code} on {request.method} {request.url.path}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=exc.to_dict(),
        headers=exc.headers,
    )


async def validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    """Render request validation failures as 400 VALIDATION_ERROR."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if location:
        message = f"{location}: {message}"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "error": message,
            "code": "VALIDATION_ERROR",
            "details": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg")}
                for err in errors
            ],
        },
    )


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    """Persistence failures are fatal for the request; the caller must resubmit."""
    logger.exception(f"Database error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "Database error. Please try again later.", "code": "DATABASE_ERROR"},
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the JSON error handlers on the application."""
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
