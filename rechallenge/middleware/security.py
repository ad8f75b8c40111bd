"""
Security Middleware for Re-Challenge CTF Platform.

Per-address rate limiting for the login endpoint and security headers on
every response.
"""

from collections.abc import Callable

from fastapi import FastAPI, Request, Response, status
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.middleware.base import BaseHTTPMiddleware

from rechallenge.core.config import get_settings

settings = get_settings()

# ============== Rate Limiting ==============

# Initialize slowapi limiter keyed by client address
limiter = Limiter(key_func=get_remote_address)


# ============== Security Headers ==============

class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Security Headers Middleware.

    Adds security headers to all responses:
    - HSTS (HTTP Strict Transport Security)
    - X-Frame-Options
    - X-Content-Type-Options
    - Referrer-Policy
    """

    def __init__(
        self,
        app: FastAPI,
        hsts_max_age: int = 31536000,  # 1 year
        hsts_include_subdomains: bool = True,
    ):
        super().__init__(app)
        self.hsts_max_age = hsts_max_age
        self.hsts_include_subdomains = hsts_include_subdomains

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """Add security headers to response."""
        response = await call_next(request)

        hsts_value = f"max-age={self.hsts_max_age}"
        if self.hsts_include_subdomains:
            hsts_value += "; includeSubDomains"
        response.headers["Strict-Transport-Security"] = hsts_value

        # API responses are never framed or sniffed
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"

        return response


# ============== Rate Limit Exception Handler ==============

def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Render slowapi rejections in the platform's error format."""
    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={
            "error": "Too many login attempts. Please try again later.",
            "code": "RATE_LIMIT_EXCEEDED",
            "limit": str(exc.detail),
        },
        headers={"Retry-After": "60"},
    )


# ============== Setup Function ==============

def setup_security_middleware(app: FastAPI) -> None:
    """
    Setup security middleware for the FastAPI application.

    This function should be called after creating the FastAPI app
    but before adding routes.
    """
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_middleware(SecurityHeadersMiddleware)


# ============== Decorators for Rate Limiting ==============

def rate_limit_login() -> Callable:
    """Rate limit decorator for the login endpoint."""
    return limiter.limit(settings.login_rate_limit)
