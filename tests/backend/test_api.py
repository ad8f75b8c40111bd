"""
HTTP API Tests for Re-Challenge CTF Platform.

Runs the FastAPI app in-process through httpx's ASGI transport. The
database session, the authenticated user and the submission limiter are
replaced with dependency overrides; service calls are patched where a
test only cares about the HTTP mapping.
"""

from collections.abc import AsyncGenerator
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from rechallenge.core.dependencies import get_current_user, get_db_session
from rechallenge.core.errors import RateLimitedError
from rechallenge.main import app
from rechallenge.services import admin_service, auth_service, challenge_service
from rechallenge.services.rate_limiter import get_submission_rate_limiter
from rechallenge.services.state_machine import ChallengeAlreadyEndedError, SessionState


@pytest_asyncio.fixture
async def client(db_session, mock_rate_limiter) -> AsyncGenerator[AsyncClient, None]:
    async def override_db():
        yield db_session

    app.dependency_overrides[get_db_session] = override_db
    app.dependency_overrides[get_submission_rate_limiter] = lambda: mock_rate_limiter

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def login_as():
    """Authenticate every request as the given user."""
    def _login(user):
        app.dependency_overrides[get_current_user] = lambda: user
        return user

    return _login


class TestMeta:
    @pytest.mark.asyncio
    async def test_health(self, client):
        response = await client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_security_headers(self, client):
        response = await client.get("/")

        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"


class TestAuthentication:
    @pytest.mark.asyncio
    async def test_missing_token(self, client):
        response = await client.get("/api/challenge/status")

        assert response.status_code == 401
        assert response.json()["code"] == "TOKEN_REQUIRED"

    @pytest.mark.asyncio
    async def test_invalid_token(self, client):
        response = await client.get(
            "/api/challenge/status", headers={"Authorization": "Bearer garbage"}
        )

        assert response.status_code == 401
        assert response.json()["code"] == "INVALID_TOKEN"

    @pytest.mark.asyncio
    async def test_unknown_user(self, client, db_session, result_of, user):
        db_session.execute.return_value = result_of(None)
        token = auth_service.create_user_token(user)

        response = await client.get(
            "/api/auth/me", headers={"Authorization": f"Bearer {token}"}
        )

        assert response.status_code == 401
        assert response.json()["code"] == "USER_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_me(self, client, login_as, user):
        login_as(user)

        response = await client.get("/api/auth/me")

        assert response.status_code == 200
        assert response.json()["user"]["username"] == user.username
        assert "password_hash" not in response.json()["user"]

    @pytest.mark.asyncio
    async def test_login_bad_credentials(self, client):
        with patch.object(
            auth_service, "authenticate_user", AsyncMock(side_effect=auth_service.CredentialsError())
        ):
            response = await client.post(
                "/api/auth/login", json={"email": "a@example.com", "password": "nope"}
            )

        assert response.status_code == 400
        assert response.json() == {
            "error": "Invalid email or password",
            "code": "INVALID_CREDENTIALS",
        }


class TestChallengeRoutes:
    @pytest.mark.asyncio
    async def test_pending_user_cannot_start(self, client, login_as, user_factory):
        login_as(user_factory(approved=False))

        response = await client.post("/api/challenge/start")

        assert response.status_code == 403
        assert response.json()["code"] == "PENDING_APPROVAL"

    @pytest.mark.asyncio
    async def test_start(self, client, login_as, user):
        login_as(user)
        payload = {"message": "Challenge started successfully", "timeRemaining": 3600}

        with patch.object(challenge_service, "start_challenge", AsyncMock(return_value=payload)):
            response = await client.post("/api/challenge/start")

        assert response.status_code == 200
        assert response.json()["timeRemaining"] == 3600

    @pytest.mark.asyncio
    async def test_start_after_completion(self, client, login_as, user):
        login_as(user)
        error = ChallengeAlreadyEndedError(SessionState.COMPLETED)

        with patch.object(challenge_service, "start_challenge", AsyncMock(side_effect=error)):
            response = await client.post("/api/challenge/start")

        assert response.status_code == 403
        body = response.json()
        assert body["code"] == "CHALLENGE_ALREADY_ENDED"
        assert body["reason"] == "completed"
        assert body["canRestart"] is False

    @pytest.mark.asyncio
    async def test_submit_passes_raw_flag(self, client, login_as, user, mock_rate_limiter):
        login_as(user)
        submit = AsyncMock(return_value={"success": False})

        with patch.object(challenge_service, "submit_flag", submit):
            response = await client.post("/api/challenge/submit", json={"flag": 42})

        assert response.status_code == 200
        assert submit.await_args.args[2] == 42
        assert submit.await_args.args[3] is mock_rate_limiter

    @pytest.mark.asyncio
    async def test_submit_rate_limited(self, client, login_as, user):
        login_as(user)

        with patch.object(
            challenge_service, "submit_flag", AsyncMock(side_effect=RateLimitedError(7))
        ):
            response = await client.post("/api/challenge/submit", json={"flag": "x"})

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "7"
        assert response.json()["retryAfter"] == 7

    @pytest.mark.asyncio
    async def test_leaderboard_limit_validation(self, client, login_as, user):
        login_as(user)

        response = await client.get("/api/challenge/leaderboard", params={"limit": 0})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestAdminRoutes:
    @pytest.mark.asyncio
    async def test_requires_admin(self, client, login_as, user):
        login_as(user)

        response = await client.get("/api/admin/users")

        assert response.status_code == 403
        assert response.json()["code"] == "ADMIN_ACCESS_REQUIRED"

    @pytest.mark.asyncio
    async def test_config_rejects_non_boolean(self, client, login_as, admin):
        login_as(admin)

        response = await client.put("/api/admin/config", json={"challengeActive": "yes"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_config_update_forwards_sent_fields(self, client, login_as, admin):
        login_as(admin)
        update = AsyncMock(return_value={"maxLevels": 3})

        with patch.object(admin_service, "update_config", update):
            response = await client.put(
                "/api/admin/config", json={"maxLevels": 3, "challengeActive": True}
            )

        assert response.status_code == 200
        assert update.await_args.args[1] == {"max_levels": 3, "challenge_active": True}

    @pytest.mark.asyncio
    async def test_force_end_forwards_reason(self, client, login_as, admin, user):
        login_as(admin)
        force_end = AsyncMock(return_value={"reason": "cheating"})

        with patch.object(admin_service, "force_end_user", force_end):
            response = await client.put(
                f"/api/admin/users/{user.id}/force-end", json={"reason": "cheating"}
            )

        assert response.status_code == 200
        assert force_end.await_args.args[1] == user.id
        assert force_end.await_args.args[3] == "cheating"

    @pytest.mark.asyncio
    async def test_export_csv(self, client, login_as, admin):
        login_as(admin)

        with patch.object(admin_service, "export_users", AsyncMock(return_value=[])):
            response = await client.get("/api/admin/export/users", params={"format": "csv"})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert response.text.splitlines()[0].startswith("id,username,email")
