"""
Authentication Service Tests for Re-Challenge CTF Platform.
"""

import uuid
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from rechallenge.core.errors import AuthenticationError, InvalidInputError, PermissionDeniedError
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.services import auth_service


class TestPasswords:
    def test_hash_and_verify(self):
        hashed = auth_service.get_password_hash("s3cret-pass")

        assert hashed != "s3cret-pass"
        assert auth_service.verify_password("s3cret-pass", hashed) is True
        assert auth_service.verify_password("wrong", hashed) is False

    def test_password_pair_mismatch(self):
        with pytest.raises(InvalidInputError) as exc_info:
            auth_service.validate_password_pair("abcdef", "abcdeg")

        assert exc_info.value.code == "PASSWORD_MISMATCH"

    def test_password_too_short(self):
        with pytest.raises(InvalidInputError) as exc_info:
            auth_service.validate_password_pair("abc", "abc")

        assert exc_info.value.code == "PASSWORD_TOO_SHORT"


class TestTokens:
    def test_token_subject_round_trip(self, user):
        token = auth_service.create_user_token(user)

        assert auth_service.token_subject(token) == user.id

    def test_expired_token(self):
        token = auth_service.create_access_token(
            {"sub": str(uuid.uuid4())}, expires_delta=timedelta(seconds=-1)
        )

        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.decode_token(token)

        assert exc_info.value.code == "TOKEN_EXPIRED"
        assert exc_info.value.status_code == 401

    def test_garbage_token(self):
        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.decode_token("not.a.token")

        assert exc_info.value.code == "INVALID_TOKEN"

    def test_non_uuid_subject(self):
        token = auth_service.create_access_token({"sub": "admin"})

        with pytest.raises(AuthenticationError) as exc_info:
            auth_service.token_subject(token)

        assert exc_info.value.code == "INVALID_TOKEN"


class TestRegistration:
    @pytest.mark.asyncio
    async def test_registration_closed(self, db_session, config):
        config.registration_open = False

        with patch.object(ChallengeConfig, "get", AsyncMock(return_value=config)), \
             pytest.raises(PermissionDeniedError) as exc_info:
            await auth_service.register_user(
                db_session, "newplayer", "new@example.com", "secret1", "secret1"
            )

        assert exc_info.value.code == "REGISTRATION_CLOSED"

    @pytest.mark.asyncio
    async def test_duplicate_email(self, db_session, config, user_factory):
        existing = user_factory(email="taken@example.com")
        result = MagicMock()
        result.scalars.return_value.first.return_value = existing
        db_session.execute.return_value = result

        with patch.object(ChallengeConfig, "get", AsyncMock(return_value=config)), \
             pytest.raises(InvalidInputError) as exc_info:
            await auth_service.register_user(
                db_session, "someone", "Taken@Example.com", "secret1", "secret1"
            )

        assert exc_info.value.code == "EMAIL_EXISTS"

    @pytest.mark.asyncio
    async def test_invalid_email(self, db_session):
        with pytest.raises(InvalidInputError) as exc_info:
            await auth_service.register_user(db_session, "someone", "nope", "secret1", "secret1")

        assert exc_info.value.code == "INVALID_EMAIL"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("email", ["a@b..com", "a@-b.com", "a..b@c.com", "a b@c.com"])
    async def test_malformed_email_rejected_before_lookup(self, db_session, email):
        with pytest.raises(InvalidInputError) as exc_info:
            await auth_service.register_user(db_session, "someone", email, "secret1", "secret1")

        assert exc_info.value.code == "INVALID_EMAIL"
        db_session.execute.assert_not_awaited()
        db_session.get.assert_not_awaited()

    def test_normalize_email_lowercases(self):
        assert auth_service.normalize_email("  Player@Example.COM ") == "player@example.com"

    @pytest.mark.asyncio
    async def test_new_user_is_pending_with_pristine_progress(self, db_session, config):
        result = MagicMock()
        result.scalars.return_value.first.return_value = None
        db_session.execute.return_value = result

        with patch.object(ChallengeConfig, "get", AsyncMock(return_value=config)):
            user = await auth_service.register_user(
                db_session, "  newplayer ", "New@Example.com", "secret1", "secret1"
            )

        assert user.username == "newplayer"
        assert user.email == "new@example.com"
        assert user.is_approved is False
        assert user.progress.current_level == 1
        assert user.progress.challenge_start_time is None
        db_session.add.assert_called_once_with(user)
        db_session.commit.assert_awaited_once()


class TestLogin:
    @pytest.mark.asyncio
    async def test_wrong_password(self, db_session, result_of, user_factory):
        player = user_factory(password_hash=auth_service.get_password_hash("right-pass"))
        db_session.execute.return_value = result_of(player)

        with pytest.raises(auth_service.CredentialsError) as exc_info:
            await auth_service.authenticate_user(db_session, player.email, "wrong-pass")

        assert exc_info.value.code == "INVALID_CREDENTIALS"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_unapproved_user_can_log_in(self, db_session, result_of, user_factory):
        player = user_factory(
            approved=False, password_hash=auth_service.get_password_hash("right-pass")
        )
        db_session.execute.return_value = result_of(player)

        user = await auth_service.authenticate_user(db_session, player.email.upper(), "right-pass")

        assert user is player
        assert user.last_activity is not None
