"""
Challenge Service Tests for Re-Challenge CTF Platform.

The database session is an AsyncMock; the config singleton and catalog
lookups are patched so each test controls what the service sees.
"""

from contextlib import contextmanager
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy.orm.exc import StaleDataError

from rechallenge.core.errors import ConcurrentUpdateError, PermissionDeniedError, RateLimitedError
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.services import challenge_service, state_machine
from rechallenge.services.state_machine import (
    CatalogGapError,
    ChallengeAlreadyEndedError,
    InvalidFlagError,
    NotActiveError,
    NotStartedError,
    TimeExpiredError,
    WindowInactiveError,
)


@contextmanager
def catalog(config, challenges):
    """Patch the config singleton and the per-level challenge lookup."""
    async def lookup(session, level):
        return challenges.get(level)

    with patch.object(ChallengeConfig, "get", AsyncMock(return_value=config)), \
         patch.object(challenge_service, "get_active_challenge", AsyncMock(side_effect=lookup)):
        yield


class TestGetProgress:
    @pytest.mark.asyncio
    async def test_existing_record_is_returned(self, db_session, user):
        progress = await challenge_service.get_progress(db_session, user)

        assert progress is user.progress
        db_session.add.assert_not_called()

    @pytest.mark.asyncio
    async def test_missing_record_is_created_pristine(self, db_session, user):
        user.progress = None

        progress = await challenge_service.get_progress(db_session, user)

        assert progress.user_id == user.id
        assert progress.current_level == 1
        assert progress.submissions == []
        db_session.add.assert_called_once_with(progress)
        db_session.flush.assert_awaited_once()


class TestCommitProgress:
    @pytest.mark.asyncio
    async def test_stale_version_becomes_conflict(self, db_session):
        db_session.commit.side_effect = StaleDataError("version mismatch")

        with pytest.raises(ConcurrentUpdateError) as exc_info:
            await challenge_service.commit_progress(db_session)

        assert exc_info.value.status_code == 409
        assert exc_info.value.code == "CONCURRENT_UPDATE"
        db_session.rollback.assert_awaited_once()


class TestStartChallenge:
    @pytest.mark.asyncio
    async def test_start_commits_once(self, db_session, user, config, challenges, now):
        with catalog(config, challenges):
            first = await challenge_service.start_challenge(db_session, user, now)
            second = await challenge_service.start_challenge(
                db_session, user, now + timedelta(minutes=1)
            )

        assert first["message"] == "Challenge started successfully"
        assert second["alreadyStarted"] is True
        assert second["challengeStartTime"] == first["challengeStartTime"]
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_start_outside_window(self, db_session, user, config, challenges, now):
        config.challenge_active = False

        with catalog(config, challenges), pytest.raises(WindowInactiveError):
            await challenge_service.start_challenge(db_session, user, now)

        assert user.progress.challenge_start_time is None

    @pytest.mark.asyncio
    async def test_start_after_expiry_persists_expiry(self, db_session, user, config, challenges, now):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges), pytest.raises(ChallengeAlreadyEndedError):
            await challenge_service.start_challenge(db_session, user, now + timedelta(hours=2))

        assert user.progress.end_reason == "expired"
        db_session.commit.assert_awaited_once()


class TestSubmitFlag:
    """Tests for the submit pipeline."""

    @pytest.mark.asyncio
    async def test_correct_flag_advances_and_counts_solve(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)
        at = now + timedelta(minutes=3)

        with catalog(config, challenges):
            result = await challenge_service.submit_flag(
                db_session, user, challenges[1].flag, mock_rate_limiter, at
            )

        assert result["success"] is True
        assert result["currentLevel"] == 2
        mock_rate_limiter.check.assert_awaited_once_with(
            user.id, user.progress.challenge_start_time, at.timestamp()
        )
        # solve_count increment
        db_session.execute.assert_awaited_once()
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_completion_includes_thank_you(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges):
            await challenge_service.submit_flag(db_session, user, challenges[1].flag, mock_rate_limiter, now)
            result = await challenge_service.submit_flag(
                db_session, user, challenges[2].flag, mock_rate_limiter, now
            )

        assert result["completed"] is True
        assert result["thankYouMessage"] == config.thank_you_message
        assert user.progress.is_active is False

    @pytest.mark.asyncio
    async def test_incorrect_flag_is_logged(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges):
            result = await challenge_service.submit_flag(
                db_session, user, "flag{guess}", mock_rate_limiter, now
            )

        assert result["success"] is False
        assert user.progress.total_attempts == 1
        db_session.execute.assert_not_awaited()
        db_session.commit.assert_awaited_once()
        mock_rate_limiter.release.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_window_checked_before_flag(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        config.challenge_active = False

        with catalog(config, challenges), pytest.raises(WindowInactiveError):
            await challenge_service.submit_flag(db_session, user, None, mock_rate_limiter, now)

    @pytest.mark.asyncio
    async def test_invalid_flag_payload(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges), pytest.raises(InvalidFlagError):
            await challenge_service.submit_flag(db_session, user, 1234, mock_rate_limiter, now)

        mock_rate_limiter.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_not_started(self, db_session, user, config, challenges, now, mock_rate_limiter):
        with catalog(config, challenges), pytest.raises(NotActiveError):
            await challenge_service.submit_flag(db_session, user, "flag", mock_rate_limiter, now)

    @pytest.mark.asyncio
    async def test_expired_session_is_persisted(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges), pytest.raises(TimeExpiredError):
            await challenge_service.submit_flag(
                db_session, user, challenges[1].flag, mock_rate_limiter, now + timedelta(minutes=60)
            )

        assert user.progress.end_reason == "expired"
        assert user.progress.total_attempts == 0
        db_session.commit.assert_awaited_once()
        mock_rate_limiter.check.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited_submission_is_not_recorded(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)
        mock_rate_limiter.check.side_effect = RateLimitedError(12)

        with catalog(config, challenges), pytest.raises(RateLimitedError):
            await challenge_service.submit_flag(
                db_session, user, challenges[1].flag, mock_rate_limiter, now
            )

        assert user.progress.total_attempts == 0
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_current_level(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)
        challenges.pop(1)

        with catalog(config, challenges), pytest.raises(CatalogGapError) as exc_info:
            await challenge_service.submit_flag(db_session, user, "flag", mock_rate_limiter, now)

        assert exc_info.value.status_code == 404
        assert user.progress.total_attempts == 0
        mock_rate_limiter.release.assert_awaited_once_with(
            user.id, user.progress.challenge_start_time, "slot"
        )

    @pytest.mark.asyncio
    async def test_concurrent_reset_loses_submission(
        self, db_session, user, config, challenges, now, mock_rate_limiter
    ):
        state_machine.start_session(user.progress, config, now)
        db_session.commit.side_effect = StaleDataError("version mismatch")

        with catalog(config, challenges), pytest.raises(ConcurrentUpdateError):
            await challenge_service.submit_flag(
                db_session, user, challenges[1].flag, mock_rate_limiter, now
            )

        db_session.rollback.assert_awaited_once()
        mock_rate_limiter.release.assert_awaited_once()
        assert mock_rate_limiter.release.await_args.args[2] == "slot"


class TestReadOperations:
    @pytest.mark.asyncio
    async def test_status_expires_lazily(self, db_session, user, config, challenges, now):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges):
            status = await challenge_service.get_status(db_session, user, now + timedelta(hours=1))

        assert status["state"] == "expired"
        assert user.progress.is_active is False
        db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status_without_change_does_not_commit(self, db_session, user, config, challenges, now):
        with catalog(config, challenges):
            status = await challenge_service.get_status(db_session, user, now)

        assert status["state"] == "not_started"
        db_session.commit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_current_challenge_hides_flag(self, db_session, user, config, challenges, now):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges):
            data = await challenge_service.get_current_challenge(db_session, user, now)

        assert data["challenge"]["level"] == 1
        assert "flag" not in data["challenge"]
        assert data["timeRemaining"] == 3600

    @pytest.mark.asyncio
    async def test_current_challenge_requires_session(self, db_session, user, config, challenges, now):
        with catalog(config, challenges), pytest.raises(NotStartedError):
            await challenge_service.get_current_challenge(db_session, user, now)

    @pytest.mark.asyncio
    async def test_hints_disabled(self, db_session, user, config, challenges, now):
        config.allow_hints = False
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges), pytest.raises(PermissionDeniedError) as exc_info:
            await challenge_service.get_hint(db_session, user, now)

        assert exc_info.value.code == "HINTS_DISABLED"

    @pytest.mark.asyncio
    async def test_hint_for_current_level(self, db_session, user, config, challenges, now):
        state_machine.start_session(user.progress, config, now)

        with catalog(config, challenges):
            data = await challenge_service.get_hint(db_session, user, now)

        assert data == {"hint": challenges[1].hint, "level": 1}

    @pytest.mark.asyncio
    async def test_hint_requires_active_session(self, db_session, user, config, challenges, now):
        with catalog(config, challenges), pytest.raises(NotActiveError) as exc_info:
            await challenge_service.get_hint(db_session, user, now)

        assert exc_info.value.status_code == 400
