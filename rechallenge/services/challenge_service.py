"""
Challenge Service for Re-Challenge CTF Platform.

Loads and persists the records the challenge state machine works on:
the config singleton, the level catalog and the caller's progress record.
Each mutating operation ends in a single commit guarded by the progress
record's version column.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from rechallenge.core.errors import ConcurrentUpdateError, PermissionDeniedError
from rechallenge.models.challenge import Challenge
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.models.progress import ChallengeProgress
from rechallenge.models.user import User
from rechallenge.services import state_machine
from rechallenge.services.rate_limiter import SubmissionRateLimiter
from rechallenge.services.state_machine import (
    CatalogGapError,
    NotActiveError,
    NotStartedError,
    ProgressSummary,
    TimeExpiredError,
    WindowInactiveError,
    utcnow,
)

logger = logging.getLogger(__name__)


# ============== Loading & Persisting ==============


async def get_active_challenge(
    session: AsyncSession,
    level: int,
) -> Challenge | None:
    """Get the in-rotation challenge for a level, if any."""
    result = await session.execute(
        select(Challenge)
        .where(Challenge.level == level)
        .where(Challenge.is_active == True)
    )
    return result.scalar_one_or_none()


async def get_active_challenges(
    session: AsyncSession,
    limit: int | None = None,
) -> list[Challenge]:
    """Get in-rotation challenges ordered by level."""
    query = (
        select(Challenge)
        .where(Challenge.is_active == True)
        .order_by(Challenge.level.asc())
    )
    if limit is not None:
        query = query.limit(limit)
    result = await session.execute(query)
    return list(result.scalars().all())


async def get_progress(session: AsyncSession, user: User) -> ChallengeProgress:
    """
    Get the user's progress record, creating a pristine one on first use.
    """
    progress = user.progress
    if progress is None:
        progress = ChallengeProgress.pristine(user.id)
        user.progress = progress
        session.add(progress)
        await session.flush()
    return progress


async def commit_progress(session: AsyncSession) -> None:
    """
    Commit pending changes, translating a lost version check.

    Raises:
        ConcurrentUpdateError: If another request updated the record first
    """
    try:
        await session.commit()
    except StaleDataError as e:
        await session.rollback()
        logger.warning(f"Concurrent progress update rejected: {e}")
        raise ConcurrentUpdateError() from e


async def _lazy_expire(session: AsyncSession, progress: ChallengeProgress, now: datetime) -> None:
    if state_machine.expire_if_due(progress, now):
        await commit_progress(session)


async def _require_window(session: AsyncSession, now: datetime) -> ChallengeConfig:
    config = await ChallengeConfig.get(session)
    if not config.is_challenge_time_active(now):
        raise WindowInactiveError()
    return config


# ============== Session Operations ==============


async def start_challenge(
    session: AsyncSession,
    user: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Start the caller's session (idempotent while it is running).

    Raises:
        WindowInactiveError: If the global challenge window is closed
        ChallengeAlreadyEndedError: If the session already ended
    """
    now = now or utcnow()
    config = await _require_window(session, now)
    progress = await get_progress(session, user)

    await _lazy_expire(session, progress, now)
    result = state_machine.start_session(progress, config, now)

    if not result.already_started:
        await commit_progress(session)
    return result.to_dict()


async def get_current_challenge(
    session: AsyncSession,
    user: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Get the challenge for the caller's current level, without its flag.

    Raises:
        TimeExpiredError: If the session just ran out of time
        NotStartedError: If no session is running
        CatalogGapError: If the current level has no active challenge
    """
    now = now or utcnow()
    progress = await get_progress(session, user)

    if progress.is_active and state_machine.expire_if_due(progress, now):
        await commit_progress(session)
        raise TimeExpiredError()

    if not progress.is_active or progress.challenge_start_time is None:
        raise NotStartedError()

    challenge = await get_active_challenge(session, progress.current_level)
    if challenge is None:
        raise CatalogGapError("No challenge found for current level")

    return {
        "challenge": challenge.public_data(),
        "user": ProgressSummary.of(progress).to_dict(),
        "timeRemaining": state_machine.time_remaining(progress, now),
        "isActive": progress.is_active,
    }


async def submit_flag(
    session: AsyncSession,
    user: User,
    flag: Any,
    rate_limiter: SubmissionRateLimiter,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Evaluate a flag for the caller's current level.

    Raises:
        WindowInactiveError: Global window closed
        InvalidFlagError: Flag missing, not a string, or blank
        NotActiveError: No running session
        TimeExpiredError: Session ran out of time (expiry is persisted)
        MaxAttemptsExceededError: Config attempt limit reached
        RateLimitedError: Too many submissions in the sliding window
        CatalogGapError: No active challenge for the current level
        ConcurrentUpdateError: A concurrent request changed the record
    """
    now = now or utcnow()
    config = await _require_window(session, now)
    flag = state_machine.normalize_flag(flag)
    progress = await get_progress(session, user)

    try:
        state_machine.ensure_can_submit(progress, config, now)
    except TimeExpiredError:
        await commit_progress(session)
        raise

    user_id, session_start = user.id, progress.challenge_start_time
    slot = await rate_limiter.check(user_id, session_start, now.timestamp())

    # Attempts that are never recorded give their rate-limit slot back.
    try:
        challenge = await get_active_challenge(session, progress.current_level)
        if challenge is None:
            raise CatalogGapError()

        next_challenge = None
        if challenge.validate_flag(flag):
            next_challenge = await get_active_challenge(session, progress.current_level + 1)

        result = state_machine.apply_submission(
            progress, config, challenge, next_challenge, flag, now
        )

        if result.newly_solved:
            await session.execute(
                update(Challenge)
                .where(Challenge.id == challenge.id)
                .values(solve_count=Challenge.solve_count + 1)
            )

        await commit_progress(session)
    except (CatalogGapError, ConcurrentUpdateError):
        await rate_limiter.release(user_id, session_start, slot)
        raise

    response = result.to_dict()
    if result.outcome is state_machine.SubmissionOutcome.COMPLETED:
        response["thankYouMessage"] = config.thank_you_message
    return response


async def get_status(
    session: AsyncSession,
    user: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Full status snapshot; an overdue session is expired as a side effect.
    """
    now = now or utcnow()
    config = await ChallengeConfig.get(session)
    progress = await get_progress(session, user)

    await _lazy_expire(session, progress, now)
    return state_machine.status_snapshot(progress, config, user.is_approved, now)


async def can_start(
    session: AsyncSession,
    user: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Report whether a start request would open a new session."""
    now = now or utcnow()
    config = await ChallengeConfig.get(session)
    progress = await get_progress(session, user)

    await _lazy_expire(session, progress, now)
    return state_machine.can_start_report(progress, config, now)


async def get_hint(
    session: AsyncSession,
    user: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Hint for the current level.

    Raises:
        PermissionDeniedError: If hints are disabled
        TimeExpiredError: If the session just ran out of time
        NotActiveError: If no session is running
        CatalogGapError: If the current level has no active challenge
    """
    now = now or utcnow()
    config = await ChallengeConfig.get(session)
    if not config.allow_hints:
        raise PermissionDeniedError(
            "Hints are not allowed in this challenge", code="HINTS_DISABLED"
        )

    progress = await get_progress(session, user)
    if progress.is_active and state_machine.expire_if_due(progress, now):
        await commit_progress(session)
        raise TimeExpiredError()

    if not progress.is_active:
        raise NotActiveError(status_code=400)

    challenge = await get_active_challenge(session, progress.current_level)
    if challenge is None:
        raise CatalogGapError("Challenge not found")

    return {
        "hint": challenge.hint or "No hint available for this level",
        "level": challenge.level,
    }


async def get_levels(session: AsyncSession, user: User) -> dict[str, Any]:
    """Levels in rotation (up to max_levels) with the caller's lock state."""
    config = await ChallengeConfig.get(session)
    progress = await get_progress(session, user)
    challenges = await get_active_challenges(session, limit=config.max_levels)

    return {
        "levels": state_machine.levels_overview(progress, challenges),
        "totalLevels": len(challenges),
        "userProgress": ProgressSummary.of(progress).to_dict(),
    }


async def get_submissions(
    session: AsyncSession,
    user: User,
    level: int | None = None,
) -> dict[str, Any]:
    """The caller's submission history for the current session."""
    progress = await get_progress(session, user)
    return {
        "submissions": state_machine.submission_history(progress, level),
        "totalAttempts": progress.total_attempts,
        "currentLevel": progress.current_level,
        "completedLevels": list(progress.completed_levels),
    }


async def get_challenge_info(
    session: AsyncSession,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Public description of the challenge and its window."""
    now = now or utcnow()
    config = await ChallengeConfig.get(session)
    result = await session.execute(
        select(func.count(Challenge.id)).where(Challenge.is_active == True)
    )
    total_challenges = result.scalar() or 0

    return {
        "challengeTitle": config.challenge_title,
        "challengeDescription": config.challenge_description,
        "totalLevels": min(total_challenges, config.max_levels),
        "timeLimit": config.total_time_limit_minutes,
        "maxAttempts": config.max_attempts,
        "allowHints": config.allow_hints,
        "challengeActive": config.is_challenge_time_active(now),
        "registrationOpen": config.registration_open,
        "challengeStartDate": config.challenge_start_date,
        "challengeEndDate": config.challenge_end_date,
        "timeUntilStart": config.time_until_start(now),
        "timeUntilEnd": config.time_until_end(now),
    }
