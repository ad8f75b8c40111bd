"""
Challenge API Endpoints for Re-Challenge CTF Platform.

Session lifecycle (start, submit, status), level data, hints, submission
history and the leaderboard.
"""

from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from rechallenge.core.dependencies import ApprovedUser, CurrentUser, DbSession, RateLimiter
from rechallenge.services import challenge_service, leaderboard

router = APIRouter(prefix="/challenge", tags=["Challenge"])


# ============== Request Models ==============


class FlagSubmissionRequest(BaseModel):
    """Flag submission request; the flag is validated by the service."""

    flag: Any = Field(None, description="Flag to submit")


# ============== Public ==============


@router.get("/info")
async def get_challenge_info(session: DbSession) -> dict[str, Any]:
    """Public challenge description, limits and window."""
    return await challenge_service.get_challenge_info(session)


# ============== Session ==============


@router.post("/start")
async def start_challenge(user: ApprovedUser, session: DbSession) -> dict[str, Any]:
    """
    Start the challenge session.

    Calling this again while the session runs returns the running session
    with ``alreadyStarted``; a finished session must be reset by an admin.
    """
    return await challenge_service.start_challenge(session, user)


@router.post("/submit")
async def submit_flag(
    user: ApprovedUser,
    session: DbSession,
    rate_limiter: RateLimiter,
    data: FlagSubmissionRequest | None = None,
) -> dict[str, Any]:
    """
    Submit a flag for the current level.

    An incorrect flag keeps the level; a correct one advances to the next
    level or completes the session.
    """
    flag = data.flag if data else None
    return await challenge_service.submit_flag(session, user, flag, rate_limiter)


@router.get("/status")
async def get_status(user: CurrentUser, session: DbSession) -> dict[str, Any]:
    """Session status snapshot."""
    return await challenge_service.get_status(session, user)


@router.get("/can-start")
async def can_start(user: CurrentUser, session: DbSession) -> dict[str, Any]:
    return await challenge_service.can_start(session, user)


# ============== Levels ==============


@router.get("/levels")
async def get_levels(user: ApprovedUser, session: DbSession) -> dict[str, Any]:
    """Levels in rotation with lock state for the caller."""
    return await challenge_service.get_levels(session, user)


@router.get("/current")
async def get_current_challenge(user: ApprovedUser, session: DbSession) -> dict[str, Any]:
    """The challenge for the caller's current level."""
    return await challenge_service.get_current_challenge(session, user)


@router.get("/hint")
async def get_hint(user: ApprovedUser, session: DbSession) -> dict[str, Any]:
    return await challenge_service.get_hint(session, user)


@router.get("/submissions")
async def get_submissions(
    user: CurrentUser,
    session: DbSession,
    level: int | None = Query(None, ge=1, description="Only this level"),
) -> dict[str, Any]:
    """Submission history, newest first, without submitted flags."""
    return await challenge_service.get_submissions(session, user, level)


# ============== Leaderboard ==============


@router.get("/leaderboard")
async def get_leaderboard(
    user: CurrentUser,
    session: DbSession,
    limit: int = Query(leaderboard.DEFAULT_LIMIT, ge=1, le=leaderboard.MAX_LIMIT),
) -> dict[str, Any]:
    """Top participants by levels completed, attempts and start time."""
    entries = await leaderboard.get_leaderboard(session, limit)
    return {"leaderboard": entries, "total": len(entries)}
