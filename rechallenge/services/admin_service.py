"""
Admin Service for Re-Challenge CTF Platform.

User moderation, session interventions (reset and force-end), challenge
configuration, catalog management, monitoring and data export.
"""

import csv
import io
import logging
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from rechallenge.core.errors import InvalidInputError, NotFoundError
from rechallenge.models.challenge import Challenge
from rechallenge.models.challenge_config import (
    MAX_LEVELS,
    MAX_TIME_LIMIT_MINUTES,
    MIN_LEVELS,
    MIN_TIME_LIMIT_MINUTES,
    UNLIMITED_ATTEMPTS,
    ChallengeConfig,
)
from rechallenge.models.progress import ChallengeProgress
from rechallenge.models.user import User, UserRole
from rechallenge.services import state_machine
from rechallenge.services.challenge_service import commit_progress, get_progress
from rechallenge.services.state_machine import (
    ForceEndConflictError,
    SessionState,
    utcnow,
)

logger = logging.getLogger(__name__)

DISAPPROVAL_REASON = "account disapproved"

EXPORT_FIELDS = [
    "id",
    "username",
    "email",
    "role",
    "isApproved",
    "state",
    "currentLevel",
    "completedLevels",
    "totalAttempts",
    "challengeStartTime",
    "challengeCompletionTime",
    "resetCount",
    "createdAt",
]


# ============== Users ==============


async def get_user_or_404(session: AsyncSession, user_id: uuid.UUID) -> User:
    result = await session.execute(select(User).where(User.id == user_id))
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError("User not found", code="USER_NOT_FOUND")
    return user


def _ensure_not_admin(user: User, code: str = "CANNOT_MODIFY_ADMIN") -> None:
    if user.is_admin:
        verb = "delete" if code == "CANNOT_DELETE_ADMIN" else "modify"
        raise InvalidInputError(f"Cannot {verb} admin users", code=code)


def user_overview(user: User, now: datetime) -> dict[str, Any]:
    """Account data plus a compact view of the user's session."""
    data = user.to_dict()
    progress = user.progress
    if progress is None:
        data["progress"] = None
        return data

    data["progress"] = {
        "state": state_machine.session_state(progress, now).value,
        "currentLevel": progress.current_level,
        "completedLevels": list(progress.completed_levels),
        "totalAttempts": progress.total_attempts,
        "challengeStartTime": progress.challenge_start_time,
        "challengeEndTime": progress.challenge_end_time,
        "challengeCompletionTime": progress.challenge_completion_time,
        "timeRemaining": state_machine.time_remaining(progress, now),
        "resetCount": progress.reset_count,
        "lastResetTime": progress.last_reset_time,
    }
    return data


async def list_users(
    session: AsyncSession,
    status: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 20,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    List accounts with optional approval filter, search and pagination.

    Args:
        session: Database session
        status: "approved" or "pending" to filter by approval
        search: Case-insensitive match on username or email
        page: 1-based page number
        limit: Page size
    """
    now = now or utcnow()
    query = select(User)
    count_query = select(func.count(User.id))

    filters = []
    if status == "approved":
        filters.append(User.is_approved == True)
    elif status == "pending":
        filters.append(User.is_approved == False)
    if search:
        pattern = f"%{search.strip()}%"
        filters.append(or_(User.username.ilike(pattern), User.email.ilike(pattern)))

    for condition in filters:
        query = query.where(condition)
        count_query = count_query.where(condition)

    total = (await session.execute(count_query)).scalar() or 0
    result = await session.execute(
        query.order_by(User.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    users = result.scalars().all()

    return {
        "users": [user_overview(user, now) for user in users],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }


async def approve_user(session: AsyncSession, user_id: uuid.UUID) -> User:
    user = await get_user_or_404(session, user_id)
    _ensure_not_admin(user)

    user.is_approved = True
    await session.commit()
    logger.info(f"User {user.username} ({user.id}) approved")
    return user


async def disapprove_user(
    session: AsyncSession,
    user_id: uuid.UUID,
    admin: User,
    now: datetime | None = None,
) -> User:
    """
    Revoke approval; a running session is force-ended with it.
    """
    now = now or utcnow()
    user = await get_user_or_404(session, user_id)
    _ensure_not_admin(user)

    user.is_approved = False
    progress = await get_progress(session, user)
    state_machine.expire_if_due(progress, now)
    if state_machine.session_state(progress, now) is SessionState.ACTIVE:
        state_machine.force_end(progress, admin.username, DISAPPROVAL_REASON, now)

    await commit_progress(session)
    logger.info(f"User {user.username} ({user.id}) disapproved by {admin.username}")
    return user


async def bulk_approve(session: AsyncSession, user_ids: list[uuid.UUID]) -> int:
    """
    Approve many non-admin accounts at once.

    Returns:
        Number of accounts that changed state
    """
    if not user_ids:
        raise InvalidInputError("User IDs array is required", code="INVALID_USER_IDS")

    result = await session.execute(
        select(User)
        .where(User.id.in_(user_ids))
        .where(User.role != UserRole.ADMIN.value)
        .where(User.is_approved == False)
    )
    users = result.scalars().all()
    for user in users:
        user.is_approved = True

    await session.commit()
    logger.info(f"Bulk-approved {len(users)} of {len(user_ids)} requested users")
    return len(users)


async def delete_user(session: AsyncSession, user_id: uuid.UUID) -> None:
    user = await get_user_or_404(session, user_id)
    _ensure_not_admin(user, code="CANNOT_DELETE_ADMIN")

    await session.delete(user)
    await session.commit()
    logger.warning(f"User {user.username} ({user_id}) deleted")


# ============== Session Interventions ==============


async def reset_user(
    session: AsyncSession,
    user_id: uuid.UUID,
    admin: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Rewind a user's session to not_started.

    The version check makes this atomic against an in-flight submission:
    whichever commit loses gets ConcurrentUpdateError.
    """
    now = now or utcnow()
    user = await get_user_or_404(session, user_id)
    progress = await get_progress(session, user)

    previous = state_machine.reset_progress(progress, admin.id, now)
    await commit_progress(session)

    return {
        "message": f"Progress reset for {user.username}",
        "previousState": previous.value,
        "user": user_overview(user, now),
    }


async def force_end_user(
    session: AsyncSession,
    user_id: uuid.UUID,
    admin: User,
    reason: str,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    End a user's running session early.

    Raises:
        ForceEndConflictError: If the session is not running (an overdue
            session is persisted as expired first)
    """
    now = now or utcnow()
    user = await get_user_or_404(session, user_id)
    progress = await get_progress(session, user)

    if state_machine.expire_if_due(progress, now):
        await commit_progress(session)
        raise ForceEndConflictError()

    state_machine.force_end(progress, admin.username, reason, now)
    await commit_progress(session)

    return {
        "message": f"Challenge session of {user.username} ended",
        "reason": reason,
        "user": user_overview(user, now),
    }


# ============== Config ==============


def _validate_config_update(updates: dict[str, Any]) -> None:
    time_limit = updates.get("total_time_limit_minutes")
    if time_limit is not None and not (
        MIN_TIME_LIMIT_MINUTES <= time_limit <= MAX_TIME_LIMIT_MINUTES
    ):
        raise InvalidInputError(
            f"Time limit must be between {MIN_TIME_LIMIT_MINUTES} and "
            f"{MAX_TIME_LIMIT_MINUTES} minutes",
            code="INVALID_TIME_LIMIT",
        )

    max_levels = updates.get("max_levels")
    if max_levels is not None and not MIN_LEVELS <= max_levels <= MAX_LEVELS:
        raise InvalidInputError(
            f"Max levels must be between {MIN_LEVELS} and {MAX_LEVELS}",
            code="INVALID_MAX_LEVELS",
        )

    max_attempts = updates.get("max_attempts")
    if max_attempts is not None and (max_attempts < UNLIMITED_ATTEMPTS or max_attempts == 0):
        raise InvalidInputError(
            "Max attempts must be -1 (unlimited) or a positive number",
            code="INVALID_MAX_ATTEMPTS",
        )


async def get_config(session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    config = await ChallengeConfig.get(session)
    return config.to_dict(now or utcnow())


async def update_config(
    session: AsyncSession,
    updates: dict[str, Any],
    admin: User,
    now: datetime | None = None,
) -> dict[str, Any]:
    """
    Apply a partial config update.

    Running sessions keep the end time fixed when they started; a new time
    limit only applies to sessions started afterwards.

    Raises:
        InvalidInputError: On an out-of-range value or an inverted window
    """
    config = await ChallengeConfig.get(session)
    _validate_config_update(updates)

    for field, value in updates.items():
        setattr(config, field, value)

    try:
        config.validate_window()
    except ValueError as e:
        await session.rollback()
        raise InvalidInputError(str(e), code="INVALID_CHALLENGE_WINDOW") from e

    await session.commit()
    logger.info(f"Challenge config updated by {admin.username}: {sorted(updates)}")
    return config.to_dict(now or utcnow())


# ============== Challenges ==============


async def list_challenges(session: AsyncSession) -> list[Challenge]:
    result = await session.execute(select(Challenge).order_by(Challenge.level.asc()))
    return list(result.scalars().all())


async def get_challenge_or_404(session: AsyncSession, challenge_id: uuid.UUID) -> Challenge:
    challenge = await session.get(Challenge, challenge_id)
    if challenge is None:
        raise NotFoundError("Challenge not found", code="CHALLENGE_NOT_FOUND")
    return challenge


async def _level_taken(
    session: AsyncSession,
    level: int,
    exclude_id: uuid.UUID | None = None,
) -> bool:
    query = select(Challenge.id).where(Challenge.level == level)
    if exclude_id is not None:
        query = query.where(Challenge.id != exclude_id)
    result = await session.execute(query)
    return result.first() is not None


async def create_challenge(session: AsyncSession, data: dict[str, Any]) -> Challenge:
    """
    Add a level to the catalog.

    Raises:
        InvalidInputError: If a challenge already exists for the level
    """
    if await _level_taken(session, data["level"]):
        raise InvalidInputError(
            f"Challenge for level {data['level']} already exists", code="LEVEL_EXISTS"
        )

    challenge = Challenge(**data)
    session.add(challenge)
    await session.commit()
    await session.refresh(challenge)

    logger.info(f"Challenge created for level {challenge.level}: {challenge.title}")
    return challenge


async def update_challenge(
    session: AsyncSession,
    challenge_id: uuid.UUID,
    updates: dict[str, Any],
) -> Challenge:
    """
    Partially update a challenge.

    Raises:
        NotFoundError: If the challenge does not exist
        InvalidInputError: If the new level belongs to another challenge
    """
    challenge = await get_challenge_or_404(session, challenge_id)

    new_level = updates.get("level")
    if new_level is not None and new_level != challenge.level:
        if await _level_taken(session, new_level, exclude_id=challenge.id):
            raise InvalidInputError(
                f"Challenge for level {new_level} already exists", code="DUPLICATE_LEVEL"
            )

    for field, value in updates.items():
        setattr(challenge, field, value)

    await session.commit()
    await session.refresh(challenge)
    logger.info(f"Challenge {challenge.id} (level {challenge.level}) updated")
    return challenge


async def delete_challenge(session: AsyncSession, challenge_id: uuid.UUID) -> None:
    challenge = await get_challenge_or_404(session, challenge_id)
    await session.delete(challenge)
    await session.commit()
    logger.warning(f"Challenge {challenge_id} (level {challenge.level}) deleted")


async def preview_challenge(session: AsyncSession, challenge_id: uuid.UUID) -> dict[str, Any]:
    """Participant view of a challenge plus its admin-only fields."""
    challenge = await get_challenge_or_404(session, challenge_id)
    return {
        "preview": challenge.public_data(),
        "flag": challenge.flag,
        "isActive": challenge.is_active,
        "solveCount": challenge.solve_count,
    }


# ============== Monitoring & Stats ==============


async def _participants(session: AsyncSession) -> list[User]:
    result = await session.execute(
        select(User).where(User.role != UserRole.ADMIN.value).order_by(User.created_at.asc())
    )
    return list(result.scalars().all())


async def get_monitoring(session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """
    Live view of running sessions and per-state counts.

    Overdue sessions are reported as expired without being written.
    """
    now = now or utcnow()
    users = await _participants(session)

    counts = {state.value: 0 for state in SessionState}
    active_sessions = []
    for user in users:
        if user.progress is None:
            counts[SessionState.NOT_STARTED.value] += 1
            continue
        state = state_machine.session_state(user.progress, now)
        counts[state.value] += 1
        if state is SessionState.ACTIVE:
            active_sessions.append({
                "userId": str(user.id),
                "username": user.username,
                "currentLevel": user.progress.current_level,
                "completedLevels": list(user.progress.completed_levels),
                "totalAttempts": user.progress.total_attempts,
                "challengeStartTime": user.progress.challenge_start_time,
                "timeRemaining": state_machine.time_remaining(user.progress, now),
            })

    active_sessions.sort(key=lambda entry: entry["timeRemaining"])
    return {
        "activeSessions": active_sessions,
        "stateCounts": counts,
        "timestamp": now,
    }


async def get_stats(session: AsyncSession, now: datetime | None = None) -> dict[str, Any]:
    """Aggregate participation statistics."""
    now = now or utcnow()
    users = await _participants(session)
    config = await ChallengeConfig.get(session)

    approved = sum(1 for user in users if user.is_approved)
    progresses = [user.progress for user in users if user.progress is not None]
    started = [p for p in progresses if p.challenge_start_time is not None]
    states = [state_machine.session_state(p, now) for p in started]
    completed = states.count(SessionState.COMPLETED)

    challenge_count = (
        await session.execute(select(func.count(Challenge.id)).where(Challenge.is_active == True))
    ).scalar() or 0

    level_completions = {}
    for progress in started:
        for level in progress.completed_levels:
            level_completions[level] = level_completions.get(level, 0) + 1

    return {
        "users": {
            "total": len(users),
            "approved": approved,
            "pending": len(users) - approved,
        },
        "sessions": {
            "started": len(started),
            "active": states.count(SessionState.ACTIVE),
            "completed": completed,
            "expired": states.count(SessionState.EXPIRED),
            "forceEnded": states.count(SessionState.FORCE_ENDED),
            "completionRate": round(completed / len(started) * 100, 2) if started else 0.0,
        },
        "submissions": {
            "total": sum(p.total_attempts for p in started),
            "correct": sum(
                1 for p in started for entry in p.submissions if entry.get("is_correct")
            ),
        },
        "challenges": {
            "active": challenge_count,
            "maxLevels": config.max_levels,
            "levelCompletions": {str(k): v for k, v in sorted(level_completions.items())},
        },
        "challengeActive": config.is_challenge_time_active(now),
    }


# ============== Export ==============


async def export_users(session: AsyncSession, now: datetime | None = None) -> list[dict[str, Any]]:
    """Flat per-user rows for export."""
    now = now or utcnow()
    users = await _participants(session)

    rows = []
    for user in users:
        progress = user.progress or ChallengeProgress.pristine(user.id)
        rows.append({
            "id": str(user.id),
            "username": user.username,
            "email": user.email,
            "role": user.role,
            "isApproved": user.is_approved,
            "state": state_machine.session_state(progress, now).value,
            "currentLevel": progress.current_level,
            "completedLevels": list(progress.completed_levels),
            "totalAttempts": progress.total_attempts,
            "challengeStartTime": progress.challenge_start_time,
            "challengeCompletionTime": progress.challenge_completion_time,
            "resetCount": progress.reset_count,
            "createdAt": user.created_at,
        })
    return rows


def rows_to_csv(rows: list[dict[str, Any]]) -> str:
    """Render export rows as CSV text with a header line."""
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for row in rows:
        writer.writerow({
            **row,
            "completedLevels": ";".join(str(level) for level in row["completedLevels"]),
            "challengeStartTime": _iso(row["challengeStartTime"]),
            "challengeCompletionTime": _iso(row["challengeCompletionTime"]),
            "createdAt": _iso(row["createdAt"]),
        })
    return output.getvalue()


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else ""
