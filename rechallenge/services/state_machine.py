"""
Challenge session state machine.

A session moves through::

    not_started -> active -> {completed, expired, force_ended}

and only an admin reset leads out of a terminal state, back to
``not_started``. Every function here works on an in-memory
``ChallengeProgress`` with an explicit ``now``; persisting the result and
enforcing the optimistic version check is the caller's job.

Expiry is lazy: nothing flips a session to ``expired`` until it is next
touched (status, start, submit or an admin action).
"""

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from fastapi import status

from rechallenge.core.errors import (
    AppError,
    ConflictError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
)
from rechallenge.models.challenge import Challenge
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.models.progress import ChallengeProgress

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    """Lifecycle state of a user's challenge session."""

    NOT_STARTED = "not_started"
    ACTIVE = "active"
    COMPLETED = "completed"
    EXPIRED = "expired"
    FORCE_ENDED = "force_ended"


TERMINAL_STATES = frozenset(
    {SessionState.COMPLETED, SessionState.EXPIRED, SessionState.FORCE_ENDED}
)


class SubmissionOutcome(str, Enum):
    """What a single flag submission did to the session."""

    INCORRECT = "incorrect"
    ADVANCED = "advanced"
    COMPLETED = "completed"


# ============== Errors ==============


class ChallengeAlreadyEndedError(PermissionDeniedError):
    """Start attempted from a terminal state."""

    code = "CHALLENGE_ALREADY_ENDED"
    message = "Challenge already completed or expired. Contact admin to reset your progress."

    def __init__(self, reason: SessionState):
        super().__init__(reason=reason.value, canRestart=False)
        self.reason = reason


class WindowInactiveError(PermissionDeniedError):
    code = "CHALLENGE_INACTIVE"
    message = "Challenge is not currently active"

    def __init__(self):
        super().__init__(challengeActive=False)


class NotActiveError(PermissionDeniedError):
    code = "CHALLENGE_NOT_ACTIVE"
    message = "Challenge not active"


class NotStartedError(InvalidInputError):
    code = "CHALLENGE_NOT_STARTED"
    message = "Challenge not started"

    def __init__(self):
        super().__init__(hasStarted=False)


class TimeExpiredError(AppError):
    code = "TIME_EXPIRED"
    status_code = status.HTTP_410_GONE
    message = "Challenge time expired"

    def __init__(self):
        super().__init__(timeExpired=True)


class InvalidFlagError(InvalidInputError):
    code = "INVALID_FLAG"
    message = "Flag is required and must be a string"


class MaxAttemptsExceededError(PermissionDeniedError):
    code = "MAX_ATTEMPTS_EXCEEDED"

    def __init__(self, max_attempts: int):
        super().__init__(
            f"Maximum attempts ({max_attempts}) exceeded",
            maxAttempts=max_attempts,
        )


class CatalogGapError(NotFoundError):
    """No active challenge is configured for the session's current level."""

    code = "CHALLENGE_NOT_FOUND"
    message = "Challenge not found for current level"


class ForceEndConflictError(ConflictError):
    code = "CHALLENGE_NOT_ACTIVE"
    message = "Only an active challenge session can be force-ended"


# ============== Time ==============


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_time_expired(progress: ChallengeProgress, now: datetime) -> bool:
    """The end time itself is outside the session."""
    end_time = _as_utc(progress.challenge_end_time)
    return end_time is not None and now >= end_time


def time_remaining(progress: ChallengeProgress, now: datetime) -> int:
    """Whole seconds left in the session, never negative."""
    end_time = _as_utc(progress.challenge_end_time)
    if end_time is None:
        return 0
    return max(0, math.floor((end_time - now).total_seconds()))


def session_state(progress: ChallengeProgress, now: datetime) -> SessionState:
    """
    Derive the session state from the stored fields.

    An active record whose end time has passed reports ``expired`` even
    before ``expire_if_due`` has persisted the flip.
    """
    if progress.challenge_start_time is None:
        return SessionState.NOT_STARTED
    if progress.is_active:
        return SessionState.EXPIRED if is_time_expired(progress, now) else SessionState.ACTIVE
    if progress.end_reason:
        return SessionState(progress.end_reason)
    return SessionState.EXPIRED if is_time_expired(progress, now) else SessionState.FORCE_ENDED


def expire_if_due(progress: ChallengeProgress, now: datetime) -> bool:
    """
    Lazily move an overdue active session to ``expired``.

    Returns:
        True if the record was changed and needs to be persisted
    """
    if progress.is_active and is_time_expired(progress, now):
        progress.is_active = False
        progress.end_reason = SessionState.EXPIRED.value
        logger.info(f"Challenge session expired for user {progress.user_id}")
        return True
    return False


# ============== Start ==============


@dataclass
class StartResult:
    """Timing returned by a start request."""

    already_started: bool
    start_time: datetime
    end_time: datetime
    time_remaining: int
    time_limit_minutes: int

    def to_dict(self) -> dict[str, Any]:
        data = {
            "message": (
                "Challenge already started"
                if self.already_started
                else "Challenge started successfully"
            ),
            "challengeStartTime": self.start_time,
            "challengeEndTime": self.end_time,
            "timeRemaining": self.time_remaining,
            "timeLimit": self.time_limit_minutes,
        }
        if self.already_started:
            data["alreadyStarted"] = True
        return data


def start_session(
    progress: ChallengeProgress,
    config: ChallengeConfig,
    now: datetime,
) -> StartResult:
    """
    Start a session, or return the running one unchanged.

    Raises:
        ChallengeAlreadyEndedError: If the session is in a terminal state
    """
    state = session_state(progress, now)

    if state in TERMINAL_STATES:
        raise ChallengeAlreadyEndedError(state)

    if state is SessionState.ACTIVE:
        return StartResult(
            already_started=True,
            start_time=progress.challenge_start_time,
            end_time=progress.challenge_end_time,
            time_remaining=time_remaining(progress, now),
            time_limit_minutes=config.total_time_limit_minutes,
        )

    end_time = now + timedelta(minutes=config.total_time_limit_minutes)
    progress.challenge_start_time = now
    progress.challenge_end_time = end_time
    progress.challenge_completion_time = None
    progress.is_active = True
    progress.end_reason = None
    progress.current_level = 1
    progress.completed_levels = []
    progress.completed_count = 0
    progress.submissions = []
    progress.total_attempts = 0

    logger.info(
        f"Challenge session started for user {progress.user_id}, ends at {end_time.isoformat()}"
    )
    return StartResult(
        already_started=False,
        start_time=now,
        end_time=end_time,
        time_remaining=config.total_time_limit_minutes * 60,
        time_limit_minutes=config.total_time_limit_minutes,
    )


# ============== Submit ==============


@dataclass
class SubmissionResult:
    """Effect of one evaluated flag submission."""

    outcome: SubmissionOutcome
    level: int
    current_level: int
    completed_levels: list[int]
    total_attempts: int
    time_remaining: int
    newly_solved: bool = False
    catalog_exhausted: bool = False

    @property
    def is_correct(self) -> bool:
        return self.outcome is not SubmissionOutcome.INCORRECT

    def to_dict(self) -> dict[str, Any]:
        base = {
            "success": self.is_correct,
            "timeRemaining": self.time_remaining,
            "totalAttempts": self.total_attempts,
        }

        if self.outcome is SubmissionOutcome.INCORRECT:
            return {
                **base,
                "message": "Incorrect flag. Try again!",
                "currentLevel": self.current_level,
                "stayOnLevel": True,
            }

        if self.outcome is SubmissionOutcome.ADVANCED:
            return {
                **base,
                "message": f"Correct! Moving to Level {self.current_level}",
                "currentLevel": self.current_level,
                "completedLevels": self.completed_levels,
                "hasNextLevel": True,
                "moveToNextLevel": True,
                "levelProgression": True,
            }

        message = (
            "Congratulations! You have completed all available challenges!"
            if self.catalog_exhausted
            else "Congratulations! You have completed all challenges!"
        )
        return {
            **base,
            "message": message,
            "completed": True,
            "completedLevels": self.completed_levels,
            "finalLevel": self.level,
            "allChallengesComplete": True,
            "challengeEnded": True,
            "catalogExhausted": self.catalog_exhausted,
        }


def normalize_flag(flag: Any) -> str:
    """
    Validate a submitted flag payload.

    Raises:
        InvalidFlagError: If the flag is missing, not a string, or blank
    """
    if not isinstance(flag, str) or not flag.strip():
        raise InvalidFlagError()
    return flag.strip()


def ensure_can_submit(
    progress: ChallengeProgress,
    config: ChallengeConfig,
    now: datetime,
) -> None:
    """
    Check the session accepts a submission right now.

    An overdue session is expired in place before TimeExpiredError is
    raised, so the caller must persist the record on that error.

    Raises:
        NotActiveError: Session is not running
        TimeExpiredError: Session ran out of time (record was changed)
        MaxAttemptsExceededError: Config attempt limit reached
    """
    if not progress.is_active:
        raise NotActiveError()

    if expire_if_due(progress, now):
        raise TimeExpiredError()

    if config.has_attempt_limit and progress.total_attempts >= config.max_attempts:
        raise MaxAttemptsExceededError(config.max_attempts)


def _record_submission(
    progress: ChallengeProgress,
    level: int,
    flag: str,
    is_correct: bool,
    now: datetime,
    note: str | None = None,
) -> None:
    entry: dict[str, Any] = {
        "level": level,
        "flag": flag,
        "timestamp": now.isoformat(),
        "is_correct": is_correct,
    }
    if note:
        entry["note"] = note
    # Reassign so the JSONB column is flagged dirty
    progress.submissions = [*progress.submissions, entry]
    progress.total_attempts += 1


def _complete(progress: ChallengeProgress, now: datetime) -> None:
    progress.is_active = False
    progress.end_reason = SessionState.COMPLETED.value
    progress.challenge_completion_time = now
    logger.info(
        f"User {progress.user_id} completed the challenge "
        f"with levels {progress.completed_levels}"
    )


def apply_submission(
    progress: ChallengeProgress,
    config: ChallengeConfig,
    challenge: Challenge,
    next_challenge: Challenge | None,
    flag: str,
    now: datetime,
) -> SubmissionResult:
    """
    Evaluate a flag against the current level and advance the session.

    The submission is always logged and counted. A correct flag marks the
    level solved; the session completes when ``max_levels`` levels are
    solved or when no further active challenge exists.

    Args:
        progress: Active session record (ensure_can_submit already passed)
        config: Challenge configuration
        challenge: Active challenge for ``progress.current_level``
        next_challenge: Active challenge for the following level, if any
        flag: Normalized flag text
        now: Evaluation time
    """
    level = progress.current_level
    is_correct = challenge.validate_flag(flag)
    _record_submission(progress, level, flag, is_correct, now)
    remaining = time_remaining(progress, now)

    if not is_correct:
        return SubmissionResult(
            outcome=SubmissionOutcome.INCORRECT,
            level=level,
            current_level=level,
            completed_levels=list(progress.completed_levels),
            total_attempts=progress.total_attempts,
            time_remaining=remaining,
        )

    newly_solved = level not in progress.completed_levels
    if newly_solved:
        progress.completed_levels = [*progress.completed_levels, level]
        progress.completed_count = len(progress.completed_levels)

    catalog_exhausted = False
    next_level = level + 1

    if progress.completed_count >= config.max_levels:
        _complete(progress, now)
        outcome = SubmissionOutcome.COMPLETED
    elif (
        next_challenge is not None
        and next_challenge.level == next_level
        and next_level <= config.max_levels
    ):
        progress.current_level = next_level
        outcome = SubmissionOutcome.ADVANCED
    else:
        catalog_exhausted = next_challenge is None
        logger.warning(
            f"No active challenge for level {next_level} "
            f"(max_levels={config.max_levels}); completing session for user {progress.user_id}"
        )
        _complete(progress, now)
        outcome = SubmissionOutcome.COMPLETED

    return SubmissionResult(
        outcome=outcome,
        level=level,
        current_level=progress.current_level,
        completed_levels=list(progress.completed_levels),
        total_attempts=progress.total_attempts,
        time_remaining=remaining,
        newly_solved=newly_solved,
        catalog_exhausted=catalog_exhausted,
    )


# ============== Admin transitions ==============


def force_end(
    progress: ChallengeProgress,
    admin_username: str,
    reason: str,
    now: datetime,
) -> None:
    """
    End an active session early and leave an audit entry in the log.

    Raises:
        ForceEndConflictError: If the session is not active
    """
    if session_state(progress, now) is not SessionState.ACTIVE:
        raise ForceEndConflictError()

    _record_submission(
        progress,
        progress.current_level,
        "",
        False,
        now,
        note=f"force-ended by {admin_username}: {reason}",
    )
    progress.is_active = False
    progress.end_reason = SessionState.FORCE_ENDED.value
    progress.challenge_end_time = now
    logger.info(f"Admin {admin_username} force-ended session of user {progress.user_id}: {reason}")


def reset_progress(
    progress: ChallengeProgress,
    admin_id: uuid.UUID | None,
    now: datetime,
) -> SessionState:
    """
    Rewind any session to ``not_started``, keeping the reset audit trail.

    Returns:
        The state the session was in before the reset
    """
    previous = session_state(progress, now)

    progress.current_level = 1
    progress.completed_levels = []
    progress.completed_count = 0
    progress.submissions = []
    progress.total_attempts = 0
    progress.challenge_start_time = None
    progress.challenge_end_time = None
    progress.challenge_completion_time = None
    progress.is_active = False
    progress.end_reason = None
    progress.reset_count += 1
    progress.last_reset_time = now
    progress.last_reset_by = admin_id

    logger.info(
        f"Progress of user {progress.user_id} reset from {previous.value} "
        f"by {admin_id} (reset #{progress.reset_count})"
    )
    return previous


# ============== Read models ==============


def status_snapshot(
    progress: ChallengeProgress,
    config: ChallengeConfig,
    is_approved: bool,
    now: datetime,
) -> dict[str, Any]:
    """Full status of a session as reported by GET /status."""
    state = session_state(progress, now)
    has_started = progress.challenge_start_time is not None

    return {
        "state": state.value,
        "isApproved": is_approved,
        "isActive": state is SessionState.ACTIVE,
        "challengeActive": config.is_challenge_time_active(now),
        "currentLevel": progress.current_level,
        "completedLevels": list(progress.completed_levels),
        "timeRemaining": time_remaining(progress, now),
        "hasStarted": has_started,
        "totalAttempts": progress.total_attempts,
        "maxAttempts": config.max_attempts,
        "challengeStartTime": progress.challenge_start_time,
        "challengeEndTime": progress.challenge_end_time,
        "isCompleted": state is SessionState.COMPLETED,
        "isExpired": state is SessionState.EXPIRED,
        "canRestart": not has_started or state is SessionState.ACTIVE,
        "challengeCompletionTime": progress.challenge_completion_time,
        "endReason": state.value if state in TERMINAL_STATES else None,
        "resetCount": progress.reset_count,
        "lastResetTime": progress.last_reset_time,
    }


_START_BLOCKED_REASONS = {
    SessionState.COMPLETED: "Challenge already completed. Contact admin to reset progress.",
    SessionState.EXPIRED: "Challenge time expired. Contact admin to reset progress.",
    SessionState.FORCE_ENDED: "Challenge ended by an administrator. Contact admin to reset progress.",
    SessionState.ACTIVE: "Challenge already in progress.",
}


def can_start_report(
    progress: ChallengeProgress,
    config: ChallengeConfig,
    now: datetime,
) -> dict[str, Any]:
    """Whether a start request would begin a new session right now."""
    state = session_state(progress, now)
    reason = _START_BLOCKED_REASONS.get(state)

    return {
        "canStart": reason is None,
        "reason": reason,
        "hasStarted": progress.challenge_start_time is not None,
        "isCompleted": state is SessionState.COMPLETED,
        "isExpired": state is SessionState.EXPIRED,
        "isActive": state is SessionState.ACTIVE,
        "challengeActive": config.is_challenge_time_active(now),
    }


def levels_overview(
    progress: ChallengeProgress,
    challenges: list[Challenge],
) -> list[dict[str, Any]]:
    """Level list with lock state; locked levels hide description and hint."""
    completed = set(progress.completed_levels)
    levels = []
    for challenge in challenges:
        accessible = challenge.level == 1 or (challenge.level - 1) in completed
        levels.append({
            "level": challenge.level,
            "title": challenge.title,
            "description": (
                challenge.description if accessible else "Complete previous levels to unlock"
            ),
            "hint": challenge.hint if accessible else None,
            "isCompleted": challenge.level in completed,
            "isCurrent": challenge.level == progress.current_level,
            "isAccessible": accessible,
        })
    return levels


def submission_history(
    progress: ChallengeProgress,
    level: int | None = None,
) -> list[dict[str, Any]]:
    """Submissions newest first, without the submitted flag text."""
    entries = [
        entry for entry in progress.submissions
        if level is None or entry["level"] == level
    ]
    entries.sort(key=lambda entry: datetime.fromisoformat(entry["timestamp"]), reverse=True)
    return [
        {
            "level": entry["level"],
            "timestamp": entry["timestamp"],
            "isCorrect": entry["is_correct"],
            **({"note": entry["note"]} if entry.get("note") else {}),
        }
        for entry in entries
    ]


@dataclass
class ProgressSummary:
    """Compact progress view embedded in other responses."""

    current_level: int
    completed_levels: list[int] = field(default_factory=list)
    total_attempts: int = 0
    challenge_start_time: datetime | None = None
    is_active: bool = False

    @classmethod
    def of(cls, progress: ChallengeProgress) -> "ProgressSummary":
        return cls(
            current_level=progress.current_level,
            completed_levels=list(progress.completed_levels),
            total_attempts=progress.total_attempts,
            challenge_start_time=progress.challenge_start_time,
            is_active=progress.is_active,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "currentLevel": self.current_level,
            "completedLevels": self.completed_levels,
            "totalAttempts": self.total_attempts,
            "challengeStartTime": self.challenge_start_time,
            "isActive": self.is_active,
            "hasStarted": self.challenge_start_time is not None,
        }
