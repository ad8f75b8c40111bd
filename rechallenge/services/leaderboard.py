"""
Leaderboard Service for Re-Challenge CTF Platform.

Ranks approved, non-admin participants who have started a session:
more completed levels first, then fewer attempts, then the earlier start.
"""

from typing import Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from rechallenge.models.progress import ChallengeProgress
from rechallenge.models.user import User, UserRole

DEFAULT_LIMIT = 10
MAX_LIMIT = 100


def _ranking_query(limit: int):
    return (
        select(User.username, ChallengeProgress)
        .join(ChallengeProgress, ChallengeProgress.user_id == User.id)
        .where(User.role != UserRole.ADMIN.value)
        .where(User.is_approved == True)
        .where(ChallengeProgress.challenge_start_time.is_not(None))
        .order_by(
            ChallengeProgress.completed_count.desc(),
            ChallengeProgress.total_attempts.asc(),
            ChallengeProgress.challenge_start_time.asc(),
        )
        .limit(limit)
    )


async def get_leaderboard(
    session: AsyncSession,
    limit: int = DEFAULT_LIMIT,
) -> list[dict[str, Any]]:
    """
    Get the ranked leaderboard.

    Args:
        session: Database session
        limit: Number of entries to return (clamped to 1..MAX_LIMIT)

    Returns:
        List of leaderboard entries with rank
    """
    limit = max(1, min(limit, MAX_LIMIT))
    result = await session.execute(_ranking_query(limit))

    entries = []
    for rank, (username, progress) in enumerate(result.all(), start=1):
        entries.append({
            "rank": rank,
            "username": username,
            "completedCount": progress.completed_count,
            "completedLevels": list(progress.completed_levels),
            "totalAttempts": progress.total_attempts,
            "challengeStartTime": progress.challenge_start_time,
            "challengeCompletionTime": progress.challenge_completion_time,
        })
    return entries
