"""
Submission Rate Limiter for Re-Challenge CTF Platform.

Sliding-window limit on flag submissions, tracked per challenge session in
Redis sorted sets. The key embeds the session start time, so a reset and
fresh start opens a new window, and every key expires with its window.
"""

import logging
import math
import time
import uuid
from dataclasses import dataclass
from datetime import datetime

import redis.asyncio as redis

from rechallenge.core.config import get_settings
from rechallenge.core.errors import RateLimitedError

logger = logging.getLogger(__name__)
settings = get_settings()

SUBMISSION_WINDOW_KEY = "ratelimit:submit:{user_id}:{session}"

# Redis connection pool
_redis_pool: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """Get or create Redis connection pool."""
    global _redis_pool
    if _redis_pool is None:
        _redis_pool = redis.from_url(str(settings.redis_url), decode_responses=True)
    return _redis_pool


async def close_redis() -> None:
    global _redis_pool
    if _redis_pool is not None:
        await _redis_pool.aclose()
        _redis_pool = None


def retry_after_seconds(oldest_timestamp: float, now: float, window: int) -> int:
    """Seconds until the oldest hit leaves the window, at least 1."""
    return max(1, math.ceil(oldest_timestamp + window - now))


@dataclass
class RateLimitDecision:
    allowed: bool
    hits: int
    retry_after: int = 0
    member: str | None = None


class SubmissionRateLimiter:
    """Sliding window of submissions per user session."""

    def __init__(
        self,
        redis_client: redis.Redis | None = None,
        limit: int | None = None,
        window: int | None = None,
    ):
        self._redis = redis_client
        self.limit = limit or settings.submission_rate_limit
        self.window = window or settings.submission_rate_window

    async def _get_redis(self) -> redis.Redis:
        """Get Redis client, initializing if necessary."""
        if self._redis is None:
            self._redis = await get_redis()
        return self._redis

    def window_key(self, user_id: uuid.UUID, session_start: datetime | None) -> str:
        session = int(session_start.timestamp()) if session_start else "none"
        return SUBMISSION_WINDOW_KEY.format(user_id=user_id, session=session)

    async def hit(
        self,
        user_id: uuid.UUID,
        session_start: datetime | None,
        now: float | None = None,
    ) -> RateLimitDecision:
        """
        Record a submission attempt and decide whether it is allowed.

        The attempt is added before counting, inside one MULTI/EXEC, so
        concurrent requests cannot both observe a free slot. A rejected
        attempt is removed again and does not consume the window.
        """
        redis_client = await self._get_redis()
        now = time.time() if now is None else now
        key = self.window_key(user_id, session_start)
        member = f"{now:.6f}:{uuid.uuid4().hex}"

        pipe = redis_client.pipeline(transaction=True)
        pipe.zremrangebyscore(key, 0, now - self.window)
        pipe.zadd(key, {member: now})
        pipe.zcard(key)
        pipe.zrange(key, 0, 0, withscores=True)
        pipe.expire(key, self.window)
        results = await pipe.execute()

        hits = int(results[2])
        if hits <= self.limit:
            return RateLimitDecision(allowed=True, hits=hits, member=member)

        await redis_client.zrem(key, member)
        oldest = results[3]
        oldest_ts = float(oldest[0][1]) if oldest else now
        retry_after = retry_after_seconds(oldest_ts, now, self.window)
        logger.warning(
            f"Submission rate limit exceeded for user {user_id} "
            f"({hits - 1}/{self.limit} in {self.window}s), retry after {retry_after}s"
        )
        return RateLimitDecision(allowed=False, hits=hits - 1, retry_after=retry_after)

    async def check(
        self,
        user_id: uuid.UUID,
        session_start: datetime | None,
        now: float | None = None,
    ) -> str:
        """
        Raise RateLimitedError when the session's window is full.

        Returns:
            The recorded slot, for ``release``

        Raises:
            RateLimitedError: With the number of seconds to wait
        """
        decision = await self.hit(user_id, session_start, now)
        if not decision.allowed:
            raise RateLimitedError(decision.retry_after)
        return decision.member

    async def release(
        self,
        user_id: uuid.UUID,
        session_start: datetime | None,
        member: str | None,
    ) -> None:
        """Give back a slot taken by an attempt that was never evaluated."""
        if member is None:
            return
        redis_client = await self._get_redis()
        await redis_client.zrem(self.window_key(user_id, session_start), member)


_rate_limiter: SubmissionRateLimiter | None = None


async def get_submission_rate_limiter() -> SubmissionRateLimiter:
    """Get the process-wide limiter (Redis holds the actual windows)."""
    global _rate_limiter
    if _rate_limiter is None:
        _rate_limiter = SubmissionRateLimiter()
    return _rate_limiter
