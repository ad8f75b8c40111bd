"""
Shared fixtures for the Re-Challenge backend tests.

State machine tests build real (transient) model objects and pass an
explicit ``now``; service tests use an AsyncMock database session.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from rechallenge.models.challenge import Challenge
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.models.progress import ChallengeProgress
from rechallenge.models.user import User, UserRole

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def make_challenge(level: int, flag: str | None = None, **overrides) -> Challenge:
    """Build an in-rotation challenge for a level."""
    fields = {
        "id": uuid.uuid4(),
        "level": level,
        "title": f"Level {level}",
        "description": f"Find the flag for level {level}",
        "hint": f"Look closer at level {level}",
        "flag": flag or f"flag{{level-{level}}}",
        "is_active": True,
        "difficulty": "Medium",
        "category": "Web",
        "points": 100,
        "solve_count": 0,
    }
    fields.update(overrides)
    return Challenge(**fields)


def make_user(role: UserRole = UserRole.USER, approved: bool = True, **overrides) -> User:
    """Build a user with a pristine progress record."""
    user_id = uuid.uuid4()
    fields = {
        "id": user_id,
        "username": f"player-{user_id.hex[:6]}",
        "email": f"{user_id.hex[:6]}@example.com",
        "password_hash": "not-a-real-hash",
        "role": role.value,
        "is_approved": approved,
        "created_at": NOW,
    }
    fields.update(overrides)
    user = User(**fields)
    user.progress = ChallengeProgress.pristine(user_id)
    return user


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def config() -> ChallengeConfig:
    """Open challenge window, 60 minute sessions, two levels."""
    config = ChallengeConfig.defaults()
    config.challenge_active = True
    return config


@pytest.fixture
def progress() -> ChallengeProgress:
    return ChallengeProgress.pristine(uuid.uuid4())


@pytest.fixture
def challenges() -> dict[int, Challenge]:
    """Levels 1-3 keyed by level number."""
    return {level: make_challenge(level) for level in (1, 2, 3)}


@pytest.fixture
def user() -> User:
    return make_user()


@pytest.fixture
def admin() -> User:
    return make_user(role=UserRole.ADMIN, username="admin")


@pytest_asyncio.fixture
async def db_session() -> AsyncGenerator[AsyncMock, None]:
    """Mock async database session."""
    session = AsyncMock()
    session.execute = AsyncMock()
    session.commit = AsyncMock()
    session.flush = AsyncMock()
    session.refresh = AsyncMock()
    session.rollback = AsyncMock()
    session.delete = AsyncMock()
    session.add = MagicMock()
    yield session


@pytest.fixture
def mock_rate_limiter() -> MagicMock:
    limiter = MagicMock()
    limiter.check = AsyncMock(return_value="slot")
    limiter.release = AsyncMock(return_value=None)
    return limiter


def scalar_result(value) -> MagicMock:
    """Mimic the Result of session.execute() for a single-row lookup."""
    result = MagicMock()
    result.scalar_one_or_none.return_value = value
    result.scalar.return_value = value
    result.first.return_value = value
    return result


@pytest.fixture
def user_factory():
    return make_user


@pytest.fixture
def challenge_factory():
    return make_challenge


@pytest.fixture
def result_of():
    return scalar_result
