"""
Re-Challenge Models Package

All SQLAlchemy models for the Re-Challenge CTF Platform.
"""

from rechallenge.models.base import Base
from rechallenge.models.challenge import Challenge
from rechallenge.models.challenge_config import ChallengeConfig
from rechallenge.models.progress import ChallengeProgress
from rechallenge.models.user import User, UserRole

__all__ = [
    # Base
    "Base",
    # Accounts
    "User",
    "UserRole",
    "ChallengeProgress",
    # Catalog
    "Challenge",
    # Configuration
    "ChallengeConfig",
]
