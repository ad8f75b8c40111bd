"""
User model for Re-Challenge CTF Platform.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rechallenge.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from rechallenge.models.progress import ChallengeProgress


class UserRole(str, Enum):
    """Account roles."""

    USER = "user"
    ADMIN = "admin"


class User(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """User model representing challenge participants and admins."""

    __tablename__ = "users"

    # Authentication & Identity
    email: Mapped[str] = mapped_column(
        String(255),
        unique=True,
        index=True,
        nullable=False,
        comment="Stored lowercased",
    )
    username: Mapped[str] = mapped_column(
        String(30),
        unique=True,
        index=True,
        nullable=False,
    )
    password_hash: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
    )

    # Role & Status
    role: Mapped[str] = mapped_column(
        String(20),
        default=UserRole.USER.value,
        nullable=False,
        comment="user or admin",
    )
    is_approved: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Admin approval required before starting the challenge",
    )
    last_activity: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Relationships
    progress: Mapped["ChallengeProgress | None"] = relationship(
        "ChallengeProgress",
        back_populates="user",
        foreign_keys="ChallengeProgress.user_id",
        uselist=False,
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        Index("ix_users_approved_role", "is_approved", "role"),
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN

    @property
    def can_play(self) -> bool:
        """Approved users and admins may run a challenge session."""
        return self.is_approved or self.is_admin

    def to_dict(self) -> dict:
        """Public account data (never includes the password hash)."""
        return {
            "id": str(self.id),
            "username": self.username,
            "email": self.email,
            "role": self.role,
            "isAdmin": self.is_admin,
            "isApproved": self.is_approved,
            "lastActivity": self.last_activity,
            "createdAt": self.created_at,
        }

    def __repr__(self) -> str:
        return f"<User(id={self.id}, username={self.username}, role={self.role})>"
