"""
Per-user challenge progress record for Re-Challenge CTF Platform.

One row per account. The session fields are rewritten by the challenge
state machine; every write is guarded by an optimistic version check.
"""

import uuid
from datetime import datetime
from typing import TYPE_CHECKING, Any

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.dialects.postgresql import JSONB, UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from rechallenge.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin

if TYPE_CHECKING:
    from rechallenge.models.user import User


class ChallengeProgress(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Progress of one user through the level sequence."""

    __tablename__ = "challenge_progress"

    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
    )

    # Level progression
    current_level: Mapped[int] = mapped_column(
        Integer,
        default=1,
        nullable=False,
    )
    completed_levels: Mapped[list[int]] = mapped_column(
        JSONB,
        default=list,
        nullable=False,
        comment="Distinct level numbers solved in the current session",
    )
    completed_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="len(completed_levels), kept for leaderboard ordering",
    )

    # Session timing
    challenge_start_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
    )
    challenge_end_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
        index=True,
        comment="Fixed at session start as start + time limit",
    )
    challenge_completion_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    end_reason: Mapped[str | None] = mapped_column(
        String(20),
        nullable=True,
        comment="completed, expired, or force_ended",
    )

    # Submission log
    submissions: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONB,
        default=list,
        nullable=False,
        comment="Append-only [{level, flag, timestamp, is_correct, note?}]",
    )
    total_attempts: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    # Reset audit trail
    reset_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )
    last_reset_time: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_reset_by: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True),
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
    )

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    user: Mapped["User"] = relationship(
        "User",
        back_populates="progress",
        foreign_keys=[user_id],
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index(
            "ix_challenge_progress_ranking",
            "completed_count",
            "total_attempts",
            "challenge_start_time",
        ),
    )

    @classmethod
    def pristine(cls, user_id: uuid.UUID | None = None) -> "ChallengeProgress":
        """Build a record in the not-started state with every field populated."""
        progress = cls(
            current_level=1,
            completed_levels=[],
            completed_count=0,
            challenge_start_time=None,
            challenge_end_time=None,
            challenge_completion_time=None,
            is_active=False,
            end_reason=None,
            submissions=[],
            total_attempts=0,
            reset_count=0,
            last_reset_time=None,
            last_reset_by=None,
        )
        if user_id is not None:
            progress.user_id = user_id
        return progress

    def __repr__(self) -> str:
        return (
            f"<ChallengeProgress(user={self.user_id}, level={self.current_level}, "
            f"active={self.is_active}, end_reason={self.end_reason})>"
        )
