"""
Challenge catalog model for Re-Challenge CTF Platform.
"""

from sqlalchemy import Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from rechallenge.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Challenge(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """One level of the challenge sequence with its secret flag."""

    __tablename__ = "challenges"

    level: Mapped[int] = mapped_column(
        Integer,
        unique=True,
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(
        String(200),
        nullable=False,
    )
    description: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )
    hint: Mapped[str | None] = mapped_column(
        Text,
        nullable=True,
    )
    flag: Mapped[str] = mapped_column(
        String(500),
        nullable=False,
        comment="Matched case-insensitively after trimming",
    )
    is_active: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
        comment="Whether the level is in rotation",
    )

    # Metadata
    difficulty: Mapped[str] = mapped_column(
        String(20),
        default="Medium",
        nullable=False,
    )
    category: Mapped[str] = mapped_column(
        String(50),
        default="Web",
        nullable=False,
    )
    points: Mapped[int] = mapped_column(
        Integer,
        default=100,
        nullable=False,
    )
    solve_count: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_challenges_level_active", "level", "is_active"),
    )

    def validate_flag(self, submitted_flag: str) -> bool:
        """Trimmed, case-insensitive exact match."""
        return submitted_flag.strip().lower() == self.flag.strip().lower()

    def public_data(self) -> dict:
        """Challenge payload safe to show participants (no flag)."""
        return {
            "id": str(self.id),
            "level": self.level,
            "title": self.title,
            "description": self.description,
            "hint": self.hint,
            "difficulty": self.difficulty,
            "category": self.category,
            "points": self.points,
        }

    def to_dict(self) -> dict:
        """Full record for the admin panel."""
        return {
            **self.public_data(),
            "flag": self.flag,
            "isActive": self.is_active,
            "solveCount": self.solve_count,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }

    def __repr__(self) -> str:
        return f"<Challenge(id={self.id}, level={self.level}, title={self.title})>"
