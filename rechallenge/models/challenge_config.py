"""
Challenge configuration model for Re-Challenge CTF Platform.
Singleton holding the process-wide challenge parameters.
"""

from datetime import datetime, timezone

from sqlalchemy import Boolean, DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from rechallenge.models.base import Base, TimestampMixin

MIN_TIME_LIMIT_MINUTES = 1
MAX_TIME_LIMIT_MINUTES = 1440
MIN_LEVELS = 1
MAX_LEVELS = 10
UNLIMITED_ATTEMPTS = -1


class ChallengeConfig(TimestampMixin, Base):
    """
    Challenge configuration singleton model.

    Stores the time limit, level count and the global challenge window
    as a single row. Use ChallengeConfig.get() to retrieve the instance.
    """

    __tablename__ = "challenge_config"

    # Singleton enforcement
    singleton_pk: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        default=1,
        nullable=False,
    )

    # Session parameters
    total_time_limit_minutes: Mapped[int] = mapped_column(
        Integer,
        default=60,
        nullable=False,
        comment="Per-session time limit in minutes",
    )
    max_levels: Mapped[int] = mapped_column(
        Integer,
        default=2,
        nullable=False,
        comment="Number of levels required for completion",
    )
    max_attempts: Mapped[int] = mapped_column(
        Integer,
        default=UNLIMITED_ATTEMPTS,
        nullable=False,
        comment="Maximum submissions per session (-1 = unlimited)",
    )

    # Platform State
    challenge_active: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
    )
    registration_open: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )
    allow_hints: Mapped[bool] = mapped_column(
        Boolean,
        default=True,
        nullable=False,
    )

    # Global window
    challenge_start_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    challenge_end_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Display text
    challenge_title: Mapped[str] = mapped_column(
        String(100),
        default="Re-Challenge CTF Challenge",
        nullable=False,
    )
    challenge_description: Mapped[str] = mapped_column(
        String(500),
        default="Welcome to the Re-Challenge Capture The Flag Challenge!",
        nullable=False,
    )
    thank_you_message: Mapped[str] = mapped_column(
        String(500),
        default="Thank you for participating in the Re-Challenge CTF Challenge!",
        nullable=False,
    )

    @validates("total_time_limit_minutes")
    def validate_time_limit(self, key: str, value: int) -> int:
        if not MIN_TIME_LIMIT_MINUTES <= value <= MAX_TIME_LIMIT_MINUTES:
            raise ValueError(
                f"{key} must be between {MIN_TIME_LIMIT_MINUTES} and {MAX_TIME_LIMIT_MINUTES}"
            )
        return value

    @validates("max_levels")
    def validate_max_levels(self, key: str, value: int) -> int:
        if not MIN_LEVELS <= value <= MAX_LEVELS:
            raise ValueError(f"{key} must be between {MIN_LEVELS} and {MAX_LEVELS}")
        return value

    @validates("max_attempts")
    def validate_max_attempts(self, key: str, value: int) -> int:
        if value < UNLIMITED_ATTEMPTS:
            raise ValueError(f"{key} must be -1 (unlimited) or greater")
        return value

    def validate_window(self) -> None:
        """Raise ValueError unless start < end when both dates are set."""
        if self.challenge_start_date and self.challenge_end_date:
            if self.challenge_start_date >= self.challenge_end_date:
                raise ValueError("Challenge start date must be before end date")

    def is_challenge_time_active(self, now: datetime | None = None) -> bool:
        """The window is open only between the dates and while the flag is set."""
        now = now or datetime.now(timezone.utc)
        if self.challenge_start_date and now < self.challenge_start_date:
            return False
        if self.challenge_end_date and now > self.challenge_end_date:
            return False
        return self.challenge_active

    def time_until_start(self, now: datetime | None = None) -> int:
        if not self.challenge_start_date:
            return 0
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.challenge_start_date - now).total_seconds()))

    def time_until_end(self, now: datetime | None = None) -> int:
        if not self.challenge_end_date:
            return 0
        now = now or datetime.now(timezone.utc)
        return max(0, int((self.challenge_end_date - now).total_seconds()))

    @property
    def has_attempt_limit(self) -> bool:
        return self.max_attempts != UNLIMITED_ATTEMPTS

    @classmethod
    async def get(cls, session) -> "ChallengeConfig":
        """
        Get or create the singleton config instance.

        Args:
            session: Async database session

        Returns:
            ChallengeConfig: The singleton config instance
        """
        from sqlalchemy import select

        result = await session.execute(select(cls).where(cls.singleton_pk == 1))
        config = result.scalar_one_or_none()

        if config is None:
            config = cls.defaults()
            session.add(config)
            await session.commit()

        return config

    @classmethod
    def defaults(cls) -> "ChallengeConfig":
        """Build an unsaved config with every column at its default."""
        return cls(
            singleton_pk=1,
            total_time_limit_minutes=60,
            max_levels=2,
            max_attempts=UNLIMITED_ATTEMPTS,
            challenge_active=False,
            registration_open=True,
            allow_hints=True,
            challenge_title="Re-Challenge CTF Challenge",
            challenge_description="Welcome to the Re-Challenge Capture The Flag Challenge!",
            thank_you_message="Thank you for participating in the Re-Challenge CTF Challenge!",
        )

    def to_dict(self, now: datetime | None = None) -> dict:
        """Convert config to dictionary for API responses."""
        return {
            "totalTimeLimit": self.total_time_limit_minutes,
            "maxLevels": self.max_levels,
            "maxAttempts": self.max_attempts,
            "challengeActive": self.challenge_active,
            "isChallengeTimeActive": self.is_challenge_time_active(now),
            "registrationOpen": self.registration_open,
            "allowHints": self.allow_hints,
            "challengeStartDate": self.challenge_start_date,
            "challengeEndDate": self.challenge_end_date,
            "timeUntilStart": self.time_until_start(now),
            "timeUntilEnd": self.time_until_end(now),
            "challengeTitle": self.challenge_title,
            "challengeDescription": self.challenge_description,
            "thankYouMessage": self.thank_you_message,
        }

    def __repr__(self) -> str:
        return (
            f"<ChallengeConfig("
            f"active={self.challenge_active}, "
            f"limit={self.total_time_limit_minutes}m, "
            f"levels={self.max_levels})>"
        )
