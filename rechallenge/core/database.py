"""
Re-Challenge - Database Configuration
Async SQLAlchemy setup with PostgreSQL
"""

import logging
from typing import AsyncGenerator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from rechallenge.core.config import get_settings
from rechallenge.models.base import Base

logger = logging.getLogger(__name__)
settings = get_settings()

# Create async engine
engine = create_async_engine(
    str(settings.database_url),
    echo=settings.database_echo,
    pool_size=settings.database_pool_size,
    max_overflow=settings.database_max_overflow,
    pool_pre_ping=True,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting async database sessions.

    Yields:
        AsyncSession: Database session for request handling
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db() -> None:
    """
    Initialize database by creating all tables.
    Should be called during application startup.
    """
    # Register every mapped class on the metadata before create_all
    import rechallenge.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def seed_defaults() -> None:
    """
    Create the challenge config singleton and the bootstrap admin account.

    Both steps are no-ops when the rows already exist.
    """
    from rechallenge.models.challenge_config import ChallengeConfig
    from rechallenge.models.progress import ChallengeProgress
    from rechallenge.models.user import User, UserRole
    from rechallenge.services.auth_service import get_password_hash

    async with AsyncSessionLocal() as session:
        await ChallengeConfig.get(session)

        result = await session.execute(
            select(User.id).where(User.role == UserRole.ADMIN).limit(1)
        )
        if result.scalar_one_or_none() is None:
            admin = User(
                username=settings.admin_username,
                email=settings.admin_email.lower(),
                password_hash=get_password_hash(settings.admin_password),
                role=UserRole.ADMIN,
                is_approved=True,
            )
            admin.progress = ChallengeProgress.pristine()
            session.add(admin)
            await session.commit()
            logger.warning(
                f"Default admin user created: {admin.email}. "
                "Change the default password after first login."
            )


async def close_db() -> None:
    """
    Close database connections.
    Should be called during application shutdown.
    """
    await engine.dispose()
