"""Database session configuration with connection pooling."""

import os
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from onboarding_auth.core.config import settings

# Configurable pool settings via environment variables
pool_size = int(os.getenv("DATABASE_POOL_SIZE", "20"))
max_overflow = int(os.getenv("DATABASE_MAX_OVERFLOW", "40"))

engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    pool_size=pool_size,
    max_overflow=max_overflow,
    pool_timeout=30,  # Seconds to wait before giving up on getting a connection
    pool_recycle=3600,  # Recycle connections after 1 hour (prevents stale connections)
    pool_pre_ping=True,
)

async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create any missing tables."""
    from onboarding_auth import models  # noqa: F401  registers tables on Base.metadata
    from onboarding_auth.db.base import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
