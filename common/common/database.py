from typing import AsyncGenerator
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession

from common.config import settings


# Database engine for async operations
engine = create_async_engine(settings.database_url, echo=settings.SQL_ECHO)

# Session factory for creating database sessions
AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False)


async def get_async_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for FastAPI to provide database sessions.

    Yields:
        AsyncSession: Database session that will be automatically closed.
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db() -> None:
    """Create all tables (development only, production schemas are migrated)."""
    from common.models import Base
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
