"""
Database engine and session management with async support.

Builds the pooled PostgreSQL engine used by the API and the workers.
SQLite URLs (tests, local runs) get a plain engine without pool tuning.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from harvester.core.config import Settings
from harvester.core.logging import get_logger

logger = get_logger(__name__)


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an async engine for the configured database URL.

    Pool sizing and connect arguments only apply to PostgreSQL.
    """
    db_url = str(settings.database_url)

    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=settings.database_echo)

    # asyncpg takes an ssl argument instead of sslmode in the URL
    db_url = db_url.replace("?sslmode=require", "")
    connect_args = {
        "server_settings": {
            "application_name": settings.app_name,
        },
    }
    if settings.database_ssl:
        connect_args["ssl"] = True

    engine = create_async_engine(
        db_url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_pre_ping=True,
        pool_recycle=300,
        echo=settings.database_echo,
        connect_args=connect_args,
    )
    logger.info(
        "Database engine created",
        pool_size=settings.database_pool_size,
        environment=settings.environment,
    )
    return engine


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Get an async session factory bound to ``engine``.

    Sessions keep attribute values after commit so services can hand
    loaded rows back to callers.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def get_db_context(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Transactional session scope: commit on success, roll back on error.

    Example:
        async with get_db_context(factory) as db:
            await db.execute(update(WorkItem)...)
    """
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
