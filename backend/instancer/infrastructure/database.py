"""
Instancer - Database Infrastructure
Async SQLAlchemy 2.0 with connection pooling
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from instancer.core.config import Settings

logger = structlog.get_logger(__name__)


class UTCDateTime(TypeDecorator):
    """
    Timestamp column that always round-trips as aware UTC.

    SQLite has no timezone storage, so values are written there as naive
    UTC and re-tagged on read.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == "sqlite":
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: Optional[datetime], dialect) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class Base(DeclarativeBase):
    """SQLAlchemy declarative base for all models."""
    pass


class DatabaseManager:
    """
    Database connection manager with async support.

    Handles connection pooling, session management, and health checks.
    """

    def __init__(self, settings: Settings):
        """
        Initialize database manager.

        Args:
            settings: Application settings
        """
        self._settings = settings
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database not connected")
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    async def connect(self) -> None:
        """Initialize database connection pool."""
        url = str(self._settings.database_url)
        logger.info(
            "Connecting to database",
            host=url.split("@")[-1].split("/")[0],
        )

        engine_kwargs: Dict[str, Any] = {
            "pool_pre_ping": True,
            "echo": self._settings.database_echo,
        }
        if not url.startswith("sqlite"):
            engine_kwargs.update(
                pool_size=self._settings.database_pool_size,
                max_overflow=self._settings.database_max_overflow,
                pool_timeout=self._settings.database_pool_timeout,
            )

        self._engine = create_async_engine(url, **engine_kwargs)

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        # Test connection
        async with self._engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

        logger.info("Database connection established")

    async def create_all(self) -> None:
        """Create every mapped table that does not exist yet."""
        from instancer.infrastructure import models  # noqa: F401  registers tables

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database schema ensured")

    async def disconnect(self) -> None:
        """Close database connection pool."""
        if self._engine:
            await self._engine.dispose()
            logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session.

        Yields:
            AsyncSession for database operations
        """
        if self._session_factory is None:
            raise RuntimeError("Database not connected")

        session = self._session_factory()
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def health_check(self) -> dict:
        """
        Check database health.

        Returns:
            Health status dictionary
        """
        try:
            async with self.session() as session:
                result = await session.execute(text("SELECT 1"))
                result.scalar()

            pool = self._engine.pool if self._engine else None
            return {
                "status": "healthy",
                "pool_size": pool.size() if pool is not None and hasattr(pool, "size") else 0,
                "checked_out": pool.checkedout() if pool is not None and hasattr(pool, "checkedout") else 0,
            }
        except Exception as e:
            logger.error("Database health check failed", error=str(e))
            return {
                "status": "unhealthy",
                "error": str(e),
            }
