"""Async database service with SQLModel and SQLAlchemy 2.0."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlmodel import SQLModel
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from core.config import Settings
from core.logging import get_logger
# Import table models so metadata.create_all sees them
from models import database as _tables  # noqa: F401

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    def _engine_kwargs(self) -> dict:
        url = self.settings.database_url
        kwargs = {"echo": self.settings.database_echo, "future": True}
        if url.startswith("sqlite"):
            # Concurrent claims wait on the write lock instead of failing
            kwargs["connect_args"] = {"timeout": 30}
            if ":memory:" in url:
                kwargs["poolclass"] = StaticPool
                kwargs["connect_args"]["check_same_thread"] = False
                return kwargs
        kwargs["pool_size"] = self.settings.database_pool_size
        kwargs["max_overflow"] = self.settings.database_max_overflow
        return kwargs

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

            self.engine = create_async_engine(
                self.settings.database_url,
                **self._engine_kwargs()
            )

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully",
                        dialect=self.engine.dialect.name)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name if self.engine else ""

    @property
    def supports_skip_locked(self) -> bool:
        return self.dialect == "postgresql"

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """Get async database session."""
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()
