"""Database engine and session management."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from ..config import get_settings

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Owns the async engine and session factory for the process."""

    def __init__(self):
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None

    def initialize(self, database_url: Optional[str] = None):
        """Create the engine and session factory."""
        url = database_url or get_settings().database_url

        engine_kwargs = {"echo": False}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in url:
                # Share the single in-memory database across sessions
                engine_kwargs["poolclass"] = StaticPool
        else:
            engine_kwargs["pool_pre_ping"] = True

        self.engine = create_async_engine(url, **engine_kwargs)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.info("Database engine initialized (%s)", url.split("://", 1)[0])

    async def close(self):
        """Dispose of the engine and its pooled connections."""
        if self.engine is not None:
            await self.engine.dispose()
        self.engine = None
        self.session_factory = None

    def get_session_factory(self) -> async_sessionmaker:
        if self.session_factory is None:
            self.initialize()
        return self.session_factory


db_manager = DatabaseManager()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a database session."""
    async with db_manager.get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_db_context() -> AsyncGenerator[AsyncSession, None]:
    """Context manager yielding a database session outside request scope."""
    async with db_manager.get_session_factory()() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
