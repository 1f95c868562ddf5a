"""
Database Configuration

SQLAlchemy async setup. The engine is owned by an explicitly constructed
``Database`` object whose lifecycle (connect/close) is managed by the caller.
"""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Database:
    """
    Async database client.

    Usage:
        async with Database(url, create_tables=True) as db:
            async with db.session() as session:
                ...
    """

    def __init__(self, url: str, echo: bool = False, create_tables: bool = False) -> None:
        self.url = url
        self.create_tables = create_tables
        self._engine: AsyncEngine = create_async_engine(url, echo=echo, future=True)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def connect(self) -> None:
        """Open the connection pool and optionally create tables."""
        async with self._engine.begin() as conn:
            # In production, use migrations instead
            if self.create_tables:
                await conn.run_sync(Base.metadata.create_all)
        logger.info("Database connected (%s)", self._engine.url.render_as_string(hide_password=True))

    async def close(self) -> None:
        """Close the database connection."""
        await self._engine.dispose()

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Transactional session: commits on success, rolls back on error."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
