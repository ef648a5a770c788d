"""Async engine and transaction scopes for the SQL store.

Every store operation runs inside :meth:`DatabaseManager.transaction`, so a
conditional write and the read that decides it commit or roll back together.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from escrow_settlement.config import DatabaseSettings
from escrow_settlement.errors import ConfigurationError
from escrow_settlement.storage.models import Base

logger = logging.getLogger(__name__)

SQLITE_BUSY_TIMEOUT_MS = 5000


def to_async_url(database_url: str) -> str:
    """Map a plain PostgreSQL URL onto the asyncpg driver."""
    if database_url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + database_url[len("postgresql://") :]
    return database_url


def _enable_sqlite_waits(engine: AsyncEngine) -> None:
    # Concurrent claim inserts must wait on the file lock instead of failing.
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _record: Any) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"PRAGMA busy_timeout = {SQLITE_BUSY_TIMEOUT_MS}")
        cursor.close()


class DatabaseManager:
    """Owns the async engine for one database URL.

    Example:
        ```python
        db = DatabaseManager.from_settings(settings.database)
        async with db.transaction() as session:
            await CommitmentRepository(session, vault).get(commitment_id)
        ```
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = to_async_url(database_url)
        self._engine_options: dict[str, Any] = {"echo": echo}
        if not self.database_url.startswith("sqlite"):
            self._engine_options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings) -> DatabaseManager:
        if settings.url is None:
            raise ConfigurationError("DATABASE_URL is not set")
        return cls(settings.url)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(self.database_url, **self._engine_options)
            if self._engine.dialect.name == "sqlite":
                _enable_sqlite_waits(self._engine)
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session that commits on success and rolls back on error."""
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)
        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_schema(self) -> None:
        """Create missing tables. Deployed databases are migrated with Alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Created escrow settlement schema on %s", self.dialect_name)

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._sessions = None
            logger.info("Database connections closed")
