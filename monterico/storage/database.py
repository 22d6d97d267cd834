"""
Database Access

DESIGN DECISION: Every ledger operation runs inside exactly one
transaction obtained from Database.transaction(). Either everything the
operation wrote is committed, or nothing is. There is no "careful
ordering" of writes and no compensation logic.

Failures of the store itself (constraint violations, lost connections)
are wrapped in StorageError. Business errors raised inside the block
(LedgerError subclasses) roll the transaction back and propagate as-is.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from monterico.config import get_settings
from monterico.storage.interface import StorageError
from monterico.storage.tables import Base


class Database:
    """
    Async engine plus session factory.

    Usage:
        db = Database("sqlite+aiosqlite:///:memory:")
        await db.create_all()
        async with db.transaction() as session:
            ...
    """

    def __init__(self, url: Optional[str] = None, echo: Optional[bool] = None):
        if url is None or echo is None:
            settings = get_settings().database
            url = url or settings.url
            echo = settings.echo if echo is None else echo

        self.url = url
        engine_kwargs: dict = {"echo": echo}
        if url.startswith("sqlite") and ":memory:" in url:
            # One shared connection, otherwise every checkout sees an empty database
            engine_kwargs["poolclass"] = StaticPool
            engine_kwargs["connect_args"] = {"check_same_thread": False}

        self.engine: AsyncEngine = create_async_engine(url, **engine_kwargs)
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

    async def create_all(self) -> None:
        """Create every table that doesn't exist yet."""
        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except SQLAlchemyError as e:
            raise StorageError(f"Failed to create schema: {e}") from e

    async def dispose(self) -> None:
        await self.engine.dispose()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Open a session and a transaction around the block.

        Commits when the block exits normally, rolls back on any exception.
        """
        async with self._sessionmaker() as session:
            try:
                async with session.begin():
                    yield session
            except SQLAlchemyError as e:
                raise StorageError(f"Database operation failed: {e}") from e
