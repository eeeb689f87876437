"""
SQLAlchemy (asyncio) implementation of UnitOfWork.

The engine's connection pool is the connection source: every session checks
out one :class:`~sqlalchemy.ext.asyncio.AsyncConnection`, starts a transaction
on it and gives the connection back when it finalizes.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine, AsyncTransaction

from postgres_uow.core.config import BaseConfig
from postgres_uow.core.database import create_engine_from_config
from postgres_uow.uow.base import ConnectionSource, TransactionalConnection, UnitOfWork
from postgres_uow.uow.errors import AcquireError, BeginError
from postgres_uow.uow.session import Session

log = logging.getLogger(__name__)


class SQLAlchemyConnection(TransactionalConnection):
    """Adapt an :class:`AsyncConnection` to the transactional connection contract."""

    def __init__(self, connection: AsyncConnection) -> None:
        self.connection = connection
        self._transaction: AsyncTransaction | None = None

    async def begin(self) -> None:
        self._transaction = await self.connection.begin()

    async def execute(self, statement: Any, parameters: Any = None) -> Any:
        if isinstance(statement, str):
            statement = text(statement)
        return await self.connection.execute(statement, parameters)

    async def commit(self) -> None:
        if self._transaction is None:
            raise RuntimeError("commit() called before begin()")
        await self._transaction.commit()

    async def rollback(self) -> None:
        if self._transaction is not None and self._transaction.is_active:
            await self._transaction.rollback()
        else:
            # Covers a transaction already deactivated by a failed commit.
            await self.connection.rollback()

    async def release(self) -> None:
        await self.connection.close()

    async def discard(self) -> None:
        try:
            await self.connection.invalidate()
        finally:
            await self.connection.close()


class SQLAlchemyConnectionSource(ConnectionSource):
    """Check connections out of an :class:`AsyncEngine` pool."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def acquire(self) -> SQLAlchemyConnection:
        connection = await self.engine.connect()
        return SQLAlchemyConnection(connection)


class SQLAlchemyUnitOfWork(UnitOfWork):
    """
    Session factory bound to a connection source; holds no other state.

    Parameters
    ----------
    source:
        Where connections come from. Usually a
        :class:`SQLAlchemyConnectionSource`; any object with an async
        ``acquire()`` returning a :class:`TransactionalConnection` works.

    Examples
    --------
    ::

        uow = SQLAlchemyUnitOfWork.from_config()
        async with uow.session() as session:
            users = UserRepository(session.executor())
            session.register_transaction_aware(users)
            await users.add(user)
            result = await session.commit()
            result.raise_for_notifications()
    """

    def __init__(self, source: ConnectionSource) -> None:
        self.source = source
        self._owned_engine: AsyncEngine | None = None

    # ----------------------------- Constructors ------------------------------

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> SQLAlchemyUnitOfWork:
        return cls(SQLAlchemyConnectionSource(engine))

    @classmethod
    def from_config(
        cls, config: type[BaseConfig] | BaseConfig | None = None
    ) -> SQLAlchemyUnitOfWork:
        """Build the engine from settings; :meth:`dispose` closes its pool."""
        engine = create_engine_from_config(config)
        uow = cls.from_engine(engine)
        uow._owned_engine = engine
        return uow

    async def dispose(self) -> None:
        """Close the pool of an engine created by :meth:`from_config`."""
        if self._owned_engine is not None:
            await self._owned_engine.dispose()
            self._owned_engine = None

    # ----------------------------- Public API ---------------------------------

    async def begin(self) -> Session:
        """Check out a connection, start a transaction, return an active session.

        :raises AcquireError: If the pool cannot provide a connection.
        :raises BeginError: If the store refuses to start the transaction; the
            connection is handed back before raising.
        """
        try:
            connection = await self.source.acquire()
        except AcquireError:
            raise
        except Exception as exc:
            log.error("Could not acquire a connection", exc_info=True)
            raise AcquireError(f"Could not acquire a connection: {exc}") from exc

        try:
            await connection.begin()
        except Exception as exc:
            log.error("Could not begin a transaction", exc_info=True)
            await _hand_back(connection)
            raise BeginError(f"Could not begin a transaction: {exc}") from exc

        session = Session(connection)
        log.debug("Session %s began", session.id, extra={"session_id": session.id})
        return session

    @asynccontextmanager
    async def session(self) -> AsyncIterator[Session]:
        """``begin()`` and roll back on exit unless committed or rolled back."""
        session = await self.begin()
        async with session:
            yield session


async def _hand_back(connection: TransactionalConnection) -> None:
    try:
        await connection.release()
    except Exception:
        log.warning("Releasing connection after failed begin failed; discarding", exc_info=True)
        try:
            await connection.discard()
        except Exception:
            log.error("Discarding connection after failed begin failed", exc_info=True)


__all__ = [
    "SQLAlchemyConnection",
    "SQLAlchemyConnectionSource",
    "SQLAlchemyUnitOfWork",
]
