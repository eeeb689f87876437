"""Shared handle through which repositories reach the session's transaction."""

from __future__ import annotations

import asyncio
from typing import Any

from postgres_uow.uow.base import TransactionalConnection, TransactionState
from postgres_uow.uow.errors import ClosedTransaction


class TransactionHandle:
    """State shared by a session and every executor cloned from it.

    ``lock`` serializes statements on the single connection and the
    open/closed transition, so no clone can run a statement once another
    party has finalized the transaction.
    """

    __slots__ = ("connection", "state", "lock")

    def __init__(self, connection: TransactionalConnection) -> None:
        self.connection = connection
        self.state = TransactionState.ACTIVE
        self.lock = asyncio.Lock()

    @property
    def is_closed(self) -> bool:
        return self.state.is_terminal


class Executor:
    """
    Reference to one physical transaction, cheap to copy and share.

    Every clone points at the same :class:`TransactionHandle`; the executor
    makes no scope decisions itself. It only refuses work once the owning
    session is committed or rolled back and otherwise forwards statements to
    the store unchanged (driver errors propagate as-is).

    Typical use::

        session = await uow.begin()
        users = UserRepository(session.executor())
        orders = OrderRepository(session.executor())
    """

    __slots__ = ("_handle",)

    def __init__(self, handle: TransactionHandle) -> None:
        self._handle = handle

    # ------------------------------ Sharing ----------------------------------

    def clone(self) -> Executor:
        """Return another executor on the same transaction."""
        return Executor(self._handle)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Executor):
            return NotImplemented
        return self._handle is other._handle

    def __hash__(self) -> int:
        return id(self._handle)

    def __repr__(self) -> str:
        return f"<Executor state={self._handle.state.value}>"

    # ------------------------------ Guard ------------------------------------

    @property
    def state(self) -> TransactionState:
        return self._handle.state

    @property
    def is_closed(self) -> bool:
        return self._handle.is_closed

    def ensure_open(self) -> None:
        """Raise :class:`ClosedTransaction` once the session is terminal."""
        if self._handle.is_closed:
            raise ClosedTransaction(
                f"Transaction is {self._handle.state.value}; start a new session"
            )

    # ------------------------------ Statements -------------------------------

    async def execute(self, statement: Any, parameters: Any = None) -> Any:
        """Run ``statement`` inside the session's transaction.

        :param statement: SQLAlchemy executable (or raw SQL string).
        :param parameters: Bound parameters, a mapping or a list of mappings.
        :returns: The driver result (buffered).
        :raises ClosedTransaction: If the session already finalized.
        """
        async with self._handle.lock:
            self.ensure_open()
            return await self._handle.connection.execute(statement, parameters)

    async def scalar(self, statement: Any, parameters: Any = None) -> Any:
        """Run ``statement`` and return the first column of the first row."""
        result = await self.execute(statement, parameters)
        return result.scalar()


__all__ = ["Executor", "TransactionHandle"]
