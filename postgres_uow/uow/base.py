"""
Abstract Unit of Work contracts.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum
from types import TracebackType
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:  # pragma: no cover - typing only
    from postgres_uow.uow.executor import Executor
    from postgres_uow.uow.session import FinalizeResult


class TransactionState(str, Enum):
    """Lifecycle of one session. ``ACTIVE`` moves to exactly one terminal state."""

    ACTIVE = "active"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self is not TransactionState.ACTIVE


@runtime_checkable
class TransactionAware(Protocol):
    """Capability of components that react to the end of a transaction.

    Both hooks run after the physical outcome is final, in registration
    order, and may be invoked more than once if the component was registered
    more than once. They may raise; failures are collected into a
    :class:`~postgres_uow.uow.errors.NotificationError`.
    """

    async def on_commit(self) -> None: ...
    async def on_rollback(self) -> None: ...


class TransactionalConnection(Protocol):
    """A pooled connection able to run one transaction at a time."""

    async def begin(self) -> None: ...
    async def execute(self, statement: Any, parameters: Any = None) -> Any: ...
    async def commit(self) -> None: ...
    async def rollback(self) -> None: ...
    async def release(self) -> None: ...
    async def discard(self) -> None: ...


class ConnectionSource(Protocol):
    """Hands out pooled connections (e.g. an engine's pool)."""

    async def acquire(self) -> TransactionalConnection: ...


class UnitOfWorkSession(ABC):
    """
    One open transaction shared by several repositories.

    Responsibilities:
    - Hand out executors bound to the transaction.
    - Keep the ordered registry of transaction-aware observers.
    - Finalize exactly once, then notify observers.
    """

    @abstractmethod
    def executor(self) -> Executor: ...
    @abstractmethod
    def register_transaction_aware(self, component: TransactionAware) -> None: ...
    @abstractmethod
    async def commit(self) -> FinalizeResult: ...
    @abstractmethod
    async def rollback(self) -> FinalizeResult: ...
    @abstractmethod
    async def close(self) -> None: ...

    async def __aenter__(self) -> UnitOfWorkSession:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        # Leaving the scope without commit() means rollback, never commit.
        await self.close()


class UnitOfWork(ABC):
    """
    Factory of transactional boundaries bound to a connection source.

    Each :meth:`begin` checks a connection out of the pool and holds it until
    the returned session finalizes.
    """

    @abstractmethod
    async def begin(self) -> UnitOfWorkSession: ...
