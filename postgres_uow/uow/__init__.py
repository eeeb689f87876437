"""Unit of Work abstractions and concrete implementations.

This package re-exports the SQLAlchemy-backed unit of work, the session state
machine and executor it hands out, and the abstract contracts repositories
depend on.
"""

from .base import (
    ConnectionSource,
    TransactionalConnection,
    TransactionAware,
    TransactionState,
    UnitOfWork,
    UnitOfWorkSession,
)
from .errors import (
    AcquireError,
    AlreadyFinalized,
    BeginError,
    ClosedTransaction,
    CommitError,
    NotificationError,
    ObserverFailure,
    QueryError,
    RollbackError,
    TransactionError,
)
from .executor import Executor
from .observers import ObserverRegistry
from .session import FinalizeResult, Session
from .sqlalchemy_uow import (
    SQLAlchemyConnection,
    SQLAlchemyConnectionSource,
    SQLAlchemyUnitOfWork,
)

__all__ = [
    # Contracts
    "ConnectionSource",
    "TransactionalConnection",
    "TransactionAware",
    "TransactionState",
    "UnitOfWork",
    "UnitOfWorkSession",
    # Core
    "Executor",
    "FinalizeResult",
    "ObserverRegistry",
    "Session",
    # SQLAlchemy
    "SQLAlchemyConnection",
    "SQLAlchemyConnectionSource",
    "SQLAlchemyUnitOfWork",
    # Errors
    "TransactionError",
    "AcquireError",
    "BeginError",
    "CommitError",
    "RollbackError",
    "ClosedTransaction",
    "AlreadyFinalized",
    "NotificationError",
    "ObserverFailure",
    "QueryError",
]
