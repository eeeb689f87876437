"""Coordinate one database transaction shared by several repositories.

Provide convenient access to the unit of work so callers can
``from postgres_uow import SQLAlchemyUnitOfWork`` without traversing the
package structure.
"""

from __future__ import annotations

from .uow import (
    AcquireError,
    AlreadyFinalized,
    BeginError,
    ClosedTransaction,
    CommitError,
    Executor,
    FinalizeResult,
    NotificationError,
    QueryError,
    RollbackError,
    Session,
    SQLAlchemyUnitOfWork,
    TransactionAware,
    TransactionError,
    TransactionState,
)

__version__ = "0.1.0"

__all__ = [
    "SQLAlchemyUnitOfWork",
    "Session",
    "Executor",
    "FinalizeResult",
    "TransactionAware",
    "TransactionState",
    "TransactionError",
    "AcquireError",
    "BeginError",
    "CommitError",
    "RollbackError",
    "ClosedTransaction",
    "AlreadyFinalized",
    "NotificationError",
    "QueryError",
]
