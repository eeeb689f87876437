"""
Transaction lifecycle exceptions.

Every error raised by a :class:`~postgres_uow.uow.session.Session` or its
:class:`~postgres_uow.uow.executor.Executor` derives from
:class:`TransactionError`. Driver exceptions are never swallowed: they are
chained through ``__cause__`` so operators can see the root failure.

Two outcomes must stay distinguishable for callers:

* :class:`CommitError` - the data was **not** persisted.
* :class:`NotificationError` - the data **was** persisted (or rolled back as
  requested) but one or more transaction-aware observers failed to react.
"""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:  # pragma: no cover - typing only
    from postgres_uow.uow.base import TransactionState


# --------------------------------------------------------------------------- #
# Base types
# --------------------------------------------------------------------------- #


class TransactionError(Exception):
    """
    Base class for all unit-of-work errors.

    Notes
    -----
    Catch this to handle any lifecycle failure; catch the subclasses to tell
    pool, begin, commit and rollback problems apart.
    """


# --------------------------------------------------------------------------- #
# Acquisition / begin
# --------------------------------------------------------------------------- #


class AcquireError(TransactionError):
    """Raised when no connection can be checked out of the pool."""


class BeginError(TransactionError):
    """Raised when the store refuses to start a transaction."""


# --------------------------------------------------------------------------- #
# Observer notifications
# --------------------------------------------------------------------------- #


@dataclass(frozen=True, slots=True)
class ObserverFailure:
    """
    One failed observer hook.

    :param observer: The transaction-aware component that failed.
    :param hook: ``"on_commit"`` or ``"on_rollback"``.
    :param error: Exception raised by the hook.
    """

    observer: Any
    hook: str
    error: BaseException

    def __str__(self) -> str:
        return f"{type(self.observer).__name__}.{self.hook}: {self.error!r}"


class NotificationError(TransactionError):
    """
    Aggregate of observer-hook failures.

    The persisted outcome of the transaction is not affected; it only reports
    components that could not reconcile their state.

    :param failures: Failures in notification (registration) order.
    :type failures: Sequence[ObserverFailure]
    """

    def __init__(self, failures: Sequence[ObserverFailure]) -> None:
        self.failures: list[ObserverFailure] = list(failures)
        noun = "observer" if len(self.failures) == 1 else "observers"
        detail = "; ".join(str(f) for f in self.failures)
        super().__init__(f"{len(self.failures)} {noun} failed: {detail}")

    def __len__(self) -> int:
        return len(self.failures)

    def __iter__(self) -> Iterator[ObserverFailure]:
        return iter(self.failures)


# --------------------------------------------------------------------------- #
# Finalization
# --------------------------------------------------------------------------- #


class CommitError(TransactionError):
    """
    Raised when the physical commit failed.

    A compensating rollback has already been issued and ``on_rollback`` hooks
    have run; nothing was persisted.

    :param message: Human readable summary.
    :param notification_error: Failures of the ``on_rollback`` hooks that
        followed, if any.
    """

    def __init__(
        self, message: str, *, notification_error: NotificationError | None = None
    ) -> None:
        super().__init__(message)
        self.notification_error = notification_error


class RollbackError(TransactionError):
    """
    Raised when the physical rollback failed.

    The connection state is indeterminate, so it is discarded instead of being
    returned to the pool. The server aborts the transaction once the
    connection is gone.

    :param message: Human readable summary.
    :param notification_error: Failures of the ``on_rollback`` hooks, if any.
    """

    def __init__(
        self, message: str, *, notification_error: NotificationError | None = None
    ) -> None:
        super().__init__(message)
        self.notification_error = notification_error


class ClosedTransaction(TransactionError):
    """Raised when the executor or session is used after commit/rollback."""

    def __init__(self, message: str = "Transaction is already closed") -> None:
        super().__init__(message)


@dataclass(slots=True, eq=False)
class AlreadyFinalized(TransactionError):
    """
    Raised by a second ``commit()``/``rollback()`` on the same session.

    :param state: Terminal state the session had already reached.
    :type state: TransactionState
    """

    state: TransactionState

    def __str__(self) -> str:
        return f"Session already finalized ({self.state.value})"


# --------------------------------------------------------------------------- #
# Repository level
# --------------------------------------------------------------------------- #


class QueryError(TransactionError):
    """
    Raised by repositories when a statement fails inside the transaction.

    The executor itself forwards driver errors unchanged; repositories wrap
    them so callers can handle persistence failures without importing the
    driver.
    """


__all__ = [
    "TransactionError",
    "AcquireError",
    "BeginError",
    "ObserverFailure",
    "NotificationError",
    "CommitError",
    "RollbackError",
    "ClosedTransaction",
    "AlreadyFinalized",
    "QueryError",
]
