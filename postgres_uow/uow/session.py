"""
Session state machine: one physical transaction, finalized exactly once.

``ACTIVE`` moves to ``COMMITTED`` or ``ROLLED_BACK`` under the handle lock, so
concurrent ``commit()``/``rollback()`` calls resolve deterministically: the
first one performs the physical operation and the notifications, every other
one gets :class:`~postgres_uow.uow.errors.AlreadyFinalized`.

Observers are notified after the lock is released and only once the physical
outcome is known.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Coroutine
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

from postgres_uow.core.logger import bind_session_id
from postgres_uow.uow.base import (
    TransactionalConnection,
    TransactionAware,
    TransactionState,
    UnitOfWorkSession,
)
from postgres_uow.uow.errors import (
    AlreadyFinalized,
    ClosedTransaction,
    CommitError,
    NotificationError,
    RollbackError,
    TransactionError,
)
from postgres_uow.uow.executor import Executor, TransactionHandle
from postgres_uow.uow.observers import ObserverRegistry

log = logging.getLogger(__name__)

# Strong references to finalizations running detached from their caller.
_background: set[asyncio.Task[Any]] = set()


@dataclass(frozen=True, slots=True)
class FinalizeResult:
    """
    Outcome of a physically successful ``commit()`` or ``rollback()``.

    :param state: Terminal state reached.
    :param notification_error: Aggregated observer failures, if any. Their
        presence never changes ``state``.
    """

    state: TransactionState
    notification_error: NotificationError | None = None

    @property
    def ok(self) -> bool:
        return self.notification_error is None

    def raise_for_notifications(self) -> None:
        """Raise the attached :class:`NotificationError`, if any."""
        if self.notification_error is not None:
            raise self.notification_error


class Session(UnitOfWorkSession):
    """
    Live handle to one open transaction.

    Created by :meth:`postgres_uow.uow.SQLAlchemyUnitOfWork.begin`; holds the
    checked-out connection until it finalizes. Use it as an async context
    manager so an unfinished session always rolls back::

        async with await uow.begin() as session:
            repo = UserRepository(session.executor())
            session.register_transaction_aware(repo)
            await repo.add(user)
            await session.commit()

    Parameters
    ----------
    connection:
        Connection on which the transaction has already been started.
    session_id:
        Correlation id used in log records. Random when omitted.
    """

    def __init__(
        self, connection: TransactionalConnection, *, session_id: str | None = None
    ) -> None:
        self.id = session_id or uuid4().hex
        self._handle = TransactionHandle(connection)
        self._executor = Executor(self._handle)
        self._observers = ObserverRegistry()
        self._started = time.perf_counter()

    def __repr__(self) -> str:
        return f"<Session id={self.id} state={self.state.value}>"

    # ----------------------------- Introspection ------------------------------

    @property
    def state(self) -> TransactionState:
        return self._handle.state

    @property
    def is_active(self) -> bool:
        return self._handle.state is TransactionState.ACTIVE

    @property
    def observers(self) -> tuple[TransactionAware, ...]:
        return self._observers.snapshot()

    # ----------------------------- Participants -------------------------------

    def executor(self) -> Executor:
        """Return a new executor bound to this session's transaction."""
        return self._executor.clone()

    def register_transaction_aware(self, component: TransactionAware) -> None:
        """Append ``component`` to the observers notified on finalization.

        :raises ClosedTransaction: If the session already finalized.
        :raises TypeError: If ``component`` lacks the two hooks.
        """
        if not self.is_active:
            raise ClosedTransaction(
                f"Cannot register observers on a {self.state.value} session"
            )
        self._observers.register(component)

    # ----------------------------- Finalization -------------------------------

    async def commit(self) -> FinalizeResult:
        """Commit the transaction, then call ``on_commit`` on every observer.

        :returns: Result carrying observer failures, if any.
        :raises AlreadyFinalized: If the session is not active.
        :raises CommitError: If the physical commit failed. The transaction
            was rolled back and ``on_rollback`` hooks were called instead.

        Cancelling the caller does not interrupt the commit: it runs to the
        end, notifications included, in a task of its own.
        """
        return await asyncio.shield(_detach(self._commit()))

    async def _commit(self) -> FinalizeResult:
        handle = self._handle
        commit_exc: Exception | None = None
        rollback_exc: Exception | None = None
        async with handle.lock:
            if handle.is_closed:
                raise AlreadyFinalized(handle.state)
            try:
                await handle.connection.commit()
            except Exception as exc:
                commit_exc = exc
                log.error(
                    "Commit failed, rolling back session %s",
                    self.id,
                    exc_info=True,
                    extra={"session_id": self.id},
                )
                rollback_exc = await _roll_back(handle, self.id)
            else:
                handle.state = TransactionState.COMMITTED
                await _release(handle, self.id)

        if commit_exc is not None:
            notification_error = await self._notify("on_rollback")
            if rollback_exc is not None:
                message = (
                    f"Commit failed: {commit_exc}; compensating rollback failed too "
                    f"({rollback_exc}), connection discarded"
                )
            else:
                message = f"Commit failed, transaction rolled back: {commit_exc}"
            raise CommitError(message, notification_error=notification_error) from commit_exc

        notification_error = await self._notify("on_commit")
        self._log_outcome(notification_error)
        return FinalizeResult(TransactionState.COMMITTED, notification_error)

    async def rollback(self) -> FinalizeResult:
        """Roll the transaction back, then call ``on_rollback`` on every observer.

        :returns: Result carrying observer failures, if any.
        :raises AlreadyFinalized: If the session is not active.
        :raises RollbackError: If the physical rollback failed. The connection
            was discarded and observers were still notified, since nothing
            can be persisted once the connection is gone.

        Like :meth:`commit`, runs to the end even if the caller is cancelled.
        """
        return await asyncio.shield(_detach(self._rollback()))

    async def _rollback(self) -> FinalizeResult:
        handle = self._handle
        async with handle.lock:
            if handle.is_closed:
                raise AlreadyFinalized(handle.state)
            rollback_exc = await _roll_back(handle, self.id)

        notification_error = await self._notify("on_rollback")
        if rollback_exc is not None:
            raise RollbackError(
                f"Rollback failed, connection discarded: {rollback_exc}",
                notification_error=notification_error,
            ) from rollback_exc

        self._log_outcome(notification_error)
        return FinalizeResult(TransactionState.ROLLED_BACK, notification_error)

    async def close(self) -> None:
        """Roll back if still active. Safe to call any number of times.

        Failures are logged, never raised: nobody is waiting for the outcome
        of an implicit rollback. The rollback is shielded so cancelling the
        owning task does not return the connection with an open transaction.
        """
        if not self.is_active:
            return
        log.warning(
            "Session %s left scope without commit/rollback; rolling back",
            self.id,
            extra={"session_id": self.id},
        )
        await asyncio.shield(_detach(self._implicit_rollback()))

    def __del__(self) -> None:
        handle = getattr(self, "_handle", None)
        if handle is None or handle.is_closed:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            log.warning(
                "Session %s garbage collected while active outside an event loop; "
                "the pool resets its connection",
                self.id,
            )
            return
        log.warning("Session %s garbage collected while active; rolling back", self.id)
        # Runs on the handle and registry only, so ``self`` is not resurrected.
        orphan = _Orphan(self.id, handle, self._observers)
        _detach(orphan.rollback(), loop=loop)

    # ----------------------------- Internals ----------------------------------

    async def _implicit_rollback(self) -> None:
        try:
            result = await self._rollback()
        except AlreadyFinalized:
            return
        except TransactionError:
            log.error(
                "Implicit rollback of session %s failed",
                self.id,
                exc_info=True,
                extra={"session_id": self.id},
            )
            return
        if not result.ok:
            log.warning(
                "Implicit rollback of session %s: %s",
                self.id,
                result.notification_error,
                extra={"session_id": self.id},
            )

    async def _notify(self, hook: str) -> NotificationError | None:
        with bind_session_id(self.id):
            return await self._observers.dispatch(hook)

    def _log_outcome(self, notification_error: NotificationError | None) -> None:
        elapsed_ms = round((time.perf_counter() - self._started) * 1000, 3)
        log.info(
            "Session %s %s (%d observers, %d failed)",
            self.id,
            self.state.value,
            len(self._observers),
            len(notification_error) if notification_error else 0,
            extra={"session_id": self.id, "state": self.state.value, "elapsed_ms": elapsed_ms},
        )


class _Orphan:
    """Rolls back the transaction of a session that was garbage collected."""

    def __init__(
        self, session_id: str, handle: TransactionHandle, observers: ObserverRegistry
    ) -> None:
        self.id = session_id
        self.handle = handle
        self.observers = observers

    async def rollback(self) -> None:
        async with self.handle.lock:
            if self.handle.is_closed:
                return
            await _roll_back(self.handle, self.id)
        with bind_session_id(self.id):
            await self.observers.dispatch("on_rollback")


# ------------------------------ Connection helpers ----------------------------


async def _release(handle: TransactionHandle, session_id: str) -> None:
    """Return the connection to the pool, discarding it if that fails."""
    try:
        await handle.connection.release()
    except Exception:
        log.warning(
            "Releasing connection of session %s failed; discarding it",
            session_id,
            exc_info=True,
            extra={"session_id": session_id},
        )
        await _discard(handle, session_id)


async def _discard(handle: TransactionHandle, session_id: str) -> None:
    """Invalidate the connection so the pool never hands it out again."""
    try:
        await handle.connection.discard()
    except Exception:
        log.error(
            "Discarding connection of session %s failed",
            session_id,
            exc_info=True,
            extra={"session_id": session_id},
        )


async def _roll_back(handle: TransactionHandle, session_id: str) -> Exception | None:
    """Physically roll back and move to ``ROLLED_BACK``. Caller holds the lock.

    The connection goes back to the pool on success and is discarded on
    failure. Returns the rollback failure, if any.
    """
    try:
        await handle.connection.rollback()
    except Exception as exc:
        handle.state = TransactionState.ROLLED_BACK
        log.error(
            "Rollback of session %s failed; discarding connection",
            session_id,
            exc_info=True,
            extra={"session_id": session_id},
        )
        await _discard(handle, session_id)
        return exc
    handle.state = TransactionState.ROLLED_BACK
    await _release(handle, session_id)
    return None


def _detach(
    coro: Coroutine[Any, Any, Any], *, loop: asyncio.AbstractEventLoop | None = None
) -> asyncio.Task[Any]:
    """Schedule ``coro`` as a task that survives cancellation of its caller."""
    task = (loop or asyncio.get_running_loop()).create_task(coro)
    _background.add(task)
    task.add_done_callback(_finished)
    return task


def _finished(task: asyncio.Task[Any]) -> None:
    _background.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    # Finalization errors are logged where they occur and raised to a waiting caller.
    if exc is not None and not isinstance(exc, TransactionError):
        log.error("Background finalization failed", exc_info=exc)


__all__ = ["Session", "FinalizeResult"]
