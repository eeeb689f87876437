"""
Unit tests for the Session state machine, using an in-memory pool.
"""

from __future__ import annotations

import asyncio

import pytest

from postgres_uow.uow import session as session_module
from postgres_uow.uow import (
    AlreadyFinalized,
    ClosedTransaction,
    CommitError,
    FinalizeResult,
    NotificationError,
    RollbackError,
    SQLAlchemyUnitOfWork,
    TransactionState,
)
from tests.helpers.fakes import (
    FakeDriverError,
    FakeSource,
    RecordingObserver,
    SlowObserver,
    hooks,
)

pytestmark = pytest.mark.anyio


class TestCommit:
    async def test_commit_without_writes_reaches_committed(self, fake_uow, source):
        """
        GIVEN a fresh session
        WHEN it commits without any statement
        THEN it is committed and its connection went back to the pool.
        """
        session = await fake_uow.begin()

        result = await session.commit()

        assert result == FinalizeResult(TransactionState.COMMITTED)
        assert result.ok
        assert session.state is TransactionState.COMMITTED
        assert not session.is_active
        assert source.last.released and not source.last.discarded

    async def test_observers_notified_in_registration_order_after_commit(self, fake_uow, journal):
        session = await fake_uow.begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))
        session.register_transaction_aware(RecordingObserver("o2", journal))

        await session.commit()

        assert hooks(journal) == ["o1.on_commit", "o2.on_commit"]
        # Physical commit strictly precedes the first notification.
        assert journal.index("conn.commit") < journal.index("o1.on_commit")

    async def test_observer_failure_does_not_undo_commit(self, fake_uow, journal):
        """A failing on_commit is reported, the next observer still runs."""
        session = await fake_uow.begin()
        bad = RecordingObserver("bad", journal, fail_on={"on_commit"})
        good = RecordingObserver("good", journal)
        session.register_transaction_aware(bad)
        session.register_transaction_aware(good)

        result = await session.commit()

        assert result.state is TransactionState.COMMITTED
        assert not result.ok
        assert isinstance(result.notification_error, NotificationError)
        assert len(result.notification_error) == 1
        failure = result.notification_error.failures[0]
        assert failure.observer is bad and failure.hook == "on_commit"
        assert isinstance(failure.error, RuntimeError)
        assert hooks(journal) == ["bad.on_commit", "good.on_commit"]
        assert "conn.rollback" not in journal

        with pytest.raises(NotificationError):
            result.raise_for_notifications()

    async def test_failed_commit_rolls_back_and_notifies_rollback(self, journal):
        source = FakeSource(journal, fail_on={"commit"})

        session = await SQLAlchemyUnitOfWork(source).begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))

        with pytest.raises(CommitError) as info:
            await session.commit()

        assert isinstance(info.value.__cause__, FakeDriverError)
        assert info.value.notification_error is None
        assert "discarded" not in str(info.value)
        assert session.state is TransactionState.ROLLED_BACK
        assert journal[-3:] == ["conn.rollback", "conn.release", "o1.on_rollback"]
        assert "o1.on_commit" not in journal

    async def test_failed_commit_and_failed_compensation_discards_connection(self, journal):
        source = FakeSource(journal, fail_on={"commit", "rollback"})

        session = await SQLAlchemyUnitOfWork(source).begin()
        session.register_transaction_aware(
            RecordingObserver("o1", journal, fail_on={"on_rollback"})
        )

        with pytest.raises(CommitError) as info:
            await session.commit()

        assert source.last.discarded and not source.last.released
        assert session.state is TransactionState.ROLLED_BACK
        assert info.value.notification_error is not None
        assert info.value.notification_error.failures[0].hook == "on_rollback"
        assert "connection discarded" in str(info.value)


class TestRollback:
    async def test_rollback_notifies_only_on_rollback(self, fake_uow, journal, source):
        session = await fake_uow.begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))
        session.register_transaction_aware(RecordingObserver("o2", journal))

        result = await session.rollback()

        assert result.state is TransactionState.ROLLED_BACK and result.ok
        assert hooks(journal) == ["o1.on_rollback", "o2.on_rollback"]
        assert journal.index("conn.rollback") < journal.index("o1.on_rollback")
        assert source.last.released

    async def test_rollback_aggregates_observer_failures(self, fake_uow, journal):
        session = await fake_uow.begin()
        for name in ("o1", "o2", "o3"):
            fail = {"on_rollback"} if name != "o2" else set()
            session.register_transaction_aware(RecordingObserver(name, journal, fail_on=fail))

        result = await session.rollback()

        assert [f.observer.name for f in result.notification_error] == ["o1", "o3"]
        assert hooks(journal) == ["o1.on_rollback", "o2.on_rollback", "o3.on_rollback"]

    async def test_failed_rollback_discards_connection(self, journal):
        source = FakeSource(journal, fail_on={"rollback"})

        session = await SQLAlchemyUnitOfWork(source).begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))

        with pytest.raises(RollbackError) as info:
            await session.rollback()

        assert isinstance(info.value.__cause__, FakeDriverError)
        assert source.last.discarded and not source.last.released
        assert session.state is TransactionState.ROLLED_BACK
        assert hooks(journal) == ["o1.on_rollback"]


class TestFinalizeOnce:
    @pytest.mark.parametrize(
        ("first", "second", "terminal"),
        [
            ("commit", "commit", TransactionState.COMMITTED),
            ("commit", "rollback", TransactionState.COMMITTED),
            ("rollback", "commit", TransactionState.ROLLED_BACK),
            ("rollback", "rollback", TransactionState.ROLLED_BACK),
        ],
    )
    async def test_second_finalize_raises_already_finalized(
        self, fake_uow, journal, first, second, terminal
    ):
        session = await fake_uow.begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))
        await getattr(session, first)()

        with pytest.raises(AlreadyFinalized) as info:
            await getattr(session, second)()

        assert info.value.state is terminal
        assert session.state is terminal
        assert len(hooks(journal)) == 1

    async def test_concurrent_commits_resolve_to_exactly_one(self, fake_uow, journal):
        session = await fake_uow.begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))

        outcomes = await asyncio.gather(
            session.commit(), session.commit(), session.rollback(), return_exceptions=True
        )

        winners = [o for o in outcomes if isinstance(o, FinalizeResult)]
        losers = [o for o in outcomes if isinstance(o, AlreadyFinalized)]
        assert len(winners) == 1 and len(losers) == 2
        assert journal.count("conn.commit") == 1
        assert "conn.rollback" not in journal
        assert hooks(journal) == ["o1.on_commit"]

    async def test_register_after_finalize_is_rejected(self, fake_uow, journal):
        session = await fake_uow.begin()
        await session.rollback()

        with pytest.raises(ClosedTransaction):
            session.register_transaction_aware(RecordingObserver("late", journal))

        assert session.observers == ()


class TestRegistration:
    async def test_duplicate_registration_notifies_twice(self, fake_uow, journal):
        session = await fake_uow.begin()
        observer = RecordingObserver("o1", journal)
        session.register_transaction_aware(observer)
        session.register_transaction_aware(observer)

        await session.commit()

        assert hooks(journal) == ["o1.on_commit", "o1.on_commit"]

    async def test_non_observer_is_rejected(self, fake_uow):
        session = await fake_uow.begin()

        with pytest.raises(TypeError):
            session.register_transaction_aware(object())

        await session.rollback()


class TestImplicitRollback:
    async def test_leaving_scope_rolls_back(self, fake_uow, journal, source):
        async with await fake_uow.begin() as session:
            session.register_transaction_aware(RecordingObserver("o1", journal))
            await session.executor().execute("INSERT 1")

        assert session.state is TransactionState.ROLLED_BACK
        assert hooks(journal) == ["o1.on_rollback"]
        assert source.last.released

    async def test_leaving_scope_on_error_rolls_back_and_propagates(self, fake_uow, journal):
        with pytest.raises(ValueError, match="boom"):
            async with fake_uow.session() as session:
                session.register_transaction_aware(RecordingObserver("o1", journal))
                raise ValueError("boom")

        assert session.state is TransactionState.ROLLED_BACK
        assert hooks(journal) == ["o1.on_rollback"]

    async def test_leaving_scope_after_commit_is_noop(self, fake_uow, journal):
        async with fake_uow.session() as session:
            session.register_transaction_aware(RecordingObserver("o1", journal))
            await session.commit()

        assert hooks(journal) == ["o1.on_commit"]
        assert "conn.rollback" not in journal

    async def test_close_is_idempotent(self, fake_uow, journal):
        session = await fake_uow.begin()

        await session.close()
        await session.close()

        assert journal.count("conn.rollback") == 1

    async def test_implicit_rollback_failure_is_not_raised(self, journal, caplog):
        source = FakeSource(journal, fail_on={"rollback"})

        async with SQLAlchemyUnitOfWork(source).session() as session:
            pass

        assert session.state is TransactionState.ROLLED_BACK
        assert source.last.discarded
        assert any("Implicit rollback" in r.getMessage() for r in caplog.records)

    async def test_cancelled_task_still_rolls_back(self, fake_uow, journal, source):
        started = asyncio.Event()

        async def worker():
            async with fake_uow.session() as session:
                session.register_transaction_aware(RecordingObserver("o1", journal))
                started.set()
                await asyncio.sleep(3600)

        task = asyncio.ensure_future(worker())
        await started.wait()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert source.last.released
        assert hooks(journal) == ["o1.on_rollback"]

    async def test_garbage_collected_session_rolls_back(self, fake_uow, journal, source):

        session = await fake_uow.begin()
        executor = session.executor()
        session.register_transaction_aware(RecordingObserver("o1", journal))

        del session
        await asyncio.gather(*list(session_module._background))

        assert executor.is_closed
        assert source.last.released
        assert hooks(journal) == ["o1.on_rollback"]


class TestCancellation:
    async def test_commit_timeout_still_notifies_every_observer(self, fake_uow, journal):
        """A caller giving up during on_commit hooks leaves no observer behind."""
        session = await fake_uow.begin()
        session.register_transaction_aware(SlowObserver("o1", journal, delay=0.05))
        session.register_transaction_aware(RecordingObserver("o2", journal))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(session.commit(), 0.01)
        await session.close()
        await asyncio.gather(*list(session_module._background))

        assert session.state is TransactionState.COMMITTED
        assert hooks(journal) == ["o1.on_commit", "o2.on_commit"]
        assert "conn.rollback" not in journal

    async def test_cancel_during_physical_commit_does_not_roll_back(self, fake_uow, journal, source):
        session = await fake_uow.begin()
        session.register_transaction_aware(RecordingObserver("o1", journal))

        task = asyncio.ensure_future(session.commit())
        await asyncio.sleep(0)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await session.close()
        await asyncio.gather(*list(session_module._background))

        assert session.state is TransactionState.COMMITTED
        assert hooks(journal) == ["o1.on_commit"]
        assert "conn.rollback" not in journal
        assert source.last.released

    async def test_rollback_timeout_still_notifies_every_observer(self, fake_uow, journal):
        session = await fake_uow.begin()
        session.register_transaction_aware(SlowObserver("o1", journal, delay=0.05))
        session.register_transaction_aware(RecordingObserver("o2", journal))

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(session.rollback(), 0.01)
        await asyncio.gather(*list(session_module._background))

        assert session.state is TransactionState.ROLLED_BACK
        assert hooks(journal) == ["o1.on_rollback", "o2.on_rollback"]
        assert journal.count("conn.rollback") == 1
