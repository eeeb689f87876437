"""Generic transaction-aware repository base for SQLAlchemy Core tables.

This module centralizes persistence-only concerns shared by all repositories:
- Statements run through the session :class:`~postgres_uow.uow.Executor`, so
  every repository of a unit of work shares one physical transaction.
- Driver errors are wrapped as :class:`~postgres_uow.uow.errors.QueryError`.
- In-memory state is reconciled from the transaction outcome through the
  ``on_commit``/``on_rollback`` hooks.
- No commit/rollback: the session that owns the executor decides.

Design decisions
----------------
* Repositories MUST remain thin and persistence-focused.
* Entities are plain objects; subclasses map them to and from table rows via
  ``_to_values`` / ``_to_entity``.
* Written entities are staged until the transaction outcome is known.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Generic, TypeVar

from sqlalchemy import Column, Table, delete, func, insert, select
from sqlalchemy.engine import Row
from sqlalchemy.exc import SQLAlchemyError

from postgres_uow.uow.errors import QueryError
from postgres_uow.uow.executor import Executor

E = TypeVar("E")  # Entity type


class BaseRepository(Generic[E]):
    """Persistence-only repository for a single table, notified of outcomes.

    Subclasses MUST define:

    * ``table``: the SQLAlchemy :class:`~sqlalchemy.Table`.
    * ``_to_entity(row)`` and ``_to_values(entity)``.

    Subclasses MAY override ``on_commit``/``on_rollback`` (calling ``super()``)
    to invalidate caches or publish events once the outcome is final.

    Attributes
    ----------
    committed:
        ``True`` once ``on_commit`` ran.
    rolled_back:
        ``True`` once ``on_rollback`` ran.
    committed_entities:
        Entities written by this repository in a committed transaction.
    """

    #: Table the repository reads and writes (must be set by subclasses)
    table: Table

    def __init__(self, executor: Executor) -> None:
        self.executor = executor
        self.committed = False
        self.rolled_back = False
        self.committed_entities: list[E] = []
        self._staged: list[E] = []

    # ------------------------------ Mapping -----------------------------------

    def _to_entity(self, row: Row[Any]) -> E:
        raise NotImplementedError

    def _to_values(self, entity: E) -> Mapping[str, Any]:
        raise NotImplementedError

    def _pk_column(self) -> Column[Any]:
        """Return the single primary-key column of ``table``.

        :raises RuntimeError: For tables without exactly one PK column.
        """
        pk = list(self.table.primary_key.columns)
        if len(pk) != 1:
            raise RuntimeError(
                f"{type(self).__name__} requires a single-column primary key on {self.table.name}"
            )
        return pk[0]

    @property
    def staged(self) -> tuple[E, ...]:
        """Entities written in the still-open transaction."""
        return tuple(self._staged)

    # ------------------------------ Execution ---------------------------------

    async def _execute(self, statement: Any, parameters: Any = None) -> Any:
        try:
            return await self.executor.execute(statement, parameters)
        except SQLAlchemyError as exc:
            raise QueryError(f"{self.table.name}: {exc}") from exc

    # --------------------------------- CRUD -----------------------------------

    async def add(self, entity: E) -> E:
        """Insert ``entity`` inside the transaction and stage it.

        :param entity: New entity.
        :returns: The same entity.
        :raises QueryError: On constraint violations or driver errors.
        """
        await self._execute(insert(self.table).values(**self._to_values(entity)))
        self._staged.append(entity)
        return entity

    async def get(self, entity_id: Any) -> E | None:
        """Return the entity with primary key ``entity_id``, or ``None``."""
        stmt = select(self.table).where(self._pk_column() == entity_id)
        row = (await self._execute(stmt)).first()
        return self._to_entity(row) if row is not None else None

    async def exists(self, entity_id: Any) -> bool:
        stmt = select(func.count()).select_from(self.table).where(self._pk_column() == entity_id)
        return bool((await self._execute(stmt)).scalar())

    async def list(self, *, limit: int | None = None, offset: int | None = None) -> list[E]:
        """List entities ordered by primary key.

        :param limit: Optional limit.
        :param offset: Optional offset.
        :returns: Entities visible to this transaction.
        """
        stmt = select(self.table).order_by(self._pk_column().asc())
        if limit is not None:
            stmt = stmt.limit(int(limit))
        if offset is not None:
            stmt = stmt.offset(int(offset))
        result = await self._execute(stmt)
        return [self._to_entity(row) for row in result.all()]

    async def count(self) -> int:
        stmt = select(func.count()).select_from(self.table)
        return int((await self._execute(stmt)).scalar_one())

    async def delete(self, entity_id: Any) -> bool:
        """Delete by primary key. Returns ``True`` when a row was removed."""
        result = await self._execute(delete(self.table).where(self._pk_column() == entity_id))
        return bool(result.rowcount)

    # --------------------------- Transaction hooks ----------------------------

    async def on_commit(self) -> None:
        """Publish staged entities; they are now durable."""
        self.committed_entities.extend(self._staged)
        self._staged.clear()
        self.committed = True

    async def on_rollback(self) -> None:
        """Drop staged entities; none of them were persisted."""
        self._staged.clear()
        self.rolled_back = True


__all__ = ["BaseRepository"]
