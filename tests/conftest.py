"""Pytest fixtures for unit-of-work tests.

Async tests run on asyncio through the AnyIO pytest plugin. Persistence tests
get a fresh schema per test on a temporary SQLite file (``aiosqlite``), or on
the database named by ``TEST_DATABASE_URL`` when set (e.g. a local
PostgreSQL).
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from postgres_uow.core.config import normalize_database_url
from postgres_uow.core.database import metadata
from postgres_uow.uow import SQLAlchemyUnitOfWork
from tests.common import tables as _tables  # noqa: F401  (registers users/orders)
from tests.helpers.fakes import FakeSource


@pytest.fixture
def anyio_backend() -> str:
    """Run async tests on asyncio only."""
    return "asyncio"


@pytest.fixture
def database_url(tmp_path) -> str:
    """URL of the database the persistence tests run against."""
    url = os.getenv("TEST_DATABASE_URL")
    if url:
        return normalize_database_url(url)
    return f"sqlite+aiosqlite:///{tmp_path / 'uow.sqlite3'}"


@pytest.fixture
async def engine(database_url: str) -> AsyncIterator[AsyncEngine]:
    """Create the sample schema, yield the engine, then drop everything.

    Yields
    ------
    sqlalchemy.ext.asyncio.AsyncEngine
        Engine whose pool backs the unit of work under test.
    """
    eng = create_async_engine(database_url)
    async with eng.begin() as conn:
        await conn.run_sync(metadata.drop_all)
        await conn.run_sync(metadata.create_all)
    try:
        yield eng
    finally:
        async with eng.begin() as conn:
            await conn.run_sync(metadata.drop_all)
        await eng.dispose()


@pytest.fixture
def uow(engine: AsyncEngine) -> SQLAlchemyUnitOfWork:
    return SQLAlchemyUnitOfWork.from_engine(engine)


@pytest.fixture
def journal() -> list[str]:
    """Shared call log of fake connections and observers."""
    return []


@pytest.fixture
def source(journal: list[str]) -> FakeSource:
    return FakeSource(journal)


@pytest.fixture
def fake_uow(source: FakeSource) -> SQLAlchemyUnitOfWork:
    """Unit of work over an in-memory pool; no database involved."""
    return SQLAlchemyUnitOfWork(source)


@pytest.fixture(scope="session")
def faker():
    """Provide a :class:`faker.Faker` instance seeded for deterministic tests."""
    from faker import Faker

    fk = Faker()
    Faker.seed(1337)
    return fk
