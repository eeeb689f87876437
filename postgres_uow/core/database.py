"""Build the async engine (connection pool) sessions are drawn from.

The engine is the connection source of :class:`~postgres_uow.uow.SQLAlchemyUnitOfWork`.
Table definitions used by repositories attach to the shared :data:`metadata`.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import MetaData
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from postgres_uow.core.config import BaseConfig, get_config, normalize_database_url

# Global naming convention for all constraints
convention = {
    "ix": "ix_%(table_name)s_%(column_0_name)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata = MetaData(naming_convention=convention)


def engine_options(config: type[BaseConfig] | BaseConfig) -> dict[str, Any]:
    """Return ``create_async_engine`` keyword arguments for ``config``.

    Pool sizing only applies to server databases; SQLite files get
    SQLAlchemy's default pool for the dialect.

    :param config: Settings class (or instance) to read from.
    :returns: Keyword arguments for :func:`sqlalchemy.ext.asyncio.create_async_engine`.
    :rtype: dict[str, Any]
    """
    url = make_url(normalize_database_url(config.DATABASE_URL))
    options: dict[str, Any] = {
        "echo": bool(config.SQLALCHEMY_ECHO),
        "pool_pre_ping": bool(config.DB_POOL_PRE_PING),
    }
    if url.get_backend_name() != "sqlite":
        options.update(
            pool_size=int(config.DB_POOL_SIZE),
            max_overflow=int(config.DB_MAX_OVERFLOW),
            pool_timeout=int(config.DB_POOL_TIMEOUT),
        )
    return options


def create_engine_from_config(
    config: type[BaseConfig] | BaseConfig | None = None,
) -> AsyncEngine:
    """Create the async engine described by ``config``.

    :param config: Settings to use; defaults to :func:`get_config`.
    :returns: A lazily-connecting :class:`~sqlalchemy.ext.asyncio.AsyncEngine`.
    :rtype: AsyncEngine
    """
    cfg = get_config() if config is None else config
    return create_async_engine(normalize_database_url(cfg.DATABASE_URL), **engine_options(cfg))


__all__ = ["metadata", "engine_options", "create_engine_from_config"]
