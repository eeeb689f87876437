"""Repository base shared by transaction-aware data-access components."""

from __future__ import annotations

from postgres_uow.repositories.base import BaseRepository

__all__ = ["BaseRepository"]
