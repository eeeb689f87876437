"""Ordered registry of transaction-aware observers and hook dispatch."""

from __future__ import annotations

import logging
from collections.abc import Iterator

from postgres_uow.uow.base import TransactionAware
from postgres_uow.uow.errors import NotificationError, ObserverFailure

log = logging.getLogger(__name__)

HOOKS = ("on_commit", "on_rollback")


class ObserverRegistry:
    """Keep observers in registration order and notify them.

    Duplicates are kept: registering the same component twice
    yields two notifications.
    """

    def __init__(self) -> None:
        self._observers: list[TransactionAware] = []

    def register(self, observer: TransactionAware) -> None:
        """Append ``observer`` to the registry.

        :raises TypeError: If ``observer`` lacks callable ``on_commit`` /
            ``on_rollback`` hooks.
        """
        if not all(callable(getattr(observer, hook, None)) for hook in HOOKS):
            raise TypeError(
                f"{type(observer).__name__} does not implement on_commit()/on_rollback()"
            )
        self._observers.append(observer)

    def snapshot(self) -> tuple[TransactionAware, ...]:
        return tuple(self._observers)

    def __len__(self) -> int:
        return len(self._observers)

    def __iter__(self) -> Iterator[TransactionAware]:
        return iter(self.snapshot())

    async def dispatch(self, hook: str) -> NotificationError | None:
        """Call ``hook`` on every observer, in order, and collect failures.

        A failing observer never prevents the following ones from being
        notified.

        :param hook: ``"on_commit"`` or ``"on_rollback"``.
        :returns: Aggregate of failures, or ``None`` when all hooks succeeded.
        :raises ValueError: For an unknown hook name.
        """
        if hook not in HOOKS:
            raise ValueError(f"Unknown transaction hook: {hook!r}")

        failures: list[ObserverFailure] = []
        for observer in self.snapshot():
            try:
                await getattr(observer, hook)()
            except Exception as exc:
                log.warning(
                    "Observer hook failed: %s.%s",
                    type(observer).__name__,
                    hook,
                    exc_info=True,
                    extra={"observer": type(observer).__name__, "hook": hook},
                )
                failures.append(ObserverFailure(observer=observer, hook=hook, error=exc))

        return NotificationError(failures) if failures else None


__all__ = ["ObserverRegistry", "HOOKS"]
