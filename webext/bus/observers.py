from __future__ import annotations

import itertools
import logging
from collections.abc import Callable
from typing import Any, Generic, TypeVar

_LOGGER = logging.getLogger("webext.bus.observers")

T = TypeVar("T")

_tokens = itertools.count(1)


class Subscription:
    """Handle returned by `observe*()`; cancelling it removes exactly that registration."""

    def __init__(self, owner: Observers[Any], token: int) -> None:
        self._owner: Observers[Any] | None = owner
        self.token = token

    @property
    def active(self) -> bool:
        return self._owner is not None and self._owner.has(self.token)

    def cancel(self) -> None:
        owner = self._owner
        self._owner = None
        if owner is not None:
            owner.discard(self.token)

    def __enter__(self) -> Subscription:
        return self

    def __exit__(self, *exc: object) -> None:
        self.cancel()


class Observers(Generic[T]):
    """Ordered callback registry keyed by subscription token (not callback identity)."""

    def __init__(self, name: str = "") -> None:
        self._name = name
        self._callbacks: dict[int, Callable[[T], Any]] = {}

    def __len__(self) -> int:
        return len(self._callbacks)

    def has(self, token: int) -> bool:
        return token in self._callbacks

    def add(self, callback: Callable[[T], Any]) -> Subscription:
        token = next(_tokens)
        self._callbacks[token] = callback
        return Subscription(self, token)

    def discard(self, token: int) -> None:
        self._callbacks.pop(token, None)

    def clear(self) -> None:
        self._callbacks.clear()

    def notify(self, value: T) -> list[Any]:
        results: list[Any] = []
        # Snapshot: callbacks may (un)subscribe while being notified.
        for callback in list(self._callbacks.values()):
            try:
                results.append(callback(value))
            except Exception:
                _LOGGER.exception("%s observer failed", self._name or "bus")
        return results
