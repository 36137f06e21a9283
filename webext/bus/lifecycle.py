from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

_LOGGER = logging.getLogger("webext.bus.lifecycle")


class IdleMonitor:
    """Calls `on_idle()` once nothing happened for `idle_timeout` seconds.

    A single timer is armed at a time. When it fires early (activity since) it is
    re-armed for the remaining idle time; when the owner is idle but still busy
    (`is_busy()`), it is re-armed for `recheck_interval` instead of a full period.
    """

    def __init__(
        self,
        idle_timeout: float,
        recheck_interval: float,
        *,
        is_busy: Callable[[], bool],
        on_idle: Callable[[], None],
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if idle_timeout <= 0:
            raise ValueError("idle_timeout must be positive")
        self.idle_timeout = float(idle_timeout)
        self.recheck_interval = max(0.001, float(recheck_interval))
        self._is_busy = is_busy
        self._on_idle = on_idle
        self._clock = clock
        self._last_activity = clock()
        self._handle: asyncio.TimerHandle | None = None
        self._loop: asyncio.AbstractEventLoop | None = None

    @property
    def running(self) -> bool:
        return self._handle is not None

    @property
    def idle_for(self) -> float:
        return max(0.0, self._clock() - self._last_activity)

    def start(self) -> None:
        self.touch()
        if self._handle is not None:
            return
        self._loop = asyncio.get_running_loop()
        self._schedule(self.idle_timeout)

    def touch(self) -> None:
        self._last_activity = self._clock()

    def stop(self) -> None:
        handle = self._handle
        self._handle = None
        if handle is not None:
            handle.cancel()

    def _schedule(self, delay: float) -> None:
        loop = self._loop
        if loop is None:
            loop = self._loop = asyncio.get_running_loop()
        self._handle = loop.call_later(max(0.0, delay), self._check)

    def _check(self) -> None:
        self._handle = None
        idle_for = self.idle_for
        if idle_for < self.idle_timeout:
            self._schedule(self.idle_timeout - idle_for)
            return
        if self._is_busy():
            _LOGGER.debug("Idle for %.1fs but work is outstanding; checking again in %.1fs", idle_for, self.recheck_interval)
            self._schedule(self.recheck_interval)
            return
        try:
            self._on_idle()
        except Exception:
            _LOGGER.exception("Idle callback failed")
