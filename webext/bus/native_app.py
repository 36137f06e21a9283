"""Channel fronting the external helper process.

The process is started lazily by the first send, released by the idle monitor
once nothing happened for `idle_timeout` and no work is outstanding, and
started again transparently by the next send.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from .channel import Channel, Handler
from .config import BusConfig
from .lifecycle import IdleMonitor
from .port import Disconnect, Port
from .protocol import TARGET_NATIVE_APP
from .stream_port import SubprocessPort

_LOGGER = logging.getLogger("webext.bus.native_app")

Connector = Callable[[], Port]


class NativeApplication(Channel):
    def __init__(
        self,
        command: Sequence[str] | None = None,
        handler: Handler | None = None,
        *,
        connector: Connector | None = None,
        config: BusConfig | None = None,
        name: str = TARGET_NATIVE_APP,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = config or BusConfig()
        if connector is None:
            if not command:
                raise ValueError("either command or connector is required")
            connector = functools.partial(
                SubprocessPort,
                list(command),
                config=cfg,
                max_frame_bytes=cfg.max_frame_bytes or None,
                clock=clock,
            )
        super().__init__(
            None,
            handler,
            name=name,
            target=TARGET_NATIVE_APP,
            default_timeout=cfg.native_response_timeout,
            requests_ttl=cfg.requests_ttl,
            clock=clock,
        )
        self._connector = connector
        self._idle = IdleMonitor(
            cfg.idle_timeout,
            cfg.idle_recheck,
            is_busy=self.has_outstanding_work,
            on_idle=self._on_idle,
            clock=clock,
        )
        self.connect_count = 0

    @property
    def state(self) -> str:
        return "connected" if self.connected else "disconnected"

    def connect(self) -> Port:
        port = self.port
        if port is not None and port.connected:
            return port
        port = self._connector()
        self.connect_count += 1
        self.attach(port)
        self._idle.start()
        _LOGGER.info("Connected to native application via %s (connection #%d)", port.name, self.connect_count)
        return port

    def _ensure_port(self) -> Port:
        return self.connect()

    def touch(self) -> None:
        super().touch()
        self._idle.touch()

    async def ping(self, timeout: float | None = None) -> Any:
        """Liveness probe: a request with no body, answered with `{}`."""
        return await self.post_request({}, timeout)

    def status(self) -> dict[str, Any]:
        out = super().status()
        out["state"] = self.state
        out["connectCount"] = self.connect_count
        return out

    def _on_idle(self) -> None:
        _LOGGER.info("Disconnecting native application after %.1fs of inactivity", self._idle.idle_for)
        self.disconnect()

    def _on_disconnect(self, info: Disconnect) -> None:
        self._idle.stop()
        super()._on_disconnect(info)
