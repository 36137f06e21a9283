from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from .channel import Channel, Handler
from .config import BusConfig
from .port import Disconnect, Port
from .protocol import TARGET_COORDINATOR, register_message

_LOGGER = logging.getLogger("webext.bus.satellite")

AsyncConnector = Callable[[], Awaitable[Port]]


class SatelliteEndpoint:
    """A satellite's connection to the coordinator (popup, page, content script).

    `connect()` opens a Port through `connector` and registers under `target`.
    When the connection is lost (not closed by us), it is re-established in the
    background with a growing delay starting at `reconnect_delay`.
    """

    def __init__(
        self,
        target: str,
        connector: AsyncConnector,
        handler: Handler | None = None,
        *,
        config: BusConfig | None = None,
        auto_reconnect: bool = True,
    ) -> None:
        if not target:
            raise ValueError("target is required")
        cfg = config or BusConfig()
        self.target = target
        self._connector = connector
        self._reconnect_delay = cfg.reconnect_delay
        self.channel = Channel(
            None,
            handler,
            name=f"satellite:{target}",
            target=TARGET_COORDINATOR,
            default_timeout=cfg.response_timeout,
            requests_ttl=cfg.requests_ttl,
            auto_reconnect=auto_reconnect,
        )
        self.channel.observe_disconnect(self._on_disconnect)
        self.connect_count = 0
        self._closing = False
        self._reconnect_task: asyncio.Task[None] | None = None

    @property
    def connected(self) -> bool:
        return self.channel.connected

    async def connect(self, timeout: float | None = None) -> dict[str, Any]:
        self._closing = False
        if self.channel.connected:
            # Replacing the connection: requests still waiting on the old one fail now.
            _LOGGER.info("Replacing existing connection of %r", self.target)
            self.channel.disconnect()
        port = await self._connector()
        self.channel.attach(port)
        self.connect_count += 1
        try:
            reply = await self.channel.post_request(register_message(self.target), timeout)
        except Exception:
            port.disconnect()
            raise
        _LOGGER.info("Registered %r with the coordinator via %s", self.target, port.name)
        return reply if isinstance(reply, dict) else {}

    async def send_message(self, msg: dict[str, Any], timeout: float | None = None) -> Any:
        return await self.channel.post_request(msg, timeout)

    def post_message(self, msg: dict[str, Any]) -> None:
        self.channel.post_message(msg)

    async def close(self) -> None:
        self._closing = True
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and not task.done():
            task.cancel()
        self.channel.disconnect()

    def _on_disconnect(self, info: Disconnect) -> None:
        if info.intentional or self._closing or not self.channel.auto_reconnect:
            return
        task = self._reconnect_task
        if task is not None and not task.done():
            return
        _LOGGER.warning("Lost connection to the coordinator (%s); reconnecting", info.reason or "closed by peer")
        self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self._reconnect_delay
        max_delay = max(self._reconnect_delay * 10, 5.0)
        while not self._closing:
            await asyncio.sleep(delay)
            try:
                await self.connect()
                return
            except Exception as exc:  # noqa: BLE001
                _LOGGER.warning("Reconnect of %r failed: %s", self.target, exc)
                delay = min(max(delay, 0.05) * 1.6, max_delay)
