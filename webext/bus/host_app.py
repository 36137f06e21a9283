"""The helper-process side of the host boundary.

The browser starts the helper with frames flowing over its stdin/stdout.
`HostApplication` answers pings, reports runtime information (`specs`) and
dispatches every other message by `kind` to handlers registered by features.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
import os
import platform
import sys
import tempfile
from collections.abc import Callable
from typing import Any

from .channel import Channel
from .config import BusConfig
from .port import Disconnect, Port
from .protocol import (
    BUS_PROTOCOL_VERSION,
    FIELD_KIND,
    KIND_CONSOLE,
    KIND_NOTIFICATION,
    KIND_SPECS,
    TARGET_COORDINATOR,
    PingMessage,
    classify,
)
from .stream_port import StdioPort

_LOGGER = logging.getLogger("webext.bus.host_app")

KindHandler = Callable[[dict[str, Any], Channel], Any]

_CONSOLE_LEVELS = {
    logging.DEBUG: "debug",
    logging.INFO: "info",
    logging.WARNING: "warn",
    logging.ERROR: "error",
    logging.CRITICAL: "error",
}


def runtime_specs() -> dict[str, Any]:
    return {
        "platform": sys.platform,
        "machine": platform.machine(),
        "python": platform.python_version(),
        "executable": sys.executable,
        "pid": os.getpid(),
        "tempDir": tempfile.gettempdir(),
        "protocolVersion": BUS_PROTOCOL_VERSION,
    }


class HostApplication:
    def __init__(self, port: Port | None = None, *, config: BusConfig | None = None) -> None:
        cfg = config or BusConfig()
        self.port = port if port is not None else StdioPort(config=cfg)
        self.channel = Channel(
            self.port,
            self._dispatch,
            name="native host",
            target=TARGET_COORDINATOR,
            default_timeout=cfg.response_timeout,
            requests_ttl=cfg.requests_ttl,
        )
        self._handlers: dict[str, KindHandler] = {KIND_SPECS: lambda msg, channel: runtime_specs()}
        self._done = asyncio.Event()
        self.channel.observe_disconnect(self._on_disconnect)

    def register(self, kind: str, handler: KindHandler) -> None:
        self._handlers[kind] = handler

    async def run(self) -> int:
        """Serve until the browser closes our stdin."""
        await self._done.wait()
        return 0

    def close(self) -> None:
        self.channel.disconnect()

    def notify(self, details: Any) -> None:
        self.channel.post_message({FIELD_KIND: KIND_NOTIFICATION, "details": details})

    def console(self, level: str, content: str) -> None:
        self.channel.post_message({FIELD_KIND: KIND_CONSOLE, "level": level, "content": content})

    async def request(self, msg: dict[str, Any], timeout: float | None = None) -> Any:
        return await self.channel.post_request(msg, timeout)

    async def _dispatch(self, msg: dict[str, Any], channel: Channel) -> Any:
        parsed = classify(msg)
        if isinstance(parsed, PingMessage):
            return {}
        kind = msg.get(FIELD_KIND)
        handler = self._handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            _LOGGER.warning("Message kind=%r is not handled", kind)
            return {"error": "Message is not handled by native application", "message": msg}
        result = handler(msg, channel)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _on_disconnect(self, info: Disconnect) -> None:
        if info.reason:
            _LOGGER.info("Input closed: %s", info.reason)
        self._done.set()


class NativeLogHandler(logging.Handler):
    """Mirror log records to the extension console as `console` messages."""

    def __init__(self, app: HostApplication, level: int = logging.INFO) -> None:
        super().__init__(level)
        self._app = app
        self._loop = asyncio.get_running_loop()
        self._emitting = False

    def emit(self, record: logging.LogRecord) -> None:
        try:
            content = self.format(record)
        except Exception:  # noqa: BLE001
            self.handleError(record)
            return
        level = _CONSOLE_LEVELS.get(record.levelno, "info")
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._post(level, content)
        else:
            with contextlib.suppress(RuntimeError):
                self._loop.call_soon_threadsafe(self._post, level, content)

    def _post(self, level: str, content: str) -> None:
        # Sending may log by itself (closed port): never loop back into the handler.
        if self._emitting or not self._app.channel.connected:
            return
        self._emitting = True
        try:
            self._app.console(level, content)
        finally:
            self._emitting = False
