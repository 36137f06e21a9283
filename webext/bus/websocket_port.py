from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from .framing import encode_text
from .port import Disconnect, Port

_LOGGER = logging.getLogger("webext.bus.websocket_port")


def _import_websockets():
    try:
        import websockets  # type: ignore[import-not-found]

        return websockets
    except Exception as exc:  # noqa: BLE001
        raise RuntimeError(
            "WebSocket endpoints require the 'websockets' Python package (pip install websockets)."
        ) from exc


class WebSocketPort(Port):
    """Structured messages (one JSON text per WebSocket message), no framing needed.

    A single writer task drains the outbox so messages leave in send order.
    """

    def __init__(self, ws: Any, *, name: str | None = None) -> None:
        super().__init__(name=name)
        self._ws = ws
        self._outbox: asyncio.Queue[str | None] = asyncio.Queue()
        self._finished = asyncio.Event()
        loop = asyncio.get_running_loop()
        self._reader_task = loop.create_task(self._read_loop())
        self._writer_task = loop.create_task(self._write_loop())

    def send(self, msg: dict[str, Any]) -> None:
        if not self.connected:
            _LOGGER.warning("Cannot post message on closed port %s", self.name)
            return
        self._outbox.put_nowait(encode_text(msg))

    async def wait_closed(self) -> None:
        await self._finished.wait()

    async def _read_loop(self) -> None:
        websockets = _import_websockets()
        reason: str | None = None
        try:
            async for raw in self._ws:
                if isinstance(raw, (bytes, bytearray)):
                    raw = bytes(raw).decode("utf-8", errors="replace")
                try:
                    msg = json.loads(raw)
                except ValueError as exc:
                    _LOGGER.warning("Dropping undecodable message on %s: %s", self.name, exc)
                    continue
                if not isinstance(msg, dict):
                    _LOGGER.warning("Dropping message on %s: expected a JSON object", self.name)
                    continue
                self._deliver(msg)
        except websockets.exceptions.ConnectionClosedOK:
            reason = None
        except websockets.exceptions.ConnectionClosed as exc:
            reason = f"connection closed: {exc}"
        self._lost(reason)

    async def _write_loop(self) -> None:
        websockets = _import_websockets()
        try:
            while True:
                text = await self._outbox.get()
                if text is None:
                    break
                try:
                    await self._ws.send(text)
                except websockets.exceptions.ConnectionClosed as exc:
                    self._lost(f"send failed: {exc}")
                    return
        finally:
            with contextlib.suppress(Exception):
                await self._ws.close()
            self._finished.set()

    def _lost(self, reason: str | None) -> None:
        if not self.connected:
            return
        # Let the writer exit; nothing queued can be delivered anymore.
        self._outbox.put_nowait(None)
        self._closed(Disconnect(intentional=False, reason=reason))

    def _close_transport(self) -> None:
        # Flush what was already queued, then close.
        self._outbox.put_nowait(None)
        task = self._reader_task
        if task is not asyncio.current_task():
            task.cancel()


async def connect_websocket(uri: str, *, name: str | None = None, open_timeout: float = 5.0) -> WebSocketPort:
    websockets = _import_websockets()
    ws = await asyncio.wait_for(websockets.connect(uri, ping_interval=None, max_size=None), timeout=open_timeout)
    return WebSocketPort(ws, name=name or uri)
