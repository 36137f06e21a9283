from __future__ import annotations

import asyncio
import concurrent.futures
import contextlib
import logging
import threading
import time
from typing import Any

from .bus import MessageBus
from .channel import Channel
from .config import BusConfig
from .errors import BusError, RequestTimeoutError
from .websocket_port import WebSocketPort, _import_websockets

_LOGGER = logging.getLogger("webext.bus.gateway")


def _now_ms() -> int:
    return int(time.time() * 1000)


class BusGateway:
    """Loopback WebSocket entry point for satellites, with a blocking facade.

    - The bus and its server live on a private event loop in a daemon thread.
    - Sync callers use `send_message()` / `broadcast()` / `status()`; every call
      is marshalled onto that loop.
    - A connection that has not registered within `register_timeout` is closed.
    """

    def __init__(
        self,
        bus: MessageBus | None = None,
        *,
        host: str | None = None,
        port: int | None = None,
        config: BusConfig | None = None,
        register_timeout: float = 2.5,
    ) -> None:
        self._config = config or BusConfig()
        self.bus = bus or MessageBus(config=self._config)
        self.host = host or self._config.gateway_host
        self.port = self._config.gateway_port if port is None else int(port)
        self.register_timeout = float(register_timeout)

        self._lock = threading.Lock()
        self._loop: asyncio.AbstractEventLoop | None = None
        self._thread: threading.Thread | None = None
        self._ready = threading.Event()
        self._stop_event: asyncio.Event | None = None
        self._server: Any = None
        self._bind_error: str | None = None
        self._started_at_ms = 0

    # ─────────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────────

    def start(self, *, wait_timeout: float = 5.0) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        _import_websockets()

        self._ready.clear()
        with self._lock:
            self._bind_error = None

        t = threading.Thread(target=self._run_thread, name="webext-bus-gateway", daemon=True)
        self._thread = t
        t.start()

        if not self._ready.wait(timeout=max(0.05, float(wait_timeout))):
            raise RuntimeError(f"Bus gateway failed to start on {self.host}:{self.port}")
        with self._lock:
            bind_error = self._bind_error
        if bind_error:
            t.join(timeout=1.0)
            raise RuntimeError(f"Bus gateway bind failed on {self.host}:{self.port}: {bind_error}")

    def stop(self, *, timeout: float = 2.0) -> None:
        loop = self._loop
        stop_event = self._stop_event
        if loop is not None and stop_event is not None:
            with contextlib.suppress(RuntimeError):
                loop.call_soon_threadsafe(stop_event.set)
        t = self._thread
        if t is not None:
            t.join(timeout=timeout)
        self._thread = None

    @property
    def listening(self) -> bool:
        with self._lock:
            return self._server is not None

    @property
    def url(self) -> str:
        return f"ws://{self.host}:{self.port}"

    def status(self, *, timeout: float = 2.0) -> dict[str, Any]:
        with self._lock:
            listening = self._server is not None
            bind_error = self._bind_error
            started_at = self._started_at_ms
        out: dict[str, Any] = {
            "listening": listening,
            "host": self.host,
            "port": self.port,
            **({"bindError": bind_error} if bind_error else {}),
            **({"serverStartedAtMs": started_at} if started_at else {}),
        }
        if listening:
            out["bus"] = self._call(self._bus_status(), timeout=timeout)
        return out

    # ─────────────────────────────────────────────────────────────────────────
    # Messaging (blocking)
    # ─────────────────────────────────────────────────────────────────────────

    def send_message(self, msg: dict[str, Any], *, timeout: float | None = None) -> list[Any]:
        wait = self._config.response_timeout if timeout is None else float(timeout)
        # Give the bus its own deadline first so its error is the one reported.
        return self._call(self.bus.send_message(msg, timeout), timeout=wait + 1.0)

    def broadcast(self, msg: dict[str, Any], *, timeout: float = 2.0) -> list[Any]:
        return self._call(self._broadcast(msg), timeout=timeout)

    def _call(self, coro: Any, *, timeout: float) -> Any:
        loop = self._loop
        if loop is None or not self.listening:
            coro.close()
            raise BusError("Bus gateway is not running")
        fut = asyncio.run_coroutine_threadsafe(coro, loop)
        try:
            return fut.result(timeout=max(0.1, timeout))
        except concurrent.futures.TimeoutError as exc:
            fut.cancel()
            raise RequestTimeoutError(f"no reply from the bus gateway within {timeout:g}s") from exc

    async def _bus_status(self) -> dict[str, Any]:
        return self.bus.status()

    async def _broadcast(self, msg: dict[str, Any]) -> list[Any]:
        return self.bus.broadcast(msg)

    # ─────────────────────────────────────────────────────────────────────────
    # Server thread
    # ─────────────────────────────────────────────────────────────────────────

    def _run_thread(self) -> None:
        asyncio.run(self._run_async())

    async def _run_async(self) -> None:
        websockets = _import_websockets()
        self._loop = asyncio.get_running_loop()
        self._stop_event = asyncio.Event()

        try:
            server = await websockets.serve(
                self._handle_connection,
                self.host,
                self.port,
                max_size=None,
                ping_interval=None,
            )
        except OSError as exc:
            _LOGGER.error("Bus gateway bind failed on %s:%s: %s", self.host, self.port, exc)
            with self._lock:
                self._bind_error = str(exc)
            self._ready.set()
            return

        sockets = list(getattr(server, "sockets", None) or [])
        if sockets:
            self.port = int(sockets[0].getsockname()[1])
        with self._lock:
            self._server = server
            self._started_at_ms = _now_ms()
        _LOGGER.info("Bus gateway listening on %s", self.url)
        self._ready.set()

        try:
            await self._stop_event.wait()
        finally:
            await self._shutdown_async()

    async def _shutdown_async(self) -> None:
        with self._lock:
            srv = self._server
            self._server = None
        self.bus.close()
        if srv is not None:
            srv.close()
            with contextlib.suppress(Exception):
                await srv.wait_closed()
        _LOGGER.info("Bus gateway stopped")

    async def _handle_connection(self, ws: Any) -> None:
        remote = getattr(ws, "remote_address", None)
        name = f"ws:{remote[0]}:{remote[1]}" if isinstance(remote, tuple) and len(remote) >= 2 else "ws"
        port = WebSocketPort(ws, name=name)
        channel = self.bus.accept(port)
        timer = asyncio.get_running_loop().call_later(self.register_timeout, self._drop_unregistered, channel)
        try:
            await port.wait_closed()
        finally:
            timer.cancel()

    def _drop_unregistered(self, channel: Channel) -> None:
        if channel.target is None and channel.connected:
            _LOGGER.warning("Closing %s: no registration within %.1fs", channel.name, self.register_timeout)
            channel.disconnect()
