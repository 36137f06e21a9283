"""Request/response correlation on top of a Port.

A `Channel` owns one Port at a time and turns its fire-and-forget messages
into requests with replies:

- `post_request()` tags a copy of the message with a fresh `correlationId` and
  returns a future resolved by the matching reply, failed on timeout or failed
  as soon as the Port disconnects (whichever comes first, exactly once);
- incoming messages that do not answer a pending request are handed to the
  application handler; when they carry a `correlationId` the handler result is
  sent back as `{"reply": ...}` (or `{"error": ...}` if the handler raised).

Both ends run the same logic, so either side may issue requests.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import PortDisconnectedError, RequestTimeoutError
from .observers import Observers, Subscription
from .port import Disconnect, Port
from .protocol import FIELD_CORRELATION_ID, FIELD_ERROR, FIELD_KIND, FIELD_REPLY, body_of, format_error

_LOGGER = logging.getLogger("webext.bus.channel")

# handler(message, channel) -> result (or awaitable result)
Handler = Callable[[dict[str, Any], "Channel"], Any]


@dataclass(slots=True)
class PendingRequest:
    correlation_id: str
    future: asyncio.Future[Any]
    timer: asyncio.TimerHandle | None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class Channel:
    def __init__(
        self,
        port: Port | None = None,
        handler: Handler | None = None,
        *,
        name: str | None = None,
        target: str | None = None,
        default_timeout: float = 20.0,
        requests_ttl: float = 120.0,
        auto_reconnect: bool = False,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name or (port.name if port is not None else "channel")
        # Logical name of the remote endpoint, once known.
        self.target = target
        self.default_timeout = float(default_timeout)
        self.requests_ttl = float(requests_ttl)
        self.auto_reconnect = auto_reconnect
        self._clock = clock
        self._handler = handler

        self._port: Port | None = None
        self._subscriptions: list[Subscription] = []
        self._pending: dict[str, PendingRequest] = {}
        # correlationId -> expiry time, oldest first.
        self._expired: OrderedDict[str, float] = OrderedDict()
        self._last_request_id: str | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._disconnect_observers: Observers[Disconnect] = Observers(f"{self.name} disconnect")

        self.last_activity = clock()
        if port is not None:
            self.attach(port)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} target={self.target!r} pending={len(self._pending)}>"

    # ─────────────────────────────────────────────────────────────────────────
    # Port management
    # ─────────────────────────────────────────────────────────────────────────

    @property
    def port(self) -> Port | None:
        return self._port

    @property
    def connected(self) -> bool:
        return self._port is not None and self._port.connected

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def has_outstanding_work(self) -> bool:
        port = self._port
        return bool(self._pending) or bool(port is not None and port.open_fragment_groups)

    def attach(self, port: Port) -> None:
        self.detach()
        self._port = port
        self._subscriptions = [
            port.observe_message(self._on_message),
            port.observe_disconnect(self._on_disconnect),
        ]

    def detach(self) -> None:
        for sub in self._subscriptions:
            sub.cancel()
        self._subscriptions = []
        self._port = None

    def observe_disconnect(self, callback: Callable[[Disconnect], Any]) -> Subscription:
        return self._disconnect_observers.add(callback)

    def disconnect(self) -> None:
        port = self._port
        if port is not None:
            port.disconnect()

    def touch(self) -> None:
        self.last_activity = self._clock()

    def status(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "target": self.target,
            "connected": self.connected,
            "pending": len(self._pending),
            "idleFor": round(max(0.0, self._clock() - self.last_activity), 3),
        }

    def _ensure_port(self) -> Port:
        port = self._port
        if port is None or not port.connected:
            raise PortDisconnectedError(f"{self.name}: not connected")
        return port

    # ─────────────────────────────────────────────────────────────────────────
    # Sending
    # ─────────────────────────────────────────────────────────────────────────

    def post_message(self, msg: dict[str, Any]) -> None:
        """Send without expecting a reply."""
        port = self._ensure_port()
        port.send(msg)
        self.touch()

    def post_request(self, msg: dict[str, Any], timeout: float | None = None) -> asyncio.Future[Any]:
        """Send `msg` as a request; the returned future resolves with the reply."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[Any] = loop.create_future()
        try:
            port = self._ensure_port()
        except PortDisconnectedError as exc:
            future.set_exception(exc)
            return future

        correlation_id = uuid.uuid4().hex
        while correlation_id in self._pending:
            correlation_id = uuid.uuid4().hex
        # Never alter the caller's message: it may be reused (e.g. when forwarding).
        out = dict(msg)
        out[FIELD_CORRELATION_ID] = correlation_id

        delay = self.default_timeout if timeout is None else float(timeout)
        timer = loop.call_later(delay, self._expire, correlation_id, delay) if delay > 0 else None
        self._pending[correlation_id] = PendingRequest(correlation_id, future, timer)
        future.add_done_callback(lambda fut, cid=correlation_id: self._forget(cid, fut))

        try:
            port.send(out)
        except Exception as exc:
            entry = self._pending.pop(correlation_id, None)
            if entry is not None:
                entry.cancel_timer()
            if not future.done():
                future.set_exception(exc)
            return future
        self.touch()
        return future

    def _forget(self, correlation_id: str, future: asyncio.Future[Any]) -> None:
        # Runs once the future settles, including when the caller cancels it.
        entry = self._pending.get(correlation_id)
        if entry is not None and entry.future is future:
            del self._pending[correlation_id]
            entry.cancel_timer()
            if future.cancelled():
                # The reply may still arrive; it must not look like a new request.
                self._remember_expired(correlation_id)

    def _expire(self, correlation_id: str, delay: float) -> None:
        entry = self._pending.pop(correlation_id, None)
        if entry is None:
            return
        entry.timer = None
        self._remember_expired(correlation_id)
        if not entry.future.done():
            entry.future.set_exception(
                RequestTimeoutError(f"{self.name}: no reply within {delay:g}s (correlationId={correlation_id})")
            )

    def _remember_expired(self, correlation_id: str) -> None:
        now = self._clock()
        self._expired[correlation_id] = now
        while self._expired:
            oldest, ts = next(iter(self._expired.items()))
            if now - ts <= self.requests_ttl:
                break
            del self._expired[oldest]

    def _is_expired(self, correlation_id: str) -> bool:
        ts = self._expired.get(correlation_id)
        if ts is None:
            return False
        if self._clock() - ts > self.requests_ttl:
            del self._expired[correlation_id]
            return False
        return True

    # ─────────────────────────────────────────────────────────────────────────
    # Receiving
    # ─────────────────────────────────────────────────────────────────────────

    def _on_message(self, msg: dict[str, Any]) -> None:
        self.touch()
        correlation_id = msg.get(FIELD_CORRELATION_ID)
        if isinstance(correlation_id, str) and correlation_id:
            entry = self._pending.pop(correlation_id, None)
            if entry is not None:
                self._resolve(entry, msg)
                return
            if self._is_expired(correlation_id):
                _LOGGER.warning(
                    "Dropping late reply on %s: request correlationId=%s already timed out or was cancelled",
                    self.name,
                    correlation_id,
                )
                return
        self._handle(msg)

    def _resolve(self, entry: PendingRequest, msg: dict[str, Any]) -> None:
        entry.cancel_timer()
        value = msg[FIELD_REPLY] if FIELD_REPLY in msg else body_of(msg)
        if msg.get(FIELD_ERROR):
            _LOGGER.warning("Request correlationId=%s on %s failed remotely: %s", entry.correlation_id, self.name, msg[FIELD_ERROR])
        elif isinstance(value, dict) and value.get("warning"):
            _LOGGER.warning("A warning was received in request response on %s: %s", self.name, value.get("warning"))
        if not entry.future.done():
            entry.future.set_result(value)

    def _handle(self, msg: dict[str, Any]) -> None:
        raw_id = msg.get(FIELD_CORRELATION_ID)
        correlation_id = raw_id if isinstance(raw_id, str) and raw_id else None

        # A request id seen twice in a row means both sides treat each other's replies
        # as new requests (an id got lost or replaced while forwarding): stop answering.
        if correlation_id is not None and correlation_id == self._last_request_id:
            _LOGGER.warning("Detected request/response loop on %s: correlationId=%s", self.name, correlation_id)
            return
        if correlation_id is not None:
            self._last_request_id = correlation_id

        if self._handler is None:
            _LOGGER.debug("Ignoring message kind=%s on %s: no handler", msg.get(FIELD_KIND), self.name)
            if correlation_id is not None:
                self._send_reply(correlation_id, {FIELD_ERROR: "no handler for message"})
            return

        task = asyncio.get_running_loop().create_task(self._run_handler(msg, correlation_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_handler(self, msg: dict[str, Any], correlation_id: str | None) -> None:
        handler = self._handler
        if handler is None:
            return
        try:
            result = handler(msg, self)
            if inspect.isawaitable(result):
                result = await result
        except Exception as exc:
            _LOGGER.error("Could not handle message kind=%s on %s: %s", msg.get(FIELD_KIND), self.name, exc, exc_info=True)
            if correlation_id is not None:
                self._send_reply(correlation_id, {FIELD_ERROR: format_error(exc)})
            return
        if correlation_id is not None:
            self._send_reply(correlation_id, {FIELD_REPLY: result})

    def _send_reply(self, correlation_id: str, payload: dict[str, Any]) -> None:
        port = self._port
        if port is None or not port.connected:
            _LOGGER.debug("Dropping reply correlationId=%s: %s is disconnected", correlation_id, self.name)
            return
        payload[FIELD_CORRELATION_ID] = correlation_id
        port.send(payload)
        self.touch()

    # ─────────────────────────────────────────────────────────────────────────
    # Disconnection
    # ─────────────────────────────────────────────────────────────────────────

    def _on_disconnect(self, info: Disconnect) -> None:
        self.detach()
        self._last_request_id = None
        if info.intentional:
            text = f"{self.name}: channel closed"
        else:
            text = f"{self.name}: remote endpoint disconnected"
        if info.reason:
            text += f" with error: {info.reason}"

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            entry.cancel_timer()
            if not entry.future.done():
                entry.future.set_exception(PortDisconnectedError(text))
        if pending:
            _LOGGER.info("%s: rejected %d pending request(s)", self.name, len(pending))
        self._disconnect_observers.notify(info)
