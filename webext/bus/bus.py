"""Coordinator-side router.

Satellite endpoints connect to the coordinator and announce their logical
target with a registration message; afterwards they are addressed by that
name. Several endpoints may share a name (one per content script instance).

A message sent with a `target` becomes a request to every endpoint registered
under it, and the replies are returned together. A message without a target
is a best-effort broadcast.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Callable
from typing import Any

from .channel import Channel
from .config import BusConfig
from .errors import NoRouteError, ProtocolError
from .observers import Observers, Subscription
from .port import Disconnect, Port
from .protocol import (
    BUS_PROTOCOL_VERSION,
    FIELD_CORRELATION_ID,
    FIELD_KIND,
    FIELD_TARGET,
    KIND_ECHO,
    TARGET_COORDINATOR,
    ApplicationMessage,
    RegisterMessage,
    classify,
)

_LOGGER = logging.getLogger("webext.bus.bus")

# handler(message, channel or None when sent locally) -> result (or awaitable result)
LocalHandler = Callable[[dict[str, Any], "Channel | None"], Any]


class MessageBus:
    def __init__(
        self,
        identity: str = TARGET_COORDINATOR,
        handler: LocalHandler | None = None,
        *,
        config: BusConfig | None = None,
    ) -> None:
        self.identity = identity
        self._handler = handler
        self._config = config or BusConfig()
        self._routes: dict[str, list[Channel]] = {}
        self._unregistered: set[Channel] = set()
        # Channels created elsewhere (e.g. the native application): never dropped on disconnect.
        self._owned: set[Channel] = set()
        self._listeners: Observers[dict[str, Any]] = Observers("broadcast")

    def __repr__(self) -> str:
        return f"<MessageBus {self.identity} targets={sorted(self._routes)}>"

    # ─────────────────────────────────────────────────────────────────────────
    # Endpoints
    # ─────────────────────────────────────────────────────────────────────────

    def accept(self, port: Port) -> Channel:
        """Take a new inbound connection; it is routable once it registers."""
        channel = Channel(
            port,
            self._on_endpoint_message,
            name=port.name,
            default_timeout=self._config.response_timeout,
            requests_ttl=self._config.requests_ttl,
        )
        self._unregistered.add(channel)
        channel.observe_disconnect(lambda info: self._on_endpoint_disconnect(channel, info))
        _LOGGER.debug("Accepted connection %s", port.name)
        return channel

    def attach(self, target: str, channel: Channel) -> None:
        if not target:
            raise ValueError("target is required")
        channel.target = target
        self._owned.add(channel)
        self._add_route(target, channel)

    def endpoints(self, target: str) -> list[Channel]:
        return list(self._routes.get(target, ()))

    def observe(self, callback: Callable[[dict[str, Any]], Any]) -> Subscription:
        """Listen to broadcasts on the coordinator itself."""
        return self._listeners.add(callback)

    def status(self) -> dict[str, Any]:
        return {
            "identity": self.identity,
            "protocolVersion": BUS_PROTOCOL_VERSION,
            "targets": {name: len(channels) for name, channels in sorted(self._routes.items())},
            "unregistered": len(self._unregistered),
            "listeners": len(self._listeners),
        }

    def close(self) -> None:
        channels = set(self._unregistered) | self._owned
        for group in self._routes.values():
            channels.update(group)
        for channel in channels:
            channel.disconnect()
        self._unregistered.clear()

    def _add_route(self, target: str, channel: Channel) -> None:
        # Replace rather than mutate: senders may be iterating the previous list.
        self._routes[target] = [*self._routes.get(target, ()), channel]

    def _remove_route(self, target: str, channel: Channel) -> None:
        remaining = [ch for ch in self._routes.get(target, ()) if ch is not channel]
        if remaining:
            self._routes[target] = remaining
        else:
            self._routes.pop(target, None)

    def _register(self, channel: Channel, msg: RegisterMessage) -> dict[str, Any]:
        if msg.protocol_version and msg.protocol_version != BUS_PROTOCOL_VERSION:
            _LOGGER.warning(
                "Endpoint %s speaks protocol %s (coordinator: %s)",
                channel.name,
                msg.protocol_version,
                BUS_PROTOCOL_VERSION,
            )
        channel.target = msg.name
        self._unregistered.discard(channel)
        self._add_route(msg.name, channel)
        _LOGGER.info("Endpoint %s registered as %r", channel.name, msg.name)
        return {"registered": msg.name, "protocolVersion": BUS_PROTOCOL_VERSION}

    def _on_endpoint_disconnect(self, channel: Channel, info: Disconnect) -> None:
        self._unregistered.discard(channel)
        if channel in self._owned:
            return
        target = channel.target
        if target is not None:
            self._remove_route(target, channel)
            _LOGGER.info("Endpoint %s (%r) left", channel.name, target)

    # ─────────────────────────────────────────────────────────────────────────
    # Routing
    # ─────────────────────────────────────────────────────────────────────────

    async def send_message(
        self,
        msg: dict[str, Any],
        timeout: float | None = None,
        *,
        exclude: Channel | None = None,
    ) -> list[Any]:
        """Deliver `msg` to its target and return every reply.

        All replies are awaited; if any of them failed, the first failure is
        raised. Without a target the message is broadcast instead.
        """
        target = msg.get(FIELD_TARGET)
        if not target:
            return self.broadcast(msg)

        pending: list[Any] = [ch.post_request(msg, timeout) for ch in self.endpoints(target) if ch is not exclude]
        if target == self.identity:
            pending.append(self._dispatch_local(msg, None))
        if not pending:
            raise NoRouteError(f"no endpoint registered for target {target!r}")

        results = await asyncio.gather(*pending, return_exceptions=True)
        for result in results:
            if isinstance(result, BaseException):
                raise result
        return results

    def broadcast(self, msg: dict[str, Any]) -> list[Any]:
        """Best effort: post to every registered endpoint, then notify local listeners."""
        for target, channels in list(self._routes.items()):
            for channel in channels:
                # Owned channels may be costly to (re)start; broadcasts never wake them.
                if channel in self._owned or not channel.connected:
                    continue
                try:
                    channel.post_message(msg)
                except Exception as exc:  # noqa: BLE001
                    _LOGGER.warning("Broadcast to %s (%r) failed: %s", channel.name, target, exc)
        return self._listeners.notify(msg)

    async def _dispatch_local(self, msg: dict[str, Any], channel: Channel | None) -> Any:
        if self._handler is None:
            raise NoRouteError(f"no handler for messages addressed to {self.identity!r}")
        result = self._handler(msg, channel)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def _on_endpoint_message(self, msg: dict[str, Any], channel: Channel) -> Any:
        parsed = classify(msg)

        if channel.target is None:
            if isinstance(parsed, RegisterMessage) and parsed.name:
                return self._register(channel, parsed)
            _LOGGER.warning("Endpoint %s sent kind=%r before registering", channel.name, msg.get(FIELD_KIND))
            raise ProtocolError(f"endpoint must register before sending messages (got kind={msg.get(FIELD_KIND)!r})")
        if isinstance(parsed, RegisterMessage):
            raise ProtocolError(f"endpoint already registered as {channel.target!r}")

        if isinstance(parsed, ApplicationMessage) and parsed.kind == KIND_ECHO:
            return parsed.body

        # The request id belongs to this hop; forwarded copies get their own.
        inner = {k: v for k, v in msg.items() if k != FIELD_CORRELATION_ID}
        target = parsed.header.target
        if target and target != self.identity:
            return await self.send_message(inner, exclude=channel)
        return await self._dispatch_local(inner, channel)
