from __future__ import annotations

import abc
import asyncio
import copy
import itertools
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .observers import Observers, Subscription

_LOGGER = logging.getLogger("webext.bus.port")

_port_ids = itertools.count(1)


@dataclass(frozen=True, slots=True)
class Disconnect:
    # True when this side called `disconnect()`; False when the connection was lost
    # or closed by the remote end.
    intentional: bool
    reason: str | None = None


class Port(abc.ABC):
    """One bidirectional message connection.

    Subclasses call `_deliver()` once per complete application message and
    `_closed()` exactly when the connection goes away.
    """

    def __init__(self, *, name: str | None = None) -> None:
        self.name = name or f"{type(self).__name__.lower()}-{next(_port_ids)}"
        self._message_observers: Observers[dict[str, Any]] = Observers(f"{self.name} message")
        self._disconnect_observers: Observers[Disconnect] = Observers(f"{self.name} disconnect")
        self._disconnected: Disconnect | None = None

    def __repr__(self) -> str:
        state = "connected" if self.connected else "disconnected"
        return f"<{type(self).__name__} {self.name} {state}>"

    @property
    def connected(self) -> bool:
        return self._disconnected is None

    @property
    def disconnect_info(self) -> Disconnect | None:
        return self._disconnected

    def observe_message(self, callback: Callable[[dict[str, Any]], Any]) -> Subscription:
        return self._message_observers.add(callback)

    def observe_disconnect(self, callback: Callable[[Disconnect], Any]) -> Subscription:
        return self._disconnect_observers.add(callback)

    @property
    def open_fragment_groups(self) -> int:
        return 0

    @abc.abstractmethod
    def send(self, msg: dict[str, Any]) -> None: ...

    def disconnect(self) -> None:
        if self._disconnected is not None:
            return
        self._close_transport()
        self._closed(Disconnect(intentional=True))

    @abc.abstractmethod
    def _close_transport(self) -> None: ...

    def _deliver(self, msg: dict[str, Any]) -> None:
        if self._disconnected is not None:
            return
        self._message_observers.notify(msg)

    def _closed(self, info: Disconnect) -> None:
        if self._disconnected is not None:
            return
        self._disconnected = info
        if info.reason:
            _LOGGER.warning("Port %s disconnected: %s", self.name, info.reason)
        else:
            _LOGGER.debug("Port %s disconnected (intentional=%s)", self.name, info.intentional)
        self._disconnect_observers.notify(info)
        self._message_observers.clear()
        self._disconnect_observers.clear()


class LocalPort(Port):
    """In-process port; messages are copied and delivered on the next loop iteration."""

    def __init__(self, *, name: str | None = None, loop: asyncio.AbstractEventLoop | None = None) -> None:
        super().__init__(name=name)
        self._loop = loop
        self._peer: LocalPort | None = None

    @classmethod
    def pair(cls, name: str = "local") -> tuple[LocalPort, LocalPort]:
        loop = asyncio.get_running_loop()
        a = cls(name=f"{name}-a", loop=loop)
        b = cls(name=f"{name}-b", loop=loop)
        a._peer = b
        b._peer = a
        return a, b

    def _get_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def send(self, msg: dict[str, Any]) -> None:
        peer = self._peer
        if not self.connected or peer is None:
            _LOGGER.warning("Cannot post message on closed port %s", self.name)
            return
        self._get_loop().call_soon(peer._deliver, copy.deepcopy(msg))

    def _close_transport(self) -> None:
        peer = self._peer
        self._peer = None
        if peer is not None:
            peer._peer = None
            # Deliver after anything already queued towards the peer.
            self._get_loop().call_soon(peer._closed, Disconnect(intentional=False))
