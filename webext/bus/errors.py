from __future__ import annotations


class BusError(Exception):
    pass


class RequestTimeoutError(BusError):
    """A request got no reply before its deadline (the remote side may still be working on it)."""


class PortDisconnectedError(BusError):
    pass


class ProtocolError(BusError):
    pass


class FrameTooLargeError(ProtocolError):
    def __init__(self, length: int, limit: int) -> None:
        super().__init__(f"frame too large: length={length} limit={limit}")
        self.length = length
        self.limit = limit


class NoRouteError(BusError):
    """No endpoint is registered under the addressed target."""
