"""Message model shared by every endpoint.

Messages travel as plain JSON objects. A few top-level fields are reserved for
the transport (correlation, routing, fragmentation); everything else belongs to
the feature that produced the message.

`classify()` turns a raw message into one of a small set of tagged variants,
all sharing the same reserved-field `Header`, through a discriminator table
instead of ad-hoc field probing at each call site.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Union

# Bumped whenever the wire schema changes in an incompatible way.
BUS_PROTOCOL_VERSION = "2026-10-01"

FIELD_CORRELATION_ID = "correlationId"
FIELD_TARGET = "target"
FIELD_FRAGMENT = "fragment"
FIELD_CONTENT = "content"
FIELD_REPLY = "reply"
FIELD_ERROR = "error"
FIELD_KIND = "kind"

FRAGMENT_START = "start"
FRAGMENT_CONT = "cont"
FRAGMENT_END = "end"

KIND_REGISTER = "register"
KIND_ECHO = "echo"
KIND_CONSOLE = "console"
KIND_NOTIFICATION = "notification"
KIND_SPECS = "specs"

TARGET_COORDINATOR = "background"
TARGET_POPUP = "popup"
TARGET_PAGE = "page"
TARGET_CONTENT_SCRIPT = "content script"
TARGET_NATIVE_APP = "native app"

PROTOCOL_FIELDS = frozenset({FIELD_CORRELATION_ID, FIELD_TARGET, FIELD_FRAGMENT})


@dataclass(frozen=True, slots=True)
class Header:
    correlation_id: str | None = None
    target: str | None = None
    fragment: str | None = None


@dataclass(frozen=True, slots=True)
class FragmentMessage:
    header: Header
    content: str

    @property
    def is_start(self) -> bool:
        return self.header.fragment == FRAGMENT_START

    @property
    def is_cont(self) -> bool:
        return self.header.fragment == FRAGMENT_CONT

    @property
    def is_terminal(self) -> bool:
        # Anything that is neither start nor cont closes the group.
        return not (self.is_start or self.is_cont)


@dataclass(frozen=True, slots=True)
class RegisterMessage:
    header: Header
    name: str
    protocol_version: str | None = None


@dataclass(frozen=True, slots=True)
class PingMessage:
    header: Header


@dataclass(frozen=True, slots=True)
class ApplicationMessage:
    header: Header
    kind: str | None
    body: dict[str, Any]


Message = Union[FragmentMessage, RegisterMessage, PingMessage, ApplicationMessage]


def header_of(msg: dict[str, Any]) -> Header:
    def _str(key: str) -> str | None:
        val = msg.get(key)
        if val is None:
            return None
        return str(val)

    return Header(
        correlation_id=_str(FIELD_CORRELATION_ID) or None,
        target=_str(FIELD_TARGET) or None,
        fragment=_str(FIELD_FRAGMENT) or None,
    )


def body_of(msg: dict[str, Any]) -> dict[str, Any]:
    """Return the message without its reserved transport fields."""
    return {k: v for k, v in msg.items() if k not in PROTOCOL_FIELDS}


def is_fragment(msg: dict[str, Any]) -> bool:
    return bool(msg.get(FIELD_FRAGMENT))


def is_ping(msg: dict[str, Any]) -> bool:
    # A liveness probe carries nothing but its correlation id.
    return set(msg.keys()) == {FIELD_CORRELATION_ID} and bool(msg.get(FIELD_CORRELATION_ID))


def _discriminator(msg: dict[str, Any]) -> str:
    if is_fragment(msg):
        return "fragment"
    if is_ping(msg):
        return "ping"
    if msg.get(FIELD_KIND) == KIND_REGISTER:
        return "register"
    return "application"


def _as_fragment(msg: dict[str, Any], header: Header) -> Message:
    content = msg.get(FIELD_CONTENT)
    return FragmentMessage(header=header, content=content if isinstance(content, str) else "")


def _as_register(msg: dict[str, Any], header: Header) -> Message:
    raw_version = msg.get("protocolVersion")
    return RegisterMessage(
        header=header,
        name=str(msg.get("name") or "").strip(),
        protocol_version=str(raw_version) if raw_version else None,
    )


def _as_ping(msg: dict[str, Any], header: Header) -> Message:
    return PingMessage(header=header)


def _as_application(msg: dict[str, Any], header: Header) -> Message:
    kind = msg.get(FIELD_KIND)
    return ApplicationMessage(header=header, kind=str(kind) if kind is not None else None, body=body_of(msg))


_PARSERS: dict[str, Callable[[dict[str, Any], Header], Message]] = {
    "fragment": _as_fragment,
    "ping": _as_ping,
    "register": _as_register,
    "application": _as_application,
}


def classify(msg: dict[str, Any]) -> Message:
    return _PARSERS[_discriminator(msg)](msg, header_of(msg))


def register_message(name: str) -> dict[str, Any]:
    return {FIELD_KIND: KIND_REGISTER, "name": name, "protocolVersion": BUS_PROTOCOL_VERSION}


def format_error(error: Any) -> str:
    """Render an error so that it survives JSON serialisation."""
    if isinstance(error, BaseException):
        text = str(error)
        name = type(error).__name__
        return f"{name}: {text}" if text else name
    return str(error)
