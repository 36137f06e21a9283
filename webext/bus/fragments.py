"""Fragmentation of oversized messages.

A message whose JSON text is larger than the split threshold is sent as a group
of carrier messages sharing a fresh correlation id:

    {"correlationId": K, "fragment": "start", "content": "<slice 1>"}
    {"correlationId": K, "fragment": "cont",  "content": "<slice 2>"}
    {"correlationId": K, "fragment": "end",   "content": "<slice n>"}

The receiver concatenates the contents and decodes the result as if the
original message had arrived in one piece. Anything that is neither `start` nor
`cont` terminates a group.
"""

from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .protocol import (
    FIELD_CONTENT,
    FIELD_CORRELATION_ID,
    FIELD_FRAGMENT,
    FIELD_TARGET,
    FRAGMENT_CONT,
    FRAGMENT_END,
    FRAGMENT_START,
    FragmentMessage,
    classify,
)

_LOGGER = logging.getLogger("webext.bus.fragments")


def _utf8_windows(raw: bytes, size: int) -> list[str]:
    """Cut UTF-8 bytes into decoded windows of at most `size` bytes.

    Window ends are moved back to a character boundary so that every slice is
    valid text on its own.
    """
    out: list[str] = []
    start = 0
    total = len(raw)
    while start < total:
        end = min(start + size, total)
        if end < total:
            # Continuation bytes look like 0b10xxxxxx.
            while end > start and (raw[end] & 0xC0) == 0x80:
                end -= 1
            if end == start:
                # Window smaller than one character: take the whole character.
                end = start + 1
                while end < total and (raw[end] & 0xC0) == 0x80:
                    end += 1
        out.append(raw[start:end].decode("utf-8"))
        start = end
    return out


def needs_split(text: str, threshold: int) -> bool:
    return len(text.encode("utf-8")) > threshold


def split_text(text: str, threshold: int, *, target: str | None = None) -> list[dict[str, Any]]:
    """Split already-encoded message text into fragment carriers."""
    if threshold <= 0:
        raise ValueError("threshold must be positive")
    windows = _utf8_windows(text.encode("utf-8"), threshold)
    correlation_id = uuid.uuid4().hex
    last = len(windows) - 1
    fragments: list[dict[str, Any]] = []
    for i, content in enumerate(windows):
        if i == 0:
            kind = FRAGMENT_START
        elif i == last:
            kind = FRAGMENT_END
        else:
            kind = FRAGMENT_CONT
        fragment: dict[str, Any] = {}
        if target:
            fragment[FIELD_TARGET] = target
        fragment[FIELD_CORRELATION_ID] = correlation_id
        fragment[FIELD_FRAGMENT] = kind
        fragment[FIELD_CONTENT] = content
        fragments.append(fragment)
    return fragments


@dataclass(slots=True)
class FragmentBuffer:
    correlation_id: str
    parts: list[str]
    updated_at: float

    @property
    def size(self) -> int:
        return sum(len(p) for p in self.parts)


class FragmentAssembler:
    """Reassembles fragment groups received on one channel.

    Expired groups are purged by `janitor()`, which the owner calls on every
    incoming message; a sweep only runs once per `janitoring_period`.
    """

    def __init__(
        self,
        *,
        ttl: float = 10.0,
        janitoring_period: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = float(ttl)
        self.janitoring_period = float(janitoring_period)
        self._clock = clock
        self._buffers: dict[str, FragmentBuffer] = {}
        self._last_janitoring = clock()

    @property
    def open_groups(self) -> int:
        return len(self._buffers)

    def clear(self) -> None:
        if self._buffers:
            _LOGGER.debug("Discarding %d incomplete fragment group(s)", len(self._buffers))
        self._buffers.clear()

    def add(self, msg: dict[str, Any]) -> dict[str, Any] | None:
        """Feed one fragment; return the rebuilt message once its group is complete."""
        parsed = classify(msg)
        if not isinstance(parsed, FragmentMessage):
            raise ValueError("not a fragment")

        correlation_id = parsed.header.correlation_id
        if not correlation_id:
            _LOGGER.warning("Dropping fragment %r: missing correlationId", parsed.header.fragment)
            return None

        now = self._clock()
        previous = self._buffers.get(correlation_id)

        if parsed.is_start:
            if previous is not None:
                _LOGGER.warning(
                    "Dropping incomplete message correlationId=%s (%d chars): received new fragment start",
                    correlation_id,
                    previous.size,
                )
            self._buffers[correlation_id] = FragmentBuffer(correlation_id, [parsed.content], now)
            return None

        if previous is None:
            _LOGGER.warning(
                "Dropping fragment %r correlationId=%s: missing fragment start",
                parsed.header.fragment,
                correlation_id,
            )
            return None

        previous.parts.append(parsed.content)
        previous.updated_at = now
        if parsed.is_cont:
            return None

        del self._buffers[correlation_id]
        text = "".join(previous.parts)
        try:
            obj = json.loads(text)
        except ValueError as exc:
            _LOGGER.warning("Dropping reassembled message correlationId=%s: %s", correlation_id, exc)
            return None
        if not isinstance(obj, dict):
            _LOGGER.warning("Dropping reassembled message correlationId=%s: not a JSON object", correlation_id)
            return None
        return obj

    def janitor(self) -> int:
        now = self._clock()
        if now - self._last_janitoring <= self.janitoring_period:
            return 0
        self._last_janitoring = now
        dropped = 0
        for correlation_id, buf in list(self._buffers.items()):
            if now - buf.updated_at > self.ttl:
                _LOGGER.warning(
                    "Dropping incomplete message correlationId=%s (%d chars): TTL reached",
                    correlation_id,
                    buf.size,
                )
                del self._buffers[correlation_id]
                dropped += 1
        return dropped
