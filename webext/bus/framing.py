"""Native messaging framing (length-prefixed JSON).

Each frame is a uint32 length in native byte order followed by that many bytes
of UTF-8 JSON. The browser accepts up to 1 MiB per frame from the helper and up
to 4 GiB the other way.
"""

from __future__ import annotations

import json
import logging
import reprlib
import struct
from typing import Any

from .errors import FrameTooLargeError
from .protocol import FIELD_CORRELATION_ID, FIELD_ERROR

_LOGGER = logging.getLogger("webext.bus.framing")

_LENGTH = struct.Struct("=I")
HEADER_SIZE = _LENGTH.size

_repr = reprlib.Repr()
_repr.maxstring = 200
_repr.maxother = 200


def _dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), allow_nan=False)


def _describe(value: Any) -> str:
    try:
        return _repr.repr(value)
    except Exception:
        return "(failed to describe)"


def encode_text(msg: dict[str, Any]) -> str:
    """Serialise one message, degrading instead of failing.

    Fields that cannot be represented are removed and listed in `error` (or in
    `jsonError` when the message already has an `error`). The caller's dict is
    left untouched.
    """
    try:
        return _dumps(msg)
    except (TypeError, ValueError):
        pass

    reduced: dict[Any, Any] = {}
    problems: list[str] = []
    for key, value in msg.items():
        try:
            _dumps({key: value})
        except (TypeError, ValueError):
            problems.append(f" key=<{key}> value=<{_describe(value)}>")
            continue
        reduced[key] = value

    error = "Could not encode message" + "".join(problems)
    _LOGGER.warning("%s", error)
    if reduced.get(FIELD_ERROR):
        reduced["jsonError"] = error
    else:
        reduced[FIELD_ERROR] = error

    try:
        return _dumps(reduced)
    except (TypeError, ValueError):
        fallback: dict[str, Any] = {FIELD_ERROR: "could not encode message"}
        cid = msg.get(FIELD_CORRELATION_ID)
        if isinstance(cid, str):
            fallback[FIELD_CORRELATION_ID] = cid
        return _dumps(fallback)


def frame_bytes(raw: bytes) -> bytes:
    return _LENGTH.pack(len(raw)) + raw


def encode_frame(msg: dict[str, Any]) -> bytes:
    return frame_bytes(encode_text(msg).encode("utf-8"))


def decode_payload(raw: bytes | bytearray | memoryview) -> dict[str, Any] | None:
    try:
        obj = json.loads(bytes(raw).decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        _LOGGER.warning("Dropping undecodable frame (%d bytes): %s", len(raw), exc)
        return None
    if not isinstance(obj, dict):
        _LOGGER.warning("Dropping frame: expected a JSON object, got %s", type(obj).__name__)
        return None
    return obj


class FrameDecoder:
    """Incremental frame parser.

    Two states: awaiting the 4-byte length, then awaiting that many payload
    bytes. Bytes are appended to one buffer and consumed through a cursor, so a
    burst of small frames is handled in a single loop without recursion.
    A decoder belongs to one stream: after a reconnect use a fresh one (or `reset()`).

    A declared length above `max_frame_bytes` leaves the stream unusable. Frames
    decoded before it in the same chunk are still returned; the error is kept in
    `error` and raised by every later `feed()` until `reset()`.
    """

    def __init__(self, *, max_frame_bytes: int | None = None) -> None:
        self.max_frame_bytes = max_frame_bytes or None
        self.error: FrameTooLargeError | None = None
        self._buf = bytearray()
        self._pos = 0
        self._expected: int | None = None

    @property
    def awaiting_payload(self) -> bool:
        return self._expected is not None

    @property
    def buffered(self) -> int:
        return len(self._buf) - self._pos

    def reset(self) -> None:
        self.error = None
        self._discard()

    def _discard(self) -> None:
        self._buf.clear()
        self._pos = 0
        self._expected = None

    def feed(self, data: bytes) -> list[dict[str, Any]]:
        if self.error is not None:
            raise self.error
        if data:
            self._buf.extend(data)

        out: list[dict[str, Any]] = []
        while True:
            available = len(self._buf) - self._pos
            if self._expected is None:
                if available < HEADER_SIZE:
                    break
                (length,) = _LENGTH.unpack_from(self._buf, self._pos)
                self._pos += HEADER_SIZE
                if self.max_frame_bytes is not None and length > self.max_frame_bytes:
                    self._discard()
                    self.error = FrameTooLargeError(length, self.max_frame_bytes)
                    if not out:
                        raise self.error
                    return out
                self._expected = length
                continue

            if available < self._expected:
                break
            end = self._pos + self._expected
            payload = memoryview(self._buf)[self._pos : end]
            try:
                msg = decode_payload(payload)
            finally:
                payload.release()
            self._pos = end
            self._expected = None
            if msg is not None:
                out.append(msg)

        # Compact once per feed: drop what the cursor already consumed.
        if self._pos:
            del self._buf[: self._pos]
            self._pos = 0
        return out
