from __future__ import annotations

import json
import logging
import struct

import pytest


def test_encode_frame_uses_native_length_prefix() -> None:
    from webext.bus.framing import encode_frame

    msg = {"kind": "hello", "text": "héllo"}
    frame = encode_frame(msg)
    payload = json.dumps(msg, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    assert frame[:4] == struct.pack("=I", len(payload))
    assert frame[4:] == payload


def test_decoder_round_trip_byte_by_byte() -> None:
    from webext.bus.framing import FrameDecoder, encode_frame

    msgs = [{"a": 1}, {"b": [1, 2, {"c": None}]}, {"text": "ünïcödé ✓"}]
    data = b"".join(encode_frame(m) for m in msgs)

    decoder = FrameDecoder()
    out: list[dict] = []
    for i in range(len(data)):
        out.extend(decoder.feed(data[i : i + 1]))
    assert out == msgs
    assert decoder.buffered == 0
    assert decoder.awaiting_payload is False


def test_decoder_many_frames_in_one_chunk_and_partial_tail() -> None:
    from webext.bus.framing import FrameDecoder, encode_frame

    decoder = FrameDecoder()
    tail = encode_frame({"n": 3})
    out = decoder.feed(encode_frame({"n": 1}) + encode_frame({"n": 2}) + tail[:6])
    assert out == [{"n": 1}, {"n": 2}]
    assert decoder.awaiting_payload is True
    assert decoder.feed(tail[6:]) == [{"n": 3}]


def test_decoder_drops_malformed_frames_and_continues(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.framing import FrameDecoder, encode_frame, frame_bytes

    caplog.set_level(logging.WARNING, logger="webext.bus.framing")
    decoder = FrameDecoder()
    data = frame_bytes(b"{not json") + frame_bytes(b"[1,2]") + frame_bytes(b"\xff\xfe") + encode_frame({"ok": True})
    assert decoder.feed(data) == [{"ok": True}]
    assert sum("Dropping" in r.getMessage() for r in caplog.records) == 3


def test_decoder_rejects_oversized_frame() -> None:
    from webext.bus.errors import FrameTooLargeError
    from webext.bus.framing import FrameDecoder

    decoder = FrameDecoder(max_frame_bytes=16)
    with pytest.raises(FrameTooLargeError) as excinfo:
        decoder.feed(struct.pack("=I", 17) + b"x" * 17)
    assert excinfo.value.length == 17
    assert excinfo.value.limit == 16
    assert decoder.buffered == 0


def test_decoder_returns_frames_ahead_of_oversized_one() -> None:
    from webext.bus.errors import FrameTooLargeError
    from webext.bus.framing import FrameDecoder, encode_frame

    decoder = FrameDecoder(max_frame_bytes=100)
    chunk = encode_frame({"reply": "ok", "correlationId": "x"}) + encode_frame({"big": "y" * 200})
    assert decoder.feed(chunk) == [{"reply": "ok", "correlationId": "x"}]
    assert isinstance(decoder.error, FrameTooLargeError)
    assert decoder.buffered == 0

    with pytest.raises(FrameTooLargeError):
        decoder.feed(encode_frame({"n": 1}))

    decoder.reset()
    assert decoder.error is None
    assert decoder.feed(encode_frame({"n": 1})) == [{"n": 1}]


def test_encode_text_strips_unencodable_fields() -> None:
    from webext.bus.framing import encode_text

    msg = {"correlationId": "c1", "keep": 1, "bad": object()}
    decoded = json.loads(encode_text(msg))
    assert decoded["keep"] == 1
    assert decoded["correlationId"] == "c1"
    assert "bad" not in decoded
    assert "key=<bad>" in decoded["error"]
    # The caller's message is never touched.
    assert set(msg) == {"correlationId", "keep", "bad"}


def test_encode_text_keeps_existing_error_and_reports_in_json_error() -> None:
    from webext.bus.framing import encode_text

    decoded = json.loads(encode_text({"error": "boom", "ratio": float("nan")}))
    assert decoded["error"] == "boom"
    assert "key=<ratio>" in decoded["jsonError"]
    assert "ratio" not in decoded
