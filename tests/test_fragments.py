from __future__ import annotations

import json
import logging

import pytest


class _Clock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def test_split_fifteen_bytes_with_threshold_ten() -> None:
    from webext.bus.fragments import needs_split, split_text

    text = "0123456789ABCDE"
    assert needs_split(text, 10) is True
    fragments = split_text(text, 10)
    assert [f["fragment"] for f in fragments] == ["start", "end"]
    assert "".join(f["content"] for f in fragments) == text
    assert len({f["correlationId"] for f in fragments}) == 1


def test_split_tags_middle_fragments_cont_and_keeps_only_carrier_fields() -> None:
    from webext.bus.fragments import split_text

    fragments = split_text("x" * 35, 10, target="popup")
    assert [f["fragment"] for f in fragments] == ["start", "cont", "cont", "end"]
    for f in fragments:
        assert set(f) == {"target", "correlationId", "fragment", "content"}
        assert f["target"] == "popup"


def test_split_never_cuts_a_multibyte_character() -> None:
    from webext.bus.fragments import split_text

    text = "é" * 5 + "✓" * 3
    fragments = split_text(text, 3)
    assert "".join(f["content"] for f in fragments) == text
    for f in fragments:
        assert len(f["content"].encode("utf-8")) <= 3


def test_split_uses_fresh_correlation_id_per_group() -> None:
    from webext.bus.fragments import split_text

    a = split_text("y" * 30, 10)
    b = split_text("y" * 30, 10)
    assert a[0]["correlationId"] != b[0]["correlationId"]


def test_reassembly_restores_original_message() -> None:
    from webext.bus.fragments import FragmentAssembler, split_text
    from webext.bus.framing import encode_text

    msg = {"correlationId": "req-1", "target": "native app", "kind": "save", "data": "ü" * 200}
    fragments = split_text(encode_text(msg), 32, target="native app")
    assembler = FragmentAssembler()
    results = [assembler.add(f) for f in fragments]
    assert results[:-1] == [None] * (len(fragments) - 1)
    assert results[-1] == msg
    assert assembler.open_groups == 0


def test_cont_without_start_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.fragments import FragmentAssembler

    caplog.set_level(logging.WARNING, logger="webext.bus.fragments")
    assembler = FragmentAssembler()
    assert assembler.add({"correlationId": "k", "fragment": "cont", "content": "abc"}) is None
    assert assembler.add({"correlationId": "k", "fragment": "end", "content": "}"}) is None
    assert assembler.open_groups == 0
    assert any("missing fragment start" in r.getMessage() for r in caplog.records)


def test_duplicate_start_discards_previous_group(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.fragments import FragmentAssembler

    caplog.set_level(logging.WARNING, logger="webext.bus.fragments")
    assembler = FragmentAssembler()
    assert assembler.add({"correlationId": "k", "fragment": "start", "content": '{"first":'}) is None
    assert assembler.add({"correlationId": "k", "fragment": "start", "content": '{"second":'}) is None
    assert assembler.add({"correlationId": "k", "fragment": "end", "content": "2}"}) == {"second": 2}
    assert any("received new fragment start" in r.getMessage() for r in caplog.records)


def test_fragment_without_correlation_id_is_a_protocol_violation(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.fragments import FragmentAssembler

    caplog.set_level(logging.WARNING, logger="webext.bus.fragments")
    assembler = FragmentAssembler()
    assert assembler.add({"fragment": "start", "content": "{}"}) is None
    assert assembler.open_groups == 0
    assert any("missing correlationId" in r.getMessage() for r in caplog.records)


def test_reassembled_non_object_is_dropped() -> None:
    from webext.bus.fragments import FragmentAssembler

    assembler = FragmentAssembler()
    assembler.add({"correlationId": "k", "fragment": "start", "content": "[1,"})
    assert assembler.add({"correlationId": "k", "fragment": "end", "content": "2]"}) is None
    assert assembler.open_groups == 0


def test_unknown_fragment_tag_terminates_group() -> None:
    from webext.bus.fragments import FragmentAssembler

    assembler = FragmentAssembler()
    assembler.add({"correlationId": "k", "fragment": "start", "content": '{"a"'})
    assert assembler.add({"correlationId": "k", "fragment": "last", "content": ":1}"}) == {"a": 1}


def test_janitor_purges_expired_groups_after_period(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.fragments import FragmentAssembler

    caplog.set_level(logging.WARNING, logger="webext.bus.fragments")
    clock = _Clock()
    assembler = FragmentAssembler(ttl=10.0, janitoring_period=10.0, clock=clock)
    assembler.add({"correlationId": "stale", "fragment": "start", "content": "{"})

    clock.now = 5.0
    assert assembler.janitor() == 0
    assert assembler.open_groups == 1

    clock.now = 10.5
    assembler.add({"correlationId": "fresh", "fragment": "start", "content": "{"})
    assert assembler.janitor() == 1
    assert assembler.open_groups == 1
    assert any("TTL reached" in r.getMessage() for r in caplog.records)


def test_janitor_keeps_groups_refreshed_by_cont() -> None:
    from webext.bus.fragments import FragmentAssembler

    clock = _Clock()
    assembler = FragmentAssembler(ttl=10.0, janitoring_period=1.0, clock=clock)
    assembler.add({"correlationId": "k", "fragment": "start", "content": '{"a":'})
    clock.now = 8.0
    assembler.add({"correlationId": "k", "fragment": "cont", "content": '"b'})
    clock.now = 15.0
    assert assembler.janitor() == 0
    assert assembler.add({"correlationId": "k", "fragment": "end", "content": '"}'}) == {"a": "b"}


def test_split_then_reassemble_preserves_json_escapes() -> None:
    from webext.bus.fragments import FragmentAssembler, split_text
    from webext.bus.framing import encode_text

    msg = {"text": 'quote " backslash \\ newline \n tab \t', "nested": {"list": [1.5, True, None]}}
    assembler = FragmentAssembler()
    out = None
    for fragment in split_text(encode_text(msg), 7):
        out = assembler.add(json.loads(json.dumps(fragment)))
    assert out == msg
