from __future__ import annotations

import asyncio
import logging
from typing import Any

import pytest


def test_request_reply_round_trip_leaves_caller_message_untouched() -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    async def _main() -> tuple[Any, dict[str, Any], int]:
        a, b = LocalPort.pair("t")
        Channel(b, lambda msg, ch: {"echo": msg["x"]})
        client = Channel(a)
        msg = {"x": 41}
        reply = await client.post_request(msg)
        return reply, msg, client.pending_count

    reply, msg, pending = asyncio.run(_main())
    assert reply == {"echo": 41}
    assert msg == {"x": 41}
    assert pending == 0


def test_async_handler_and_handler_failure() -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    async def handler(msg: dict[str, Any], ch: Channel) -> Any:
        await asyncio.sleep(0)
        if msg.get("fail"):
            raise ValueError("bad input")
        return "ok"

    async def _main() -> tuple[Any, Any]:
        a, b = LocalPort.pair("t")
        Channel(b, handler)
        client = Channel(a)
        good = await client.post_request({"fail": False})
        bad = await client.post_request({"fail": True})
        return good, bad

    good, bad = asyncio.run(_main())
    assert good == "ok"
    assert bad == {"error": "ValueError: bad input"}


def test_concurrent_requests_get_distinct_ids_and_resolve_out_of_order() -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    seen_ids: list[str] = []
    finished: list[int] = []

    async def handler(msg: dict[str, Any], ch: Channel) -> int:
        seen_ids.append(msg["correlationId"])
        await asyncio.sleep(msg["delay"])
        finished.append(msg["i"])
        return msg["i"]

    async def _main() -> list[Any]:
        a, b = LocalPort.pair("t")
        Channel(b, handler)
        client = Channel(a)
        futures = [client.post_request({"i": i, "delay": 0.01 * (5 - i)}) for i in range(5)]
        return list(await asyncio.gather(*futures))

    results = asyncio.run(_main())
    assert results == [0, 1, 2, 3, 4]
    assert finished == [4, 3, 2, 1, 0]
    assert len(set(seen_ids)) == 5


def test_timeout_then_late_reply_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.channel import Channel
    from webext.bus.errors import RequestTimeoutError
    from webext.bus.port import LocalPort

    caplog.set_level(logging.WARNING, logger="webext.bus.channel")
    handled_by_client: list[dict[str, Any]] = []

    async def slow(msg: dict[str, Any], ch: Channel) -> str:
        await asyncio.sleep(0.15)
        return "late"

    async def _main() -> int:
        a, b = LocalPort.pair("t")
        Channel(b, slow)
        client = Channel(a, lambda msg, ch: handled_by_client.append(msg))
        with pytest.raises(RequestTimeoutError):
            await client.post_request({"q": 1}, timeout=0.03)
        await asyncio.sleep(0.3)
        return client.pending_count

    assert asyncio.run(_main()) == 0
    assert handled_by_client == []
    assert any("already timed out" in r.getMessage() for r in caplog.records)


def test_disconnect_rejects_every_pending_request() -> None:
    from webext.bus.channel import Channel
    from webext.bus.errors import PortDisconnectedError
    from webext.bus.port import Disconnect, LocalPort

    async def _main() -> tuple[list[Any], list[Disconnect]]:
        a, b = LocalPort.pair("t")
        client = Channel(a)
        seen: list[Disconnect] = []
        client.observe_disconnect(seen.append)
        futures = [client.post_request({"i": i}) for i in range(3)]
        await asyncio.sleep(0.01)
        b.disconnect()
        results = await asyncio.gather(*futures, return_exceptions=True)
        return results, seen

    results, seen = asyncio.run(_main())
    assert len(results) == 3
    assert all(isinstance(r, PortDisconnectedError) for r in results)
    assert "remote endpoint disconnected" in str(results[0])
    assert seen == [Disconnect(intentional=False)]


def test_local_disconnect_rejects_pending_as_closed() -> None:
    from webext.bus.channel import Channel
    from webext.bus.errors import PortDisconnectedError
    from webext.bus.port import LocalPort

    async def _main() -> BaseException | None:
        a, _b = LocalPort.pair("t")
        client = Channel(a)
        fut = client.post_request({"q": 1})
        client.disconnect()
        try:
            await fut
        except PortDisconnectedError as exc:
            return exc
        return None

    exc = asyncio.run(_main())
    assert exc is not None
    assert "channel closed" in str(exc)


def test_request_on_unconnected_channel_fails_immediately() -> None:
    from webext.bus.channel import Channel
    from webext.bus.errors import PortDisconnectedError

    async def _main() -> None:
        client = Channel(name="lonely")
        with pytest.raises(PortDisconnectedError):
            await client.post_request({"q": 1})
        with pytest.raises(PortDisconnectedError):
            client.post_message({"q": 1})

    asyncio.run(_main())


def test_cancelled_request_is_forgotten() -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    async def _main() -> int:
        a, _b = LocalPort.pair("t")
        client = Channel(a)
        fut = client.post_request({"q": 1})
        fut.cancel()
        await asyncio.sleep(0)
        return client.pending_count

    assert asyncio.run(_main()) == 0


def test_reply_after_wait_for_gave_up_is_dropped(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    caplog.set_level(logging.WARNING, logger="webext.bus.channel")
    handled_by_client: list[dict[str, Any]] = []
    handled_by_server: list[dict[str, Any]] = []

    async def slow(msg: dict[str, Any], ch: Channel) -> str:
        handled_by_server.append(msg)
        await asyncio.sleep(0.05)
        return "late"

    async def _main() -> int:
        a, b = LocalPort.pair("t")
        Channel(b, slow)
        client = Channel(a, lambda msg, ch: handled_by_client.append(msg))
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(client.post_request({"q": 1}), timeout=0.01)
        await asyncio.sleep(0.15)
        return client.pending_count

    assert asyncio.run(_main()) == 0
    assert handled_by_client == []
    # The reply never bounced back as a new request.
    assert len(handled_by_server) == 1
    assert any("already timed out or was cancelled" in r.getMessage() for r in caplog.records)
    assert not any("loop" in r.getMessage() for r in caplog.records)


def test_repeated_request_id_is_treated_as_loop(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    caplog.set_level(logging.WARNING, logger="webext.bus.channel")
    calls: list[dict[str, Any]] = []

    async def _main() -> list[dict[str, Any]]:
        a, b = LocalPort.pair("t")
        Channel(a, lambda msg, ch: calls.append(msg) or "done")
        replies: list[dict[str, Any]] = []
        b.observe_message(replies.append)
        b.send({"correlationId": "same", "kind": "x"})
        b.send({"correlationId": "same", "kind": "x"})
        await asyncio.sleep(0.02)
        return replies

    replies = asyncio.run(_main())
    assert len(calls) == 1
    assert replies == [{"reply": "done", "correlationId": "same"}]
    assert any("loop" in r.getMessage() for r in caplog.records)


def test_messages_without_correlation_id_get_no_reply() -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    calls: list[dict[str, Any]] = []

    async def _main() -> list[dict[str, Any]]:
        a, b = LocalPort.pair("t")
        Channel(a, lambda msg, ch: calls.append(msg) or "ignored")
        replies: list[dict[str, Any]] = []
        b.observe_message(replies.append)
        b.send({"kind": "notification", "details": 1})
        await asyncio.sleep(0.02)
        return replies

    assert asyncio.run(_main()) == []
    assert calls == [{"kind": "notification", "details": 1}]


def test_reply_with_error_field_resolves_and_warns(caplog: pytest.LogCaptureFixture) -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    caplog.set_level(logging.WARNING, logger="webext.bus.channel")

    async def _main() -> Any:
        a, b = LocalPort.pair("t")
        client = Channel(a)

        def answer(msg: dict[str, Any]) -> None:
            b.send({"correlationId": msg["correlationId"], "error": "nope", "detail": 3})

        b.observe_message(answer)
        return await client.post_request({"q": 1})

    assert asyncio.run(_main()) == {"error": "nope", "detail": 3}
    assert any("failed remotely" in r.getMessage() for r in caplog.records)


def test_attach_moves_channel_to_new_port() -> None:
    from webext.bus.channel import Channel
    from webext.bus.port import LocalPort

    async def _main() -> tuple[Any, Any]:
        a1, b1 = LocalPort.pair("first")
        a2, b2 = LocalPort.pair("second")
        Channel(b1, lambda msg, ch: "one")
        Channel(b2, lambda msg, ch: "two")
        client = Channel(a1)
        first = await client.post_request({})
        client.attach(a2)
        second = await client.post_request({})
        return first, second

    assert asyncio.run(_main()) == ("one", "two")
