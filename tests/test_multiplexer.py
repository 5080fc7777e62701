"""Tests for request/response correlation and notification routing."""

import asyncio
import random

import pytest
from loguru import logger

from mediaworker.core.errors import CallTimeoutError, ChannelClosedError, RemoteError
from mediaworker.core.messages import ErrorInfo, Notification, Request, Response
from mediaworker.core.multiplexer import RequestMultiplexer
from mediaworker.core.utils.tasks import pending_detached
from support import make_loopback_pair, wait_until


def test_out_of_order_responses_settle_the_matching_calls() -> None:
    """Each concurrent call settles exactly once with the response carrying its id."""

    async def scenario() -> list[object]:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        calls = [asyncio.ensure_future(mux.call("echo", data={"n": n})) for n in range(20)]
        requests = await peer.receive(20)
        shuffled = list(requests)
        random.Random(7).shuffle(shuffled)
        for request in shuffled:
            assert isinstance(request, Request)
            peer.send(Response(id=request.id, ok=True, data={"n": request.data["n"], "id": request.id}))
        results = await asyncio.gather(*calls)
        assert mux.pending_count == 0
        channel.close()
        return results

    results = asyncio.run(scenario())
    assert [result["n"] for result in results] == list(range(20))
    ids = [result["id"] for result in results]
    assert ids == sorted(ids)
    assert len(set(ids)) == 20


def test_remote_error_is_local_to_the_call() -> None:
    """A rejected request raises RemoteError while the multiplexer stays usable."""

    async def scenario() -> object:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        failing = asyncio.ensure_future(mux.call("worker.acquire_media_source", data={"kind": "x"}))
        (request,) = await peer.receive()
        peer.send(Response(id=request.id, ok=False, error=ErrorInfo("InvalidParameters", "bad kind")))
        with pytest.raises(RemoteError) as info:
            await failing
        assert info.value.reason == "InvalidParameters"
        assert info.value.detail == "bad kind"
        assert info.value.method == "worker.acquire_media_source"

        ok = asyncio.ensure_future(mux.call("worker.dump"))
        (request,) = await peer.receive()
        peer.send(Response(id=request.id, ok=True, data={"pid": 1}))
        result = await ok
        channel.close()
        return result

    assert asyncio.run(scenario()) == {"pid": 1}


def test_channel_close_fails_every_pending_call_in_id_order() -> None:
    """Closing the channel with N pending calls settles all N; later calls fail immediately."""

    async def scenario() -> tuple[list[int], RequestMultiplexer]:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        settled: list[int] = []

        async def tracked(index: int) -> None:
            try:
                await mux.call("slow", data={"i": index})
            except ChannelClosedError:
                settled.append(index)

        tasks = [asyncio.ensure_future(tracked(i)) for i in range(5)]
        await peer.receive(5)
        peer.hang_up()
        await asyncio.gather(*tasks)
        with pytest.raises(ChannelClosedError):
            await mux.call("after-close")
        return settled, mux

    settled, mux = asyncio.run(scenario())
    assert settled == [0, 1, 2, 3, 4]
    assert mux.closed is True
    assert mux.pending_count == 0


def test_notifications_route_by_target_and_event() -> None:
    """Listeners get only their (target, event) pair; unmatched notifications are dropped."""

    async def scenario() -> tuple[list[object], list[object], object]:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        first: list[object] = []
        second: list[object] = []
        mux.subscribe("h-1", "connectionstatechange", first.append)
        unsubscribe = mux.subscribe("h-2", "connectionstatechange", second.append)

        pending = asyncio.ensure_future(mux.call("worker.dump"))
        (request,) = await peer.receive()
        peer.send(Notification("h-1", "connectionstatechange", {"state": "connecting"}))
        peer.send(Notification("h-1", "unknown-event", {"state": "x"}))
        peer.send(Notification("nobody", "connectionstatechange", {"state": "x"}))
        peer.send(Notification("h-2", "connectionstatechange", {"state": "connected"}))
        peer.send(Notification("h-1", "connectionstatechange", {"state": "connected"}))
        peer.send(Response(id=request.id, ok=True, data={"ok": 1}))
        result = await pending

        unsubscribe()
        peer.send(Notification("h-2", "connectionstatechange", {"state": "closed"}))
        await asyncio.sleep(0.01)
        channel.close()
        return first, second, result

    first, second, result = asyncio.run(scenario())
    assert first == [{"state": "connecting"}, {"state": "connected"}]
    assert second == [{"state": "connected"}]
    assert result == {"ok": 1}


def test_listener_exception_does_not_break_dispatch() -> None:
    """A failing listener is logged and later notifications still arrive."""

    async def scenario() -> list[object]:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        seen: list[object] = []

        def explode(_data: dict) -> None:
            raise RuntimeError("listener bug")

        mux.subscribe("h-1", "tick", explode)
        mux.subscribe("h-1", "tick", seen.append)
        peer.send(Notification("h-1", "tick", {"n": 1}))
        peer.send(Notification("h-1", "tick", {"n": 2}))
        await asyncio.sleep(0.01)
        channel.close()
        return seen

    assert asyncio.run(scenario()) == [{"n": 1}, {"n": 2}]


def test_timeout_abandons_call_and_discards_late_response() -> None:
    """A 1 ms timeout settles promptly; a late response for that id has no effect."""

    async def scenario() -> tuple[float, object]:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(CallTimeoutError) as info:
            await mux.call("debug.hang", target_id="h-1", timeout=0.001)
        elapsed = loop.time() - started
        assert info.value.method == "debug.hang"
        assert mux.pending_count == 0

        (stale,) = await peer.receive()
        follow_up = asyncio.ensure_future(mux.call("worker.dump"))
        (request,) = await peer.receive()
        assert request.id == stale.id + 1
        peer.send(Response(id=stale.id, ok=True, data={"late": True}))
        peer.send(Response(id=request.id, ok=True, data={"fresh": True}))
        result = await follow_up
        assert channel.closed is False
        channel.close()
        return elapsed, result

    elapsed, result = asyncio.run(scenario())
    assert elapsed < 1.0
    assert result == {"fresh": True}


def test_explicit_close_rejects_pending_and_new_calls() -> None:
    """Closing the multiplexer itself fails in-flight calls with ChannelClosedError."""

    async def scenario() -> None:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=None)
        pending = asyncio.ensure_future(mux.call("worker.dump"))
        await peer.receive()
        mux.close("worker closed")
        with pytest.raises(ChannelClosedError, match="worker closed"):
            await pending
        with pytest.raises(ChannelClosedError):
            await mux.send_oneway("close")
        channel.close()

    asyncio.run(scenario())


def test_failing_async_listener_is_logged_and_released() -> None:
    """A coroutine listener that raises is reported through loguru and not kept alive."""
    records: list[str] = []
    sink_id = logger.add(lambda message: records.append(str(message)), level="ERROR")

    async def scenario() -> list[object]:
        channel, peer = make_loopback_pair()
        mux = RequestMultiplexer(channel, default_timeout=5.0)
        seen: list[object] = []

        async def explode(_data: dict) -> None:
            await asyncio.sleep(0)
            raise RuntimeError("async listener bug")

        mux.subscribe("h-1", "tick", explode)
        mux.subscribe("h-1", "tick", seen.append)
        peer.send(Notification("h-1", "tick", {"n": 1}))
        peer.send(Notification("h-1", "tick", {"n": 2}))
        await wait_until(lambda: len(seen) == 2 and pending_detached() == 0)
        channel.close()
        return seen

    try:
        seen = asyncio.run(scenario())
    finally:
        logger.remove(sink_id)
    assert seen == [{"n": 1}, {"n": 2}]
    failures = [record for record in records if "listener for h-1/tick failed" in record]
    assert len(failures) == 2
    assert "async listener bug" in failures[0]
