"""Tests for the subprocess RPC bridge: readiness, queuing, correlation, timeouts, shutdown."""

from __future__ import annotations

import asyncio

import pytest
from conftest import FakeTransport, eventually, make_descriptor

from mcp_gateway.bridge import Bridge, BridgeState, next_request_id
from mcp_gateway.errors import (
    BridgeClosedError,
    ReadinessTimeout,
    RequestTimeout,
    SpawnFailure,
    UpstreamError,
)
from mcp_gateway.messages import PING_ID


def make_bridge(transport: FakeTransport, **timeouts: float) -> Bridge:
    timeouts.setdefault("ready_timeout", 1.0)
    timeouts.setdefault("request_timeout", 1.0)
    timeouts.setdefault("shutdown_grace", 0.2)
    return Bridge(make_descriptor(), transport, **timeouts)


async def ready_bridge(**timeouts: float) -> tuple[Bridge, FakeTransport]:
    transport = FakeTransport(auto_ping=True)
    bridge = make_bridge(transport, **timeouts)
    await bridge.start()
    return bridge, transport


class TestRequestIds:
    def test_ids_are_unique_and_never_the_ping_id(self):
        ids = {next_request_id("pg") for _ in range(100)}
        assert len(ids) == 100
        assert PING_ID not in ids


class TestStartup:
    @pytest.mark.asyncio
    async def test_start_sends_ping_probe_and_becomes_ready(self):
        transport = FakeTransport(auto_ping=True)
        bridge = make_bridge(transport)
        states = []
        bridge.add_state_listener(lambda name, state: states.append(state))

        await bridge.start()

        assert bridge.state is BridgeState.READY
        assert transport.requests == [{"jsonrpc": "2.0", "method": "ping", "params": {}, "id": "ping"}]
        assert states == [BridgeState.STARTING, BridgeState.AWAITING_READY, BridgeState.READY]
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_error_reply_to_ping_still_means_ready(self):
        transport = FakeTransport()
        bridge = make_bridge(transport)
        start = asyncio.create_task(bridge.start())
        await eventually(lambda: len(transport.written) == 1)

        transport.respond(PING_ID, error={"code": -32601, "message": "Method not found"})
        await start

        assert bridge.is_ready
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_readiness_timeout_shuts_the_process_down(self):
        transport = FakeTransport()
        bridge = make_bridge(transport, ready_timeout=0.1)

        with pytest.raises(ReadinessTimeout, match="connection timeout"):
            await bridge.start()

        assert transport.terminated
        assert bridge.state is BridgeState.CLOSED
        assert bridge.pending_count == 0

    @pytest.mark.asyncio
    async def test_spawn_failure_closes_bridge(self):
        transport = FakeTransport(spawn_error=SpawnFailure("Failed to spawn postgres (postgres-mcp): not found"))
        bridge = make_bridge(transport)

        with pytest.raises(SpawnFailure):
            await bridge.start()

        assert bridge.state is BridgeState.CLOSED
        with pytest.raises(BridgeClosedError):
            await bridge.request("tools/list")

    @pytest.mark.asyncio
    async def test_exit_before_ready_is_a_spawn_failure(self):
        transport = FakeTransport()
        bridge = make_bridge(transport)
        start = asyncio.create_task(bridge.start())
        await eventually(lambda: len(transport.written) == 1)

        transport.exit(1)

        with pytest.raises(SpawnFailure, match="exited during startup"):
            await start
        assert bridge.state is BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_exit_before_ready_stops_the_reader(self):
        transport = FakeTransport()
        bridge = make_bridge(transport)
        start = asyncio.create_task(bridge.start())
        await eventually(lambda: len(transport.written) == 1)

        transport.exit(1, close_stdout=False)

        with pytest.raises(SpawnFailure, match="exited during startup"):
            await start
        await eventually(lambda: bridge._reader_task.done() and bridge._exit_task.done())
        assert bridge._reader_task.cancelled()

    @pytest.mark.asyncio
    async def test_start_twice_is_rejected(self):
        bridge, _ = await ready_bridge()
        with pytest.raises(RuntimeError):
            await bridge.start()
        await bridge.shutdown()


class TestQueuing:
    @pytest.mark.asyncio
    async def test_calls_before_ready_are_flushed_in_order(self):
        transport = FakeTransport()
        bridge = make_bridge(transport)
        start = asyncio.create_task(bridge.start())
        await eventually(lambda: len(transport.written) == 1)

        calls = [
            asyncio.create_task(bridge.call_tool("query", {"n": n}))
            for n in range(3)
        ]
        await eventually(lambda: bridge.queued_count == 3)
        assert transport.calls == []

        transport.respond(PING_ID, {})
        await start
        await eventually(lambda: len(transport.calls) == 3)

        sent = transport.calls
        assert [r["params"]["arguments"]["n"] for r in sent] == [0, 1, 2]
        assert bridge.queued_count == 0

        for request in reversed(sent):
            transport.respond(request["id"], {"n": request["params"]["arguments"]["n"]})
        assert await asyncio.gather(*calls) == [{"n": 0}, {"n": 1}, {"n": 2}]
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_queued_call_is_not_sent(self):
        transport = FakeTransport()
        bridge = make_bridge(transport)
        start = asyncio.create_task(bridge.start())
        await eventually(lambda: len(transport.written) == 1)

        cancelled = asyncio.create_task(bridge.call_tool("query", {"n": 0}))
        kept = asyncio.create_task(bridge.call_tool("query", {"n": 1}))
        await eventually(lambda: bridge.queued_count == 2)
        cancelled.cancel()
        await eventually(lambda: bridge.queued_count == 1)

        transport.respond(PING_ID, {})
        await start
        await eventually(lambda: len(transport.calls) == 1)

        assert transport.calls[0]["params"]["arguments"] == {"n": 1}
        transport.respond(transport.calls[0]["id"], "ok")
        assert await kept == "ok"
        await bridge.shutdown()


class TestCorrelation:
    @pytest.mark.asyncio
    async def test_responses_resolve_by_id_in_any_order(self):
        bridge, transport = await ready_bridge()
        first = asyncio.create_task(bridge.request("tools/call", {"name": "a"}))
        second = asyncio.create_task(bridge.request("tools/call", {"name": "b"}))
        await eventually(lambda: bridge.pending_count == 2)

        a, b = transport.calls
        transport.respond(b["id"], "B")
        transport.respond(a["id"], "A")

        assert await first == "A"
        assert await second == "B"
        assert bridge.pending_count == 0
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_responses_split_across_chunks(self):
        bridge, transport = await ready_bridge()
        call = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)

        request_id = transport.calls[0]["id"]
        line = f'{{"jsonrpc": "2.0", "id": "{request_id}", "result": {{"tools": []}}}}\n'
        transport.feed(line[:10])
        transport.feed(line[10:25])
        transport.feed(line[25:])

        assert await call == {"tools": []}
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_malformed_lines_and_notifications_are_harmless(self):
        bridge, transport = await ready_bridge()
        call = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)

        transport.feed(b"Starting server on stdio...\n")
        transport.feed(b"[1, 2, 3]\n")
        transport.feed({"jsonrpc": "2.0", "method": "notifications/message", "params": {}})
        transport.respond(transport.calls[0]["id"], {"tools": []})

        assert await call == {"tools": []}
        assert bridge.is_ready
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_unhashable_id_does_not_stop_the_reader(self):
        bridge, transport = await ready_bridge()
        call = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)

        transport.feed(b'{"jsonrpc":"2.0","id":[1],"result":1}\n')
        transport.feed(b'{"jsonrpc":"2.0","id":{},"result":1}\n')
        transport.respond(transport.calls[0]["id"], {"tools": []})

        assert await call == {"tools": []}
        assert not bridge._reader_task.done()
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_unknown_id_is_discarded(self):
        bridge, transport = await ready_bridge()
        transport.respond("postgres-999999", {"stray": True})
        call = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)
        transport.respond(transport.calls[0]["id"], {"tools": []})

        assert await call == {"tools": []}
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_error_payload_raises_upstream_error(self):
        bridge, transport = await ready_bridge()
        call = asyncio.create_task(bridge.call_tool("query", {"sql": "select"}))
        await eventually(lambda: bridge.pending_count == 1)

        transport.respond(
            transport.calls[0]["id"],
            error={"code": -32603, "message": "syntax error at end of input", "data": {"pos": 6}},
        )

        with pytest.raises(UpstreamError) as exc_info:
            await call
        assert exc_info.value.code == -32603
        assert exc_info.value.message == "syntax error at end of input"
        assert exc_info.value.data == {"pos": 6}
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_list_tools_accepts_object_or_bare_list(self):
        bridge, transport = await ready_bridge()

        call = asyncio.create_task(bridge.list_tools())
        await eventually(lambda: bridge.pending_count == 1)
        transport.respond(transport.calls[-1]["id"], {"tools": [{"name": "query"}]})
        assert await call == [{"name": "query"}]

        call = asyncio.create_task(bridge.list_tools())
        await eventually(lambda: bridge.pending_count == 1)
        transport.respond(transport.calls[-1]["id"], [{"name": "query"}, "junk"])
        assert await call == [{"name": "query"}]
        await bridge.shutdown()


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_timeout_fails_only_the_late_request(self):
        bridge, transport = await ready_bridge(request_timeout=0.2)
        loop = asyncio.get_running_loop()
        started = loop.time()

        slow = asyncio.create_task(bridge.request("tools/call", {"name": "slow"}))
        fast = asyncio.create_task(bridge.request("tools/call", {"name": "fast"}))
        await eventually(lambda: bridge.pending_count == 2)
        slow_request, fast_request = transport.calls
        transport.respond(fast_request["id"], "done")

        assert await fast == "done"
        with pytest.raises(RequestTimeout):
            await slow
        elapsed = loop.time() - started
        assert 0.15 <= elapsed < 0.2 + 0.1
        assert bridge.pending_count == 0
        assert bridge.is_ready

        # A response arriving after the deadline is dropped.
        transport.respond(slow_request["id"], "too late")
        follow_up = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)
        transport.respond(transport.calls[-1]["id"], {"tools": []})
        assert await follow_up == {"tools": []}
        await bridge.shutdown()

    @pytest.mark.asyncio
    async def test_cancelled_request_is_forgotten(self):
        bridge, _ = await ready_bridge()
        call = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)

        call.cancel()
        with pytest.raises(asyncio.CancelledError):
            await call
        assert bridge.pending_count == 0
        await bridge.shutdown()


class TestShutdown:
    @pytest.mark.asyncio
    async def test_shutdown_fails_every_pending_call(self):
        bridge, transport = await ready_bridge()
        calls = [asyncio.create_task(bridge.request("tools/call", {"n": n})) for n in range(3)]
        await eventually(lambda: bridge.pending_count == 3)

        await bridge.shutdown()

        results = await asyncio.gather(*calls, return_exceptions=True)
        assert all(isinstance(r, BridgeClosedError) for r in results)
        assert all("bridge closed" in str(r) for r in results)
        assert transport.terminated and not transport.killed
        assert bridge.state is BridgeState.CLOSED
        assert bridge.pending_count == 0

    @pytest.mark.asyncio
    async def test_shutdown_escalates_to_kill(self):
        transport = FakeTransport(auto_ping=True, ignore_sigterm=True)
        bridge = make_bridge(transport, shutdown_grace=0.05)
        await bridge.start()

        await bridge.shutdown()

        assert transport.terminated
        assert transport.killed
        assert bridge.state is BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self):
        bridge, _ = await ready_bridge()
        await bridge.shutdown()
        await bridge.shutdown()
        assert bridge.state is BridgeState.CLOSED

    @pytest.mark.asyncio
    async def test_requests_after_close_fail_immediately(self):
        bridge, transport = await ready_bridge()
        await bridge.shutdown()
        written = len(transport.written)

        with pytest.raises(BridgeClosedError, match="bridge closed"):
            await bridge.request("tools/list")
        assert len(transport.written) == written

    @pytest.mark.asyncio
    async def test_unexpected_exit_fails_pending_calls(self):
        bridge, transport = await ready_bridge()
        call = asyncio.create_task(bridge.request("tools/list"))
        await eventually(lambda: bridge.pending_count == 1)

        transport.exit(1)

        with pytest.raises(BridgeClosedError, match="exited with code 1"):
            await call
        assert bridge.state is BridgeState.CLOSED
        with pytest.raises(BridgeClosedError):
            await bridge.request("tools/list")
