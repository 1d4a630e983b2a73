"""
Subprocess RPC bridge.

One Bridge per upstream. It turns the upstream's stdout byte stream into
a correlated request/response interface:

    bridge = Bridge(descriptor)
    await bridge.start()                      # spawn + readiness probe
    result = await bridge.call_tool("query", {"sql": "select 1"})
    await bridge.shutdown()                   # SIGTERM, then SIGKILL

Calls made before the bridge is READY are queued and flushed in order
once the readiness probe is answered. Each sent request gets its own
deadline; a timeout fails that request only.

All bookkeeping (pending, queue, state) is touched only from the event
loop that owns the bridge and never across an await between check and
mutation, so no lock is needed for it. Writes to stdin are synchronous;
drains are serialized by a lock.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from mcp_gateway.config import GatewaySettings
from mcp_gateway.errors import (
    BridgeClosedError,
    MalformedFrame,
    ReadinessTimeout,
    RequestTimeout,
    SpawnFailure,
    UpstreamError,
)
from mcp_gateway.messages import (
    PING_ID,
    PING_METHOD,
    JsonRpcRequest,
    JsonRpcResponse,
    LineBuffer,
)
from mcp_gateway.registry import UpstreamDescriptor
from mcp_gateway.transport import StdioTransport, Transport

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT = 10.0
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_SHUTDOWN_GRACE = 5.0

_request_counter = itertools.count(1)


def next_request_id(upstream_name: str) -> str:
    """Process-unique request id. Never equal to the reserved ping id."""
    return f"{upstream_name}-{next(_request_counter)}"


class BridgeState(str, Enum):
    DISCONNECTED = "disconnected"
    STARTING = "starting"
    AWAITING_READY = "awaiting_ready"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    CLOSED = "closed"


StateListener = Callable[[str, BridgeState], None]


@dataclass
class _PendingCall:
    future: asyncio.Future
    timer: asyncio.TimerHandle | None = None


@dataclass
class _QueuedCall:
    request: JsonRpcRequest
    future: asyncio.Future


class Bridge:
    """Generic, descriptor-parameterized stdio JSON-RPC client."""

    def __init__(
        self,
        descriptor: UpstreamDescriptor,
        transport: Transport | None = None,
        *,
        ready_timeout: float = DEFAULT_READY_TIMEOUT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        shutdown_grace: float = DEFAULT_SHUTDOWN_GRACE,
    ):
        self.descriptor = descriptor
        self.ready_timeout = ready_timeout
        self.request_timeout = request_timeout
        self.shutdown_grace = shutdown_grace
        self._transport = transport or StdioTransport(
            descriptor.name, descriptor.argv, dict(descriptor.env)
        )
        self.state = BridgeState.DISCONNECTED
        self._pending: dict[int | str, _PendingCall] = {}
        self._queue: deque[_QueuedCall] = deque()
        self._listeners: list[StateListener] = []
        self._reader_task: asyncio.Task[None] | None = None
        self._exit_task: asyncio.Task[None] | None = None
        self._background: set[asyncio.Task[None]] = set()
        self._drain_lock = asyncio.Lock()
        self._close_reason = ""

    @classmethod
    def from_settings(
        cls,
        descriptor: UpstreamDescriptor,
        settings: GatewaySettings,
        transport: Transport | None = None,
    ) -> "Bridge":
        return cls(
            descriptor,
            transport,
            ready_timeout=settings.BRIDGE_READY_TIMEOUT_S,
            request_timeout=settings.BRIDGE_REQUEST_TIMEOUT_S,
            shutdown_grace=settings.BRIDGE_SHUTDOWN_GRACE_S,
        )

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def queued_count(self) -> int:
        return len(self._queue)

    @property
    def is_ready(self) -> bool:
        return self.state is BridgeState.READY

    def add_state_listener(self, listener: StateListener) -> None:
        """Subscribe to state transitions. Called as listener(name, new_state)."""
        self._listeners.append(listener)

    def _set_state(self, state: BridgeState) -> None:
        if state is self.state:
            return
        logger.debug(f"[{self.name}] {self.state.value} -> {state.value}")
        self.state = state
        for listener in list(self._listeners):
            try:
                listener(self.name, state)
            except Exception as e:
                logger.error(f"[{self.name}] state listener failed: {e}", exc_info=True)

    # ── Lifecycle ─────────────────────────────────────────

    async def start(self) -> None:
        """
        Spawn the upstream and wait for it to answer the readiness probe.

        Raises:
            SpawnFailure: the process could not be launched or died during startup.
            ReadinessTimeout: no probe response within ready_timeout.
        """
        if self.state is not BridgeState.DISCONNECTED:
            raise RuntimeError(f"Bridge {self.name} cannot start from state {self.state.value}")

        self._set_state(BridgeState.STARTING)
        try:
            await self._transport.start()
        except SpawnFailure as e:
            logger.error(f"[{self.name}] spawn failed: {e}")
            self._close(BridgeClosedError(f"spawn failed: {e}"))
            raise

        self._reader_task = asyncio.create_task(self._read_loop())
        self._exit_task = asyncio.create_task(self._watch_exit())

        self._set_state(BridgeState.AWAITING_READY)
        probe: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[PING_ID] = _PendingCall(probe)

        try:
            self._transport.write(JsonRpcRequest(PING_METHOD, {}, PING_ID).to_frame())
            await self._drain()
            await asyncio.wait_for(asyncio.shield(probe), timeout=self.ready_timeout)
        except asyncio.TimeoutError:
            self._pending.pop(PING_ID, None)
            probe.cancel()
            logger.error(f"[{self.name}] no readiness response within {self.ready_timeout}s")
            await self.shutdown()
            raise ReadinessTimeout(
                f"{self.name} connection timeout: not ready within {self.ready_timeout}s"
            ) from None
        except BridgeClosedError as e:
            for task in (self._reader_task, self._exit_task):
                if task is not None and not task.done():
                    task.cancel()
            raise SpawnFailure(f"{self.name} exited during startup: {e}") from e
        except (OSError, RuntimeError) as e:
            self._pending.pop(PING_ID, None)
            probe.cancel()
            await self.shutdown()
            raise SpawnFailure(f"{self.name} could not be probed: {e}") from e

        logger.info(f"[{self.name}] ready (pid={getattr(self._transport, 'pid', None)})")

    async def shutdown(self) -> None:
        """
        Terminate the upstream: SIGTERM, wait shutdown_grace, then SIGKILL.

        Every pending and queued call fails with BridgeClosedError.
        """
        if self.state in (BridgeState.CLOSED, BridgeState.SHUTTING_DOWN):
            return

        logger.info(f"[{self.name}] shutting down")
        self._set_state(BridgeState.SHUTTING_DOWN)

        if self._exit_task is not None and not self._exit_task.done():
            self._transport.terminate()
            try:
                await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=self.shutdown_grace)
            except asyncio.TimeoutError:
                logger.warning(f"[{self.name}] graceful shutdown timed out, forcing kill")
                self._transport.kill()
                try:
                    await asyncio.wait_for(asyncio.shield(self._exit_task), timeout=self.shutdown_grace)
                except asyncio.TimeoutError:
                    logger.error(f"[{self.name}] process did not exit after SIGKILL")

        self._close(BridgeClosedError("shutdown requested"))

        for task in (self._reader_task, self._exit_task, *self._background):
            if task is not None and not task.done():
                task.cancel()
        logger.info(f"[{self.name}] closed")

    def _close(self, error: BridgeClosedError) -> None:
        """Enter CLOSED and fail everything still waiting."""
        if self.state is BridgeState.CLOSED:
            return
        self._close_reason = error.reason
        self._set_state(BridgeState.CLOSED)

        pending = list(self._pending.values())
        self._pending.clear()
        for entry in pending:
            if entry.timer is not None:
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(error)

        while self._queue:
            queued = self._queue.popleft()
            if not queued.future.done():
                queued.future.set_exception(error)

        if pending:
            logger.warning(f"[{self.name}] failed {len(pending)} pending call(s): {error}")

    async def _watch_exit(self) -> None:
        returncode = None
        try:
            returncode = await self._transport.wait()
        finally:
            if self.state is BridgeState.SHUTTING_DOWN:
                logger.info(f"[{self.name}] process exited with code {returncode}")
                self._close(BridgeClosedError("shutdown requested"))
            else:
                logger.warning(f"[{self.name}] process exited unexpectedly with code {returncode}")
                self._close(BridgeClosedError(f"{self.name} process exited with code {returncode}"))

    # ── Requests ──────────────────────────────────────────

    async def request(self, method: str, params: dict[str, Any] | None = None) -> Any:
        """
        Send a JSON-RPC request and wait for its result.

        Suspends until the bridge is READY if called earlier.

        Raises:
            BridgeClosedError: the bridge is closed or closes before a response.
            RequestTimeout: no response within request_timeout of sending.
            UpstreamError: the upstream answered with an error payload.
        """
        if self.state in (BridgeState.SHUTTING_DOWN, BridgeState.CLOSED):
            raise BridgeClosedError(self._close_reason)

        request = JsonRpcRequest(method, params or {}, next_request_id(self.name))
        future: asyncio.Future = asyncio.get_running_loop().create_future()

        if self.state is BridgeState.READY:
            self._send(request, future)
            await self._drain()
        else:
            self._queue.append(_QueuedCall(request, future))
            logger.debug(f"[{self.name}] queued {method} ({request.id}) while {self.state.value}")

        try:
            return await future
        except asyncio.CancelledError:
            self._discard(request.id)
            raise

    async def list_tools(self) -> list[dict[str, Any]]:
        """Fetch the upstream's own (unprefixed) tool catalog."""
        result = await self.request("tools/list", {})
        if isinstance(result, dict):
            tools = result.get("tools") or []
        else:
            tools = result or []
        return [t for t in tools if isinstance(t, dict)]

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> Any:
        return await self.request("tools/call", {"name": name, "arguments": arguments})

    def _send(self, request: JsonRpcRequest, future: asyncio.Future) -> None:
        if request.id in self._pending:
            raise RuntimeError(f"Duplicate request id {request.id!r}")
        timer = asyncio.get_running_loop().call_later(
            self.request_timeout, self._expire, request.id
        )
        self._pending[request.id] = _PendingCall(future, timer)
        try:
            self._transport.write(request.to_frame())
        except (OSError, RuntimeError) as e:
            entry = self._pending.pop(request.id)
            timer.cancel()
            if not entry.future.done():
                entry.future.set_exception(BridgeClosedError(f"write failed: {e}"))

    def _expire(self, request_id: int | str) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return
        logger.warning(f"[{self.name}] request {request_id} timed out after {self.request_timeout}s")
        entry.future.set_exception(
            RequestTimeout(f"{self.name} request timeout after {self.request_timeout}s")
        )

    def _discard(self, request_id: int | str | None) -> None:
        entry = self._pending.pop(request_id, None)
        if entry is not None and entry.timer is not None:
            entry.timer.cancel()
        for queued in list(self._queue):
            if queued.request.id == request_id:
                self._queue.remove(queued)

    def _mark_ready(self) -> None:
        if self.state is not BridgeState.AWAITING_READY:
            return
        self._set_state(BridgeState.READY)
        flushed = 0
        while self._queue:
            queued = self._queue.popleft()
            if queued.future.done():
                continue
            self._send(queued.request, queued.future)
            flushed += 1
        if flushed:
            logger.info(f"[{self.name}] flushed {flushed} queued call(s)")
            task = asyncio.create_task(self._drain())
            self._background.add(task)
            task.add_done_callback(self._background.discard)

    async def _drain(self) -> None:
        async with self._drain_lock:
            try:
                await self._transport.drain()
            except (ConnectionResetError, BrokenPipeError) as e:
                # The exit watcher closes the bridge and fails pending calls.
                logger.warning(f"[{self.name}] stdin closed: {e}")

    # ── Responses ─────────────────────────────────────────

    async def _read_loop(self) -> None:
        buffer = LineBuffer()
        try:
            while True:
                chunk = await self._transport.read()
                if not chunk:
                    break
                for line in buffer.feed(chunk):
                    try:
                        self._handle_line(line)
                    except Exception as e:
                        logger.error(f"[{self.name}] failed to handle line: {e}", exc_info=True)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"[{self.name}] response reader failed: {e}", exc_info=True)

        if buffer.pending.strip():
            logger.warning(f"[{self.name}] discarding incomplete line at end of stream")
        logger.debug(f"[{self.name}] response stream ended")

    def _handle_line(self, line: str) -> None:
        try:
            message = JsonRpcResponse.from_json(line)
        except MalformedFrame as e:
            logger.warning(f"[{self.name}] discarding malformed line ({e}): {line[:200]}")
            return

        if message.id is None:
            logger.debug(f"[{self.name}] ignoring notification {message.method}")
            return

        entry = self._pending.pop(message.id, None)
        if entry is None:
            logger.debug(f"[{self.name}] no pending request for id {message.id!r}, discarded")
            return
        if entry.timer is not None:
            entry.timer.cancel()
        if entry.future.done():
            return

        if message.id == PING_ID:
            # Any answer to the probe, success or error, means the upstream reads stdin.
            entry.future.set_result(message)
            self._mark_ready()
        elif message.is_error:
            entry.future.set_exception(UpstreamError.from_payload(message.error))
        else:
            entry.future.set_result(message.result)
