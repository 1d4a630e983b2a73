"""
Shared test doubles for the gateway.

FakeTransport stands in for an upstream process: it records every frame
the bridge writes and lets a test feed stdout bytes and trigger exits.
FakeRedis implements the handful of Redis commands the gateway uses,
with a manual millisecond clock for expiry.
"""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone
from typing import Any, Callable

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from mcp_gateway.config import GatewaySettings
from mcp_gateway.errors import StoreUnavailable
from mcp_gateway.messages import PING_ID
from mcp_gateway.registry import UpstreamDescriptor
from mcp_gateway.repository import CompanyProfile
from mcp_gateway.transport import Transport

Responder = Callable[[dict[str, Any]], "dict[str, Any] | None"]


class FakeTransport(Transport):
    """In-memory upstream process."""

    def __init__(
        self,
        *,
        auto_ping: bool = False,
        responder: Responder | None = None,
        ignore_sigterm: bool = False,
        spawn_error: Exception | None = None,
    ) -> None:
        self.auto_ping = auto_ping
        self.responder = responder
        self.ignore_sigterm = ignore_sigterm
        self.spawn_error = spawn_error
        self.written: list[bytes] = []
        self.returncode: int | None = None
        self.started = False
        self.terminated = False
        self.killed = False
        self._chunks: asyncio.Queue[bytes] = asyncio.Queue()
        self._exited = asyncio.Event()

    # Transport interface

    async def start(self) -> None:
        if self.spawn_error is not None:
            raise self.spawn_error
        self.started = True

    async def read(self) -> bytes:
        return await self._chunks.get()

    def write(self, data: bytes) -> None:
        if self.returncode is not None:
            raise BrokenPipeError("upstream exited")
        self.written.append(data)
        request = json.loads(data.decode("utf-8"))
        if request.get("id") == PING_ID:
            if self.auto_ping:
                self.respond(PING_ID, {})
            return
        if self.responder is not None:
            reply = self.responder(request)
            if reply is not None:
                self.feed({"jsonrpc": "2.0", "id": request.get("id"), **reply})

    async def drain(self) -> None:
        await asyncio.sleep(0)

    async def wait(self) -> int:
        await self._exited.wait()
        assert self.returncode is not None
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True
        if not self.ignore_sigterm:
            self.exit(-15)

    def kill(self) -> None:
        self.killed = True
        self.exit(-9)

    def is_alive(self) -> bool:
        return self.started and self.returncode is None

    # Test controls

    @property
    def requests(self) -> list[dict[str, Any]]:
        return [json.loads(frame) for frame in self.written]

    @property
    def calls(self) -> list[dict[str, Any]]:
        """Written requests other than the readiness probe."""
        return [r for r in self.requests if r.get("id") != PING_ID]

    def feed(self, data: bytes | str | dict[str, Any]) -> None:
        if isinstance(data, dict):
            data = json.dumps(data) + "\n"
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._chunks.put_nowait(data)

    def respond(self, request_id: Any, result: Any = None, error: dict | None = None) -> None:
        message: dict[str, Any] = {"jsonrpc": "2.0", "id": request_id}
        if error is not None:
            message["error"] = error
        else:
            message["result"] = result
        self.feed(message)

    def exit(self, code: int, *, close_stdout: bool = True) -> None:
        """Exit with code; close_stdout=False models a descendant still holding the pipe."""
        if self.returncode is not None:
            return
        self.returncode = code
        if close_stdout:
            self._chunks.put_nowait(b"")
        self._exited.set()


class FakeRedis:
    """The subset of redis.asyncio.Redis used by the gateway."""

    def __init__(self) -> None:
        self.data: dict[str, Any] = {}
        self.expires_at: dict[str, int] = {}
        self.now_ms = 0
        self.fail = False
        self.closed = False

    def advance(self, ms: int) -> None:
        self.now_ms += ms

    def _check(self) -> None:
        if self.fail:
            raise RedisConnectionError("Connection refused")

    def _purge(self, key: str) -> None:
        deadline = self.expires_at.get(key)
        if deadline is not None and deadline <= self.now_ms:
            self.data.pop(key, None)
            self.expires_at.pop(key, None)

    async def incr(self, key: str) -> int:
        self._check()
        self._purge(key)
        value = int(self.data.get(key, 0)) + 1
        self.data[key] = value
        return value

    async def pexpire(self, key: str, ms: int) -> bool:
        self._check()
        self._purge(key)
        if key not in self.data:
            return False
        self.expires_at[key] = self.now_ms + ms
        return True

    async def pttl(self, key: str) -> int:
        self._check()
        self._purge(key)
        if key not in self.data:
            return -2
        if key not in self.expires_at:
            return -1
        return self.expires_at[key] - self.now_ms

    async def get(self, key: str) -> Any:
        self._check()
        self._purge(key)
        return self.data.get(key)

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        self._check()
        self.data[key] = value
        self.expires_at[key] = self.now_ms + seconds * 1000
        return True

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            self._purge(key)
            if self.data.pop(key, None) is not None:
                removed += 1
            self.expires_at.pop(key, None)
        return removed

    async def aclose(self) -> None:
        self.closed = True


class FakeProfileRepository:
    """Dict-backed ProfileRepositoryProtocol."""

    def __init__(self) -> None:
        self.rows: dict[str, CompanyProfile] = {}
        self.fail = False
        self.get_calls = 0

    def _check(self) -> None:
        if self.fail:
            raise StoreUnavailable("Profile store get failed: connection refused")

    async def get(self, company_id: str) -> CompanyProfile | None:
        self._check()
        self.get_calls += 1
        return self.rows.get(company_id)

    async def upsert(self, profile: CompanyProfile) -> None:
        self._check()
        self.rows[profile.company_id] = profile

    async def delete(self, company_id: str) -> bool:
        self._check()
        return self.rows.pop(company_id, None) is not None

    async def list_profiles(self, limit: int, offset: int) -> list[CompanyProfile]:
        self._check()
        ordered = sorted(self.rows.values(), key=lambda p: p.updated_at, reverse=True)
        return ordered[offset:offset + limit]


async def eventually(predicate: Callable[[], bool], timeout: float = 1.0) -> None:
    """Yield to the loop until predicate() holds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.001)


def make_descriptor(
    name: str = "postgres",
    prefix: str = "pg.",
    *,
    requires_delegated_token: bool = False,
) -> UpstreamDescriptor:
    return UpstreamDescriptor(
        name=name,
        prefix=prefix,
        command=f"{name}-mcp",
        requires_delegated_token=requires_delegated_token,
    )


def profile(company_id: str, minute: int = 0, **data: Any) -> CompanyProfile:
    return CompanyProfile(
        company_id=company_id,
        json_data=data or {"name": company_id},
        updated_at=datetime(2026, 1, 1, 12, minute, tzinfo=timezone.utc),
    )


@pytest.fixture
def settings() -> GatewaySettings:
    return GatewaySettings(
        _env_file=None,
        BRIDGE_READY_TIMEOUT_S=1.0,
        BRIDGE_REQUEST_TIMEOUT_S=1.0,
        BRIDGE_SHUTDOWN_GRACE_S=0.2,
    )


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def fake_repository() -> FakeProfileRepository:
    return FakeProfileRepository()
