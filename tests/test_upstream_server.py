"""Tests for the reference stdio upstream server."""

from __future__ import annotations

import io
import json

from mcp_gateway.servers.echo import EchoTool, FailTool
from mcp_gateway.upstream_server import StdioToolServer


def run_server(*lines: str) -> list[dict]:
    stdin = io.StringIO("".join(line + "\n" for line in lines))
    stdout = io.StringIO()
    server = StdioToolServer(stdin=stdin, stdout=stdout)
    server.register(EchoTool())
    server.register(FailTool())
    server.run()
    return [json.loads(line) for line in stdout.getvalue().splitlines()]


def rpc(method: str, params: dict | None = None, request_id=1) -> str:
    message = {"jsonrpc": "2.0", "method": method, "params": params or {}}
    if request_id is not None:
        message["id"] = request_id
    return json.dumps(message)


class TestStdioToolServer:
    def test_ping_and_discovery(self):
        ping, listing = run_server(rpc("ping", request_id="ping"), rpc("tools/list", request_id=2))

        assert ping == {"jsonrpc": "2.0", "id": "ping", "result": {}}
        names = [t["name"] for t in listing["result"]["tools"]]
        assert names == ["echo", "fail"]
        assert listing["result"]["tools"][0]["inputSchema"]["properties"]["message"]["type"] == "string"

    def test_tool_call_returns_content_blocks(self):
        (response,) = run_server(rpc("tools/call", {"name": "echo", "arguments": {"message": "hi"}}))

        result = response["result"]
        assert result["isError"] is False
        assert json.loads(result["content"][0]["text"]) == {"echoed": "hi", "length": 2}

    def test_handler_failure_is_an_error_response(self):
        (response,) = run_server(rpc("tools/call", {"name": "fail", "arguments": {"reason": "boom"}}))
        assert response["error"] == {"code": -32603, "message": "boom"}

    def test_unknown_tool_and_method(self):
        unknown_tool, unknown_method = run_server(
            rpc("tools/call", {"name": "nope"}, request_id=1),
            rpc("prompts/list", request_id=2),
        )
        assert "Unknown tool" in unknown_tool["error"]["message"]
        assert "Unknown method" in unknown_method["error"]["message"]

    def test_notifications_get_no_response(self):
        assert run_server(rpc("notifications/initialized", request_id=None)) == []

    def test_garbage_lines(self):
        parse_error, invalid = run_server("not json", "[1, 2]", "")
        assert parse_error["error"]["code"] == -32700
        assert parse_error["id"] is None
        assert invalid["error"]["code"] == -32600
