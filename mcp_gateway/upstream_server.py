"""
Reference stdio upstream.

Writing an upstream in Python for the gateway:

    from mcp_gateway.upstream_server import StdioToolServer, ToolHandler

    class MyTool(ToolHandler):
        name = "my_tool"
        description = "Does something useful"
        parameters = {
            "input": {"type": "string", "description": "The input"},
        }

        def handle(self, params: dict) -> dict:
            return {"result": f"processed: {params['input']}"}

    if __name__ == "__main__":
        server = StdioToolServer()
        server.register(MyTool())
        server.run()

Logging goes to stderr; stdout carries only protocol lines.
"""

from __future__ import annotations

import json
import logging
import sys
from abc import ABC, abstractmethod
from typing import Any, TextIO

logger = logging.getLogger(__name__)


class ToolHandler(ABC):
    """
    Base class for a tool implementation.

    Subclasses define what a tool does. The server handles transport.
    """

    # Subclasses must set these
    name: str = ""
    description: str = ""
    parameters: dict[str, dict] = {}

    @abstractmethod
    def handle(self, params: dict[str, Any]) -> Any:
        """
        Execute the tool with the given parameters.

        Returns:
            The tool result. Strings become a text block; anything else is
            JSON-encoded into one. A dict with a "content" list is passed through.
        """
        ...

    def get_schema(self) -> dict:
        """Return the tool schema for discovery."""
        return {
            "name": self.name,
            "description": self.description,
            "inputSchema": {
                "type": "object",
                "properties": self.parameters,
            },
        }


class StdioToolServer:
    """
    JSON-RPC tool server that communicates via stdin/stdout.

    Protocol:
    - One JSON-RPC message per line
    - Supports methods:
        - "ping"       → readiness probe
        - "tools/list" → {"tools": [schema, ...]}
        - "tools/call" → {"content": [...], "isError": false}
    - Requests without an id are notifications and get no response.
    """

    def __init__(self, stdin: TextIO | None = None, stdout: TextIO | None = None):
        self._handlers: dict[str, ToolHandler] = {}
        self._stdin = stdin or sys.stdin
        self._stdout = stdout or sys.stdout

    def register(self, handler: ToolHandler) -> None:
        """Register a tool handler."""
        if not handler.name:
            raise ValueError(f"ToolHandler {handler.__class__.__name__} has no name")
        self._handlers[handler.name] = handler
        logger.info(f"Registered tool: {handler.name}")

    def run(self) -> None:
        """
        Main loop: read requests from stdin, dispatch, write responses to stdout.

        This blocks until stdin is closed (parent process terminates).
        """
        logger.info(f"Tool server starting with {len(self._handlers)} tools: "
                    f"{list(self._handlers.keys())}")

        for line in self._stdin:
            line = line.strip()
            if not line:
                continue

            try:
                request = json.loads(line)
            except json.JSONDecodeError as e:
                self._write_error(None, -32700, f"Parse error: {e}")
                continue

            if not isinstance(request, dict):
                self._write_error(None, -32600, "Invalid Request")
                continue

            request_id = request.get("id")
            method = request.get("method", "")
            params = request.get("params") or {}

            try:
                result = self._dispatch(method, params)
            except Exception as e:
                if request_id is not None:
                    self._write_error(request_id, -32603, str(e))
                continue
            if request_id is not None:
                self._write_result(request_id, result)

    def _dispatch(self, method: str, params: dict) -> Any:
        """Route a method call to the appropriate handler."""

        if method == "ping":
            return {}

        if method == "tools/list":
            return {"tools": [h.get_schema() for h in self._handlers.values()]}

        if method == "tools/call":
            tool_name = params.get("name", "")
            tool_params = params.get("arguments") or {}

            handler = self._handlers.get(tool_name)
            if not handler:
                raise ValueError(
                    f"Unknown tool: '{tool_name}'. "
                    f"Available: {list(self._handlers.keys())}"
                )

            return _as_tool_result(handler.handle(tool_params))

        raise ValueError(f"Unknown method: '{method}'")

    def _write(self, message: dict) -> None:
        self._stdout.write(json.dumps(message) + "\n")
        self._stdout.flush()

    def _write_result(self, request_id: Any, result: Any) -> None:
        """Write a JSON-RPC success response to stdout."""
        self._write({"jsonrpc": "2.0", "id": request_id, "result": result})

    def _write_error(self, request_id: Any, code: int, message: str) -> None:
        """Write a JSON-RPC error response to stdout."""
        self._write({
            "jsonrpc": "2.0",
            "id": request_id,
            "error": {"code": code, "message": message},
        })


def _as_tool_result(value: Any) -> dict:
    if isinstance(value, dict) and isinstance(value.get("content"), list):
        return value
    text = value if isinstance(value, str) else json.dumps(value)
    return {"content": [{"type": "text", "text": text}], "isError": False}
