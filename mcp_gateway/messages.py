"""
Wire-level value objects and line framing.

Upstreams speak newline-delimited JSON-RPC 2.0: one JSON object per line,
in both directions. The readiness probe is a request with the reserved
id and method "ping".
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

from mcp_gateway.errors import MalformedFrame

JSONRPC_VERSION = "2.0"
PING_ID = "ping"
PING_METHOD = "ping"


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request."""
    method: str
    params: dict[str, Any]
    id: int | str | None = None

    def to_json(self) -> str:
        message: dict[str, Any] = {
            "jsonrpc": JSONRPC_VERSION,
            "method": self.method,
            "params": self.params,
        }
        if self.id is not None:
            message["id"] = self.id
        return json.dumps(message)

    def to_frame(self) -> bytes:
        """One line of framed text, newline-terminated."""
        return (self.to_json() + "\n").encode("utf-8")


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response (or notification, when id is None)."""
    id: int | str | None
    result: Any = None
    error: dict | None = None
    method: str | None = None

    @classmethod
    def from_json(cls, data: str) -> "JsonRpcResponse":
        try:
            parsed = json.loads(data)
        except json.JSONDecodeError as e:
            raise MalformedFrame(f"Invalid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise MalformedFrame(f"Expected a JSON object, got {type(parsed).__name__}")
        request_id = parsed.get("id")
        if request_id is not None and (
            isinstance(request_id, bool) or not isinstance(request_id, (str, int))
        ):
            raise MalformedFrame(f"Invalid id type: {type(request_id).__name__}")
        return cls(
            id=request_id,
            result=parsed.get("result"),
            error=parsed.get("error"),
            method=parsed.get("method"),
        )

    @property
    def is_error(self) -> bool:
        return self.error is not None


class LineBuffer:
    """
    Splits an arbitrarily-chunked byte stream on newline boundaries.

    A partial trailing line is retained until a later chunk completes it.
    """

    def __init__(self) -> None:
        self._buffer = b""

    def feed(self, chunk: bytes) -> list[str]:
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split(b"\n")
        decoded = []
        for raw in lines:
            line = raw.decode("utf-8", errors="replace").strip()
            if line:
                decoded.append(line)
        return decoded

    def flush(self) -> str:
        """Return the incomplete trailing line as text and clear it."""
        line = self._buffer.decode("utf-8", errors="replace").strip()
        self._buffer = b""
        return line

    @property
    def pending(self) -> bytes:
        """Bytes of the incomplete trailing line."""
        return self._buffer


@dataclass
class ToolCall:
    """A tool invocation as received from a caller."""
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_params(cls, params: dict[str, Any] | None) -> "ToolCall":
        params = params or {}
        arguments = params.get("arguments") or {}
        if not isinstance(arguments, dict):
            arguments = {}
        return cls(name=str(params.get("name", "")), arguments=arguments)


@dataclass
class ToolResult:
    """Ordered content blocks plus an error flag."""
    content: list[dict[str, Any]] = field(default_factory=list)
    is_error: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"content": self.content, "isError": self.is_error}

    @property
    def text(self) -> str:
        """Concatenated text of all text blocks."""
        return "\n".join(
            block.get("text", "") for block in self.content if block.get("type") == "text"
        )

    @classmethod
    def from_upstream(cls, result: Any) -> "ToolResult":
        """Normalize an upstream tools/call result into a ToolResult."""
        if isinstance(result, dict) and isinstance(result.get("content"), list):
            blocks = [b for b in result["content"] if isinstance(b, dict)]
            return cls(content=blocks, is_error=bool(result.get("isError", False)))
        if isinstance(result, str):
            return text_result(result)
        return text_result(json.dumps(result, indent=2, default=str))


def text_result(text: str) -> ToolResult:
    return ToolResult(content=[{"type": "text", "text": text}])


def error_result(text: str) -> ToolResult:
    return ToolResult(content=[{"type": "text", "text": text}], is_error=True)


def json_result(payload: Any) -> ToolResult:
    return text_result(json.dumps(payload, indent=2, default=str))
