"""
MCP Gateway — one tool API in front of several stdio upstreams.

Architecture:
    ┌──────────┐  call_tool   ┌─────────┐  stdio JSON-RPC  ┌────────────┐
    │  Caller  │ ──────────── │ Gateway │ ──── Bridge ──── │  Upstream  │
    │(HTTP/SSE)│              │         │ ──── Bridge ──── │(subprocess)│
    └──────────┘              └─────────┘                  └────────────┘
                                   │
                         Redis (rate limit, cache)
                         PostgreSQL (company profiles)

Each upstream is a child process speaking newline-delimited JSON-RPC 2.0
over stdin/stdout. A Bridge per upstream handles readiness, queuing,
correlation, timeouts and shutdown. The Gateway routes tool calls by name
prefix, rate-limits callers and serves the company profile tools itself.
"""

from mcp_gateway.bridge import Bridge, BridgeState
from mcp_gateway.config import GatewaySettings
from mcp_gateway.gateway import Gateway
from mcp_gateway.manager import UpstreamManager
from mcp_gateway.messages import ToolCall, ToolResult
from mcp_gateway.registry import UpstreamDescriptor, build_descriptors


# LangChain adapter requires langchain; lazy import keeps upstreams standalone
def build_langchain_tools(*args, **kwargs):
    from mcp_gateway.langchain_tools import build_langchain_tools as _impl
    return _impl(*args, **kwargs)


__all__ = [
    "Bridge",
    "BridgeState",
    "Gateway",
    "GatewaySettings",
    "ToolCall",
    "ToolResult",
    "UpstreamDescriptor",
    "UpstreamManager",
    "build_descriptors",
    "build_langchain_tools",
]
