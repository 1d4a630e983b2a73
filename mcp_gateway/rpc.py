"""
JSON-RPC method dispatch for whatever transport fronts the gateway.

The HTTP/SSE layer authenticates the caller, then hands each decoded
message to GatewayRpcHandler.handle() and sends back the returned dict.

Supported methods:
    - "initialize"     -> protocol version, capabilities, server info
    - "tools/list"     -> aggregated tool catalog
    - "tools/call"     -> ToolResult (errors are results, not RPC errors)
    - "resources/list" -> resource descriptors
    - "resources/read" -> resource contents
"""

from __future__ import annotations

import logging
from typing import Any

from mcp_gateway.gateway import Gateway
from mcp_gateway.messages import JSONRPC_VERSION, ToolCall
from mcp_gateway.resources import ResourceNotFound

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"

INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class GatewayRpcHandler:
    def __init__(self, gateway: Gateway, server_name: str = "mcp-gateway", server_version: str = "0.2.0"):
        self.gateway = gateway
        self.server_name = server_name
        self.server_version = server_version

    async def handle(self, message: dict[str, Any], caller_id: str) -> dict[str, Any]:
        """Handle one JSON-RPC request and return the response message."""
        request_id = message.get("id") if isinstance(message, dict) else None
        if not isinstance(message, dict) or message.get("jsonrpc") != JSONRPC_VERSION:
            return self._error(request_id, INVALID_REQUEST, "Invalid Request")

        method = message.get("method", "")
        params = message.get("params") or {}
        logger.debug(f"Received {method} from {caller_id}")

        try:
            if method == "initialize":
                result = self._initialize()
            elif method == "tools/list":
                result = {"tools": await self.gateway.list_tools()}
            elif method == "tools/call":
                if not params.get("name"):
                    return self._error(request_id, INVALID_PARAMS, "Missing tool name")
                tool_result = await self.gateway.call_tool(ToolCall.from_params(params), caller_id)
                result = tool_result.to_dict()
            elif method == "resources/list":
                result = {"resources": await self.gateway.list_resources()}
            elif method == "resources/read":
                uri = params.get("uri")
                if not uri:
                    return self._error(request_id, INVALID_PARAMS, "Missing resource uri")
                result = {"contents": [await self.gateway.read_resource(uri)]}
            else:
                return self._error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")
        except ResourceNotFound as e:
            return self._error(request_id, INVALID_PARAMS, str(e))
        except Exception as e:
            logger.error(f"Error handling {method}: {e}", exc_info=True)
            return self._error(request_id, INTERNAL_ERROR, "Internal error")

        return {"jsonrpc": JSONRPC_VERSION, "id": request_id, "result": result}

    def _initialize(self) -> dict[str, Any]:
        return {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {"tools": {}, "resources": {}},
            "serverInfo": {"name": self.server_name, "version": self.server_version},
        }

    @staticmethod
    def _error(request_id: Any, code: int, message: str) -> dict[str, Any]:
        return {
            "jsonrpc": JSONRPC_VERSION,
            "id": request_id,
            "error": {"code": code, "message": message},
        }
