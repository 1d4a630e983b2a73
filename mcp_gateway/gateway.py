"""
Gateway: the single tool-invocation API in front of every upstream.

    gateway = Gateway(manager, rate_limiter, credentials, local_tools)
    await gateway.initialize()
    tools = await gateway.list_tools()
    result = await gateway.call_tool(ToolCall("pg.query", {...}), caller_id="u1")

call_tool never raises. Rate limiting, authentication, routing, upstream
and store failures all come back as ToolResult(is_error=True).
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from mcp_gateway.bridge import Bridge
from mcp_gateway.credentials import CredentialProvider
from mcp_gateway.errors import BridgeClosedError, RequestTimeout, UpstreamError
from mcp_gateway.local_tools import LocalTool
from mcp_gateway.manager import UpstreamManager
from mcp_gateway.messages import ToolCall, ToolResult, error_result, text_result
from mcp_gateway.rate_limit import RateLimiter
from mcp_gateway.resources import ResourceNotFound, ResourceProvider

logger = logging.getLogger(__name__)

LifecycleHook = Callable[[], Awaitable[None]]


class Gateway:
    """Routes tool calls to upstream bridges or gateway-local tools."""

    def __init__(
        self,
        manager: UpstreamManager,
        rate_limiter: RateLimiter,
        credentials: CredentialProvider,
        local_tools: list[LocalTool] | None = None,
        resources: ResourceProvider | None = None,
        startup_hooks: list[LifecycleHook] | None = None,
        shutdown_hooks: list[LifecycleHook] | None = None,
    ):
        self.manager = manager
        self.rate_limiter = rate_limiter
        self.credentials = credentials
        self.resources = resources
        self._local_tools = {tool.name: tool for tool in local_tools or []}
        self._startup_hooks = list(startup_hooks or [])
        self._shutdown_hooks = list(shutdown_hooks or [])

        clashes = [name for name in self._local_tools if manager.route(name) is not None]
        if clashes:
            raise ValueError(f"Local tools shadowed by upstream prefixes: {clashes}")

    async def initialize(self) -> None:
        """Start every upstream. Startup errors propagate to the caller."""
        logger.info("Initializing gateway")
        for hook in self._startup_hooks:
            await hook()
        await self.manager.start_all()
        logger.info("Gateway initialized")

    async def shutdown(self) -> None:
        logger.info("Shutting down gateway")
        await self.manager.stop_all()
        for hook in self._shutdown_hooks:
            try:
                await hook()
            except Exception as e:
                logger.error(f"Error during gateway shutdown: {e}", exc_info=True)
        logger.info("Gateway shut down")

    # ── Tools ─────────────────────────────────────────────

    async def list_tools(self) -> list[dict[str, Any]]:
        """Union of all upstream catalogs plus gateway-local tools."""
        all_tools = await self.manager.collect_tools()
        all_tools.extend(tool.get_schema() for tool in self._local_tools.values())
        logger.info(f"Total tools available: {len(all_tools)}")
        return all_tools

    async def call_tool(self, call: ToolCall, caller_id: str) -> ToolResult:
        try:
            decision = await self.rate_limiter.check(caller_id)
            if not decision.allowed:
                return error_result(
                    f"Rate limit exceeded. Try again in {decision.retry_after} seconds."
                )

            logger.info(f"Calling tool: {call.name} for caller: {caller_id}")
            bridge = self.manager.route(call.name)
            if bridge is not None:
                return await self._call_upstream(bridge, call, caller_id)
            return await self._call_local(call)
        except Exception as e:
            logger.error(f"Error calling tool {call.name}: {e}", exc_info=True)
            return error_result(f"Error calling tool: {e}")

    async def _call_upstream(self, bridge: Bridge, call: ToolCall, caller_id: str) -> ToolResult:
        descriptor = bridge.descriptor
        tool_name = descriptor.strip_prefix(call.name)
        if not tool_name:
            return error_result(f"Unknown tool: {call.name}")

        arguments = dict(call.arguments)
        if descriptor.requires_delegated_token and not arguments.get(descriptor.token_argument):
            token = await self._delegated_token(caller_id, descriptor.name)
            if not token:
                return error_result(
                    f"{descriptor.name} authentication required. Please authenticate first."
                )
            arguments[descriptor.token_argument] = token

        try:
            result = await bridge.call_tool(tool_name, arguments)
        except UpstreamError as e:
            return error_result(f"{descriptor.name} error: {e.message}")
        except RequestTimeout as e:
            return error_result(f"Error calling {descriptor.name} tool: {e}")
        except BridgeClosedError as e:
            return error_result(f"{descriptor.name} is unavailable: {e}")

        if result is None:
            return text_result(f"No result from {descriptor.name}")
        return ToolResult.from_upstream(result)

    async def _delegated_token(self, caller_id: str, upstream_name: str) -> str | None:
        try:
            return await self.credentials.get_delegated_token(caller_id, upstream_name)
        except Exception as e:
            logger.error(f"Error getting {upstream_name} token for {caller_id}: {e}")
            return None

    async def _call_local(self, call: ToolCall) -> ToolResult:
        tool = self._local_tools.get(call.name)
        if tool is None:
            return error_result(f"Unknown tool: {call.name}")
        return await tool.handle(call.arguments)

    # ── Resources ─────────────────────────────────────────

    async def list_resources(self) -> list[dict[str, Any]]:
        if self.resources is None:
            return []
        return await self.resources.list_resources()

    async def read_resource(self, uri: str) -> dict[str, Any]:
        if self.resources is None:
            raise ResourceNotFound(f"Resource not found: {uri}")
        return await self.resources.read_resource(uri)
