"""
Expose gateway tools as LangChain tools.

Every tool in the aggregated catalog (upstream and gateway-local) becomes
a StructuredTool whose coroutine goes through Gateway.call_tool, so rate
limiting, routing and token injection apply to agents too.

Usage:
    from mcp_gateway.langchain_tools import build_langchain_tools

    tools = await build_langchain_tools(gateway, caller_id="agent-1")
    agent = create_agent(model, tools)
"""

from __future__ import annotations

from typing import Any

from langchain_core.tools import StructuredTool

from mcp_gateway.gateway import Gateway
from mcp_gateway.messages import ToolCall


def gateway_to_langchain_tool(
    gateway: Gateway,
    tool_schema: dict[str, Any],
    caller_id: str,
    description_override: str | None = None,
) -> StructuredTool:
    """
    Create a LangChain StructuredTool that proxies one gateway tool.

    Args:
        gateway: The initialized Gateway
        tool_schema: Descriptor from Gateway.list_tools()
        caller_id: Identity the calls are rate-limited and authorized as
        description_override: Optional override for the tool description

    Returns:
        An async-only StructuredTool returning the result text.
    """
    tool_name = tool_schema["name"]
    description = description_override or tool_schema.get("description") or f"Gateway tool: {tool_name}"

    async def _call_gateway(**kwargs: Any) -> str:
        """Proxy call to the gateway."""
        result = await gateway.call_tool(ToolCall(tool_name, kwargs), caller_id)
        if result.is_error:
            return f"Error calling {tool_name}: {result.text}"
        return result.text

    return StructuredTool.from_function(
        coroutine=_call_gateway,
        name=tool_name,
        description=description,
        args_schema=tool_schema.get("inputSchema") or {"type": "object", "properties": {}},
    )


async def build_langchain_tools(
    gateway: Gateway,
    caller_id: str,
    descriptions: dict[str, str] | None = None,
) -> list[StructuredTool]:
    """
    Discover every gateway tool and wrap it for LangChain.

    Args:
        gateway: The initialized Gateway
        caller_id: Identity every wrapped call runs as
        descriptions: Optional {tool_name: description} overrides

    Returns:
        One StructuredTool per tool in the catalog.
    """
    descriptions = descriptions or {}
    return [
        gateway_to_langchain_tool(gateway, schema, caller_id, descriptions.get(schema["name"]))
        for schema in await gateway.list_tools()
        if schema.get("name")
    ]
