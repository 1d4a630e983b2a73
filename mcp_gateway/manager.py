"""
Upstream Manager: launches and manages one Bridge per upstream.

Usage:
    manager = UpstreamManager(settings)

    # Register upstreams (does not start them)
    for descriptor in build_descriptors(settings):
        manager.register_upstream(descriptor)

    # Start everything concurrently; any failure aborts startup
    await manager.start_all()

    # Aggregated, prefixed catalog; failing upstreams are omitted
    tools = await manager.collect_tools()

    # Stop everything
    await manager.stop_all()
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mcp_gateway.bridge import Bridge, BridgeState
from mcp_gateway.config import GatewaySettings
from mcp_gateway.registry import UpstreamDescriptor, match_upstream, validate_descriptors
from mcp_gateway.transport import Transport

logger = logging.getLogger(__name__)


class UpstreamManager:
    """
    Manages the lifecycle of upstream bridges.

    Responsibilities:
    - Build a Bridge for each registered upstream
    - Start all bridges concurrently; abort startup if any fails
    - Resolve a prefixed tool name to its upstream
    - Fan out catalog requests
    - Graceful shutdown
    """

    def __init__(self, settings: GatewaySettings | None = None):
        self.settings = settings
        self._bridges: dict[str, Bridge] = {}

    def register_upstream(
        self,
        descriptor: UpstreamDescriptor,
        transport: Transport | None = None,
    ) -> Bridge:
        """Register an upstream and build its bridge (does not start it)."""
        validate_descriptors([*self.descriptors, descriptor])

        if self.settings is not None:
            bridge = Bridge.from_settings(descriptor, self.settings, transport)
        else:
            bridge = Bridge(descriptor, transport)
        bridge.add_state_listener(self._on_state_change)
        self._bridges[descriptor.name] = bridge
        logger.info(f"Registered upstream: {descriptor.name} ({' '.join(descriptor.argv)})")
        return bridge

    def _on_state_change(self, name: str, state: BridgeState) -> None:
        if state is BridgeState.CLOSED:
            logger.warning(f"Upstream {name} is closed; its tools are unavailable")
        else:
            logger.info(f"Upstream {name}: {state.value}")

    @property
    def descriptors(self) -> list[UpstreamDescriptor]:
        return [b.descriptor for b in self._bridges.values()]

    def get_bridge(self, name: str) -> Bridge:
        bridge = self._bridges.get(name)
        if bridge is None:
            raise ValueError(f"Unknown upstream: {name}")
        return bridge

    def route(self, tool_name: str) -> Bridge | None:
        """Bridge whose prefix matches tool_name, or None for local tools."""
        descriptor = match_upstream(self.descriptors, tool_name)
        return self._bridges[descriptor.name] if descriptor else None

    async def start(self, name: str) -> None:
        await self.get_bridge(name).start()

    async def start_all(self) -> None:
        """
        Start all registered upstreams concurrently.

        Raises the first startup error after shutting every bridge down.
        """
        names = list(self._bridges)
        logger.info(f"Initializing upstreams: {names}")
        results = await asyncio.gather(
            *(self._bridges[name].start() for name in names),
            return_exceptions=True,
        )
        failures = [(n, r) for n, r in zip(names, results) if isinstance(r, BaseException)]
        if failures:
            for name, error in failures:
                logger.error(f"Failed to start {name}: {error}")
            await self.stop_all()
            raise failures[0][1]
        logger.info("All upstreams initialized")

    async def stop(self, name: str) -> None:
        await self.get_bridge(name).shutdown()

    async def stop_all(self) -> None:
        """Stop all bridges concurrently."""
        await asyncio.gather(*(b.shutdown() for b in self._bridges.values()))

    async def list_tools(self, name: str) -> list[dict[str, Any]]:
        """One upstream's catalog with names prefixed for callers."""
        bridge = self.get_bridge(name)
        tools = await bridge.list_tools()
        prefix = bridge.descriptor.prefix
        return [{**tool, "name": f"{prefix}{tool.get('name', '')}"} for tool in tools]

    async def collect_tools(self) -> list[dict[str, Any]]:
        """Concatenated catalogs of every upstream; failures are logged and skipped."""
        names = list(self._bridges)
        results = await asyncio.gather(
            *(self.list_tools(name) for name in names),
            return_exceptions=True,
        )
        all_tools: list[dict[str, Any]] = []
        for name, result in zip(names, results):
            if isinstance(result, BaseException):
                logger.warning(f"Failed to get tools from {name}: {result}")
                continue
            logger.info(f"Got {len(result)} tools from {name}")
            all_tools.extend(result)
        return all_tools

    def list_upstreams(self) -> dict[str, str]:
        """All upstreams and their bridge state."""
        return {name: b.state.value for name, b in self._bridges.items()}

    def is_running(self, name: str) -> bool:
        bridge = self._bridges.get(name)
        return bridge is not None and bridge.is_ready
