"""
Error taxonomy for the gateway.

Startup errors (ConfigurationError, SpawnFailure, ReadinessTimeout) are
allowed to abort initialization. Everything else is caught at the
Gateway.call_tool boundary and turned into an error-flagged ToolResult.
"""

from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    """Base class for every error raised by mcp_gateway."""


class ConfigurationError(GatewayError):
    """Invalid upstream or settings configuration."""


class SpawnFailure(GatewayError):
    """The upstream process could not be launched."""


class ReadinessTimeout(GatewayError):
    """The upstream did not answer the readiness probe in time."""


class MalformedFrame(GatewayError):
    """A line from an upstream was not a JSON object."""


class RequestTimeout(GatewayError):
    """No response arrived for a request before its deadline."""


class BridgeClosedError(GatewayError):
    """The bridge is closed (process exited or shutdown requested)."""

    def __init__(self, reason: str = ""):
        message = "bridge closed"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.reason = reason


class UpstreamError(GatewayError):
    """Error payload reported by the upstream itself."""

    def __init__(self, code: int | None, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data

    @classmethod
    def from_payload(cls, payload: Any) -> "UpstreamError":
        if isinstance(payload, dict):
            return cls(
                code=payload.get("code"),
                message=str(payload.get("message", "Unknown upstream error")),
                data=payload.get("data"),
            )
        return cls(code=None, message=str(payload))


class StoreUnavailable(GatewayError):
    """The durable profile store could not be reached or failed."""
