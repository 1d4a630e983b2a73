"""
Upstream registry: static descriptions of every upstream process.

Descriptors are built once at startup and never mutated. Routing relies
on prefixes being disjoint, so overlapping prefixes are rejected here.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from mcp_gateway.config import GatewaySettings, UpstreamSettings
from mcp_gateway.errors import ConfigurationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UpstreamDescriptor:
    """Immutable description of one upstream."""
    name: str
    prefix: str
    command: str
    args: tuple[str, ...] = ()
    env: Mapping[str, str] = field(default_factory=lambda: MappingProxyType({}))
    requires_delegated_token: bool = False
    token_argument: str = "access_token"

    @property
    def argv(self) -> list[str]:
        return [self.command, *self.args]

    def owns(self, tool_name: str) -> bool:
        return tool_name.startswith(self.prefix)

    def strip_prefix(self, tool_name: str) -> str:
        return tool_name[len(self.prefix):]

    @classmethod
    def from_settings(cls, upstream: UpstreamSettings) -> "UpstreamDescriptor":
        return cls(
            name=upstream.name,
            prefix=upstream.prefix,
            command=upstream.command,
            args=tuple(upstream.args),
            env=MappingProxyType(dict(upstream.env)),
            requires_delegated_token=upstream.requires_delegated_token,
            token_argument=upstream.token_argument,
        )


def default_upstreams(settings: GatewaySettings) -> list[UpstreamDescriptor]:
    """The two reference upstreams: Meta Ads and PostgreSQL."""
    meta_env = {}
    if settings.PIPEBOARD_API_TOKEN:
        meta_env["PIPEBOARD_API_TOKEN"] = settings.PIPEBOARD_API_TOKEN

    return [
        UpstreamDescriptor(
            name="meta-ads",
            prefix="ads.",
            command=settings.META_ADS_MCP_COMMAND,
            args=tuple(shlex.split(settings.META_ADS_MCP_ARGS)),
            env=MappingProxyType(meta_env),
            requires_delegated_token=True,
        ),
        UpstreamDescriptor(
            name="postgres",
            prefix="pg.",
            command=settings.POSTGRES_MCP_COMMAND,
            args=("--access-mode=unrestricted",),
            env=MappingProxyType({
                "DATABASE_URI": settings.POSTGRES_MCP_DATABASE_URI or settings.sync_database_url,
            }),
        ),
    ]


def validate_descriptors(descriptors: list[UpstreamDescriptor]) -> None:
    """
    Reject configurations routing cannot handle unambiguously.

    Raises:
        ConfigurationError: empty name/prefix/command, duplicate names,
            or two prefixes where one starts with the other.
    """
    seen_names: set[str] = set()
    for d in descriptors:
        if not d.name:
            raise ConfigurationError("Upstream name must not be empty")
        if not d.prefix:
            raise ConfigurationError(f"Upstream {d.name!r} has an empty prefix")
        if not d.command:
            raise ConfigurationError(f"Upstream {d.name!r} has no command")
        if d.name in seen_names:
            raise ConfigurationError(f"Duplicate upstream name: {d.name!r}")
        seen_names.add(d.name)

    for i, a in enumerate(descriptors):
        for b in descriptors[i + 1:]:
            if a.prefix.startswith(b.prefix) or b.prefix.startswith(a.prefix):
                raise ConfigurationError(
                    f"Upstreams {a.name!r} and {b.name!r} have overlapping prefixes "
                    f"({a.prefix!r}, {b.prefix!r})"
                )


def build_descriptors(settings: GatewaySettings) -> list[UpstreamDescriptor]:
    """Build and validate the upstream set from settings."""
    if settings.GATEWAY_UPSTREAMS is not None:
        descriptors = [UpstreamDescriptor.from_settings(u) for u in settings.GATEWAY_UPSTREAMS]
    else:
        descriptors = default_upstreams(settings)

    validate_descriptors(descriptors)
    logger.info(f"Configured upstreams: {[(d.name, d.prefix) for d in descriptors]}")
    return descriptors


def match_upstream(
    descriptors: list[UpstreamDescriptor], tool_name: str
) -> UpstreamDescriptor | None:
    """Return the upstream whose prefix matches tool_name (longest wins)."""
    matches = [d for d in descriptors if d.owns(tool_name)]
    if not matches:
        return None
    return max(matches, key=lambda d: len(d.prefix))
