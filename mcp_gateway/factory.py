"""
Composition root: builds a Gateway from one GatewaySettings value.

Every component receives its configuration explicitly; nothing reads
global state after this point.
"""

from __future__ import annotations

import logging

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import create_async_engine

from mcp_gateway.config import GatewaySettings
from mcp_gateway.credentials import CredentialProvider, RedisCredentialProvider
from mcp_gateway.gateway import Gateway
from mcp_gateway.local_tools import profile_tools
from mcp_gateway.manager import UpstreamManager
from mcp_gateway.profiles import CompanyProfileStore
from mcp_gateway.rate_limit import RateLimiter
from mcp_gateway.registry import UpstreamDescriptor, build_descriptors
from mcp_gateway.repository import ProfileRepository
from mcp_gateway.resources import ResourceProvider

logger = logging.getLogger(__name__)


def create_gateway(
    settings: GatewaySettings,
    *,
    upstreams: list[UpstreamDescriptor] | None = None,
    credentials: CredentialProvider | None = None,
    resources: ResourceProvider | None = None,
) -> Gateway:
    """
    Wire Redis, PostgreSQL, bridges and local tools into a Gateway.

    Nothing connects or spawns until Gateway.initialize() is awaited.

    Args:
        settings: The gateway configuration.
        upstreams: Override the upstream set (defaults to build_descriptors(settings)).
        credentials: Credential collaborator (defaults to Redis-backed).
        resources: Resource collaborator (defaults to none).
    """
    redis = aioredis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
    )
    engine = create_async_engine(settings.DATABASE_URL, pool_size=20, pool_pre_ping=True)
    repository = ProfileRepository(engine)
    store = CompanyProfileStore(repository, redis, ttl_seconds=settings.PROFILE_CACHE_TTL_S)

    manager = UpstreamManager(settings)
    for descriptor in upstreams if upstreams is not None else build_descriptors(settings):
        manager.register_upstream(descriptor)

    if credentials is None:
        credentials = RedisCredentialProvider(redis, api_keys=settings.GATEWAY_API_KEYS)

    async def close_redis() -> None:
        await redis.aclose()

    async def dispose_engine() -> None:
        await engine.dispose()

    return Gateway(
        manager=manager,
        rate_limiter=RateLimiter(
            redis,
            window_ms=settings.RATE_LIMIT_WINDOW_MS,
            max_requests=settings.RATE_LIMIT_MAX_REQUESTS,
        ),
        credentials=credentials,
        local_tools=profile_tools(
            store,
            default_limit=settings.PROFILE_LIST_DEFAULT_LIMIT,
            max_limit=settings.PROFILE_LIST_MAX_LIMIT,
        ),
        resources=resources,
        startup_hooks=[repository.create_schema],
        shutdown_hooks=[close_redis, dispose_engine],
    )
