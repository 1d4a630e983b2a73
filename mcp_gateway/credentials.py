"""
Credential collaborator interfaces.

Token issuance and verification internals live outside the gateway; the
gateway only needs a caller identity and, for some upstreams, a
delegated access token.
"""

from __future__ import annotations

import logging
from typing import Mapping, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    async def verify(self, token: str) -> str | None:
        """Resolve a bearer token to a caller id, or None if invalid."""
        ...

    async def get_delegated_token(self, caller_id: str, upstream_name: str) -> str | None:
        """Access token the caller delegated for an upstream, or None."""
        ...


class StaticCredentialProvider:
    """In-memory credentials, for local runs and tests."""

    def __init__(
        self,
        api_keys: Mapping[str, str] | None = None,
        delegated_tokens: Mapping[tuple[str, str], str] | None = None,
    ):
        self.api_keys = dict(api_keys or {})
        self.delegated_tokens = dict(delegated_tokens or {})

    async def verify(self, token: str) -> str | None:
        return self.api_keys.get(token)

    async def get_delegated_token(self, caller_id: str, upstream_name: str) -> str | None:
        return self.delegated_tokens.get((caller_id, upstream_name))


class RedisCredentialProvider:
    """
    Credentials shared with the auth service through Redis.

    verify() rejects blacklisted tokens (blacklist:<token>) and maps the
    rest through a static API key table. Delegated tokens are read from
    per-provider keys, first match wins (e.g. facebook:<caller>, then
    pipeboard:<caller>).
    """

    DEFAULT_TOKEN_KEYS = {"meta-ads": ("facebook", "pipeboard")}

    def __init__(
        self,
        redis: aioredis.Redis,
        api_keys: Mapping[str, str] | None = None,
        token_keys: Mapping[str, tuple[str, ...]] | None = None,
    ):
        self.redis = redis
        self.api_keys = dict(api_keys or {})
        self.token_keys = dict(token_keys if token_keys is not None else self.DEFAULT_TOKEN_KEYS)

    async def verify(self, token: str) -> str | None:
        try:
            if await self.redis.get(f"blacklist:{token}"):
                return None
        except RedisError as e:
            logger.warning(f"Token blacklist check failed: {e}")
        return self.api_keys.get(token)

    async def get_delegated_token(self, caller_id: str, upstream_name: str) -> str | None:
        for provider in self.token_keys.get(upstream_name, ()):
            try:
                token = await self.redis.get(f"{provider}:{caller_id}")
            except RedisError as e:
                logger.error(f"Error getting {upstream_name} token for {caller_id}: {e}")
                return None
            if token:
                return token
        return None
