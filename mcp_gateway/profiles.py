"""
Company profile store: Redis read-through cache over the durable repository.

Read:   cache -> repository (then populate cache) -> synthesized default
Write:  repository first, then refresh cache
Delete: repository, then evict cache if a row existed

The cache is never authoritative. Cache failures degrade to warnings;
repository failures propagate as StoreUnavailable.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from mcp_gateway.repository import CompanyProfile, ProfileRepositoryProtocol

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_DATABASE = "database"
SOURCE_DEFAULT = "default"

DEFAULT_CACHE_TTL = 3600


def default_profile_data() -> dict[str, Any]:
    return {
        "name": "New Company",
        "industry": "Not specified",
        "description": "Company profile not yet configured",
        "settings": {
            "timezone": "UTC",
            "currency": "USD",
            "language": "en",
        },
    }


@dataclass
class ProfileLookup:
    profile: CompanyProfile
    source: str

    def to_dict(self) -> dict[str, Any]:
        """Flattened view: companyId, the profile's own keys, a timestamp, source.

        A synthesized default has never been stored, so it carries createdAt
        (the moment of synthesis) instead of updatedAt.
        """
        timestamp_key = "createdAt" if self.source == SOURCE_DEFAULT else "updatedAt"
        return {
            "companyId": self.profile.company_id,
            **self.profile.json_data,
            timestamp_key: self.profile.updated_at.isoformat(),
            "source": self.source,
        }


@dataclass
class ProfileWrite:
    profile: CompanyProfile
    warning: str | None = None


@dataclass
class ProfileDelete:
    existed: bool
    warning: str | None = None


class CompanyProfileStore:
    """Cache-then-store access to company profiles."""

    def __init__(
        self,
        repository: ProfileRepositoryProtocol,
        cache: aioredis.Redis,
        ttl_seconds: int = DEFAULT_CACHE_TTL,
    ):
        self.repository = repository
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def cache_key(company_id: str) -> str:
        return f"company:{company_id}"

    async def get_profile(self, company_id: str) -> ProfileLookup:
        cached = await self._cache_get(company_id)
        if cached is not None:
            return ProfileLookup(cached, SOURCE_CACHE)

        profile = await self.repository.get(company_id)
        if profile is not None:
            warning = await self._cache_put(profile)
            if warning:
                logger.warning(warning)
            return ProfileLookup(profile, SOURCE_DATABASE)

        logger.debug(f"No profile for {company_id}, returning default")
        return ProfileLookup(
            CompanyProfile(company_id=company_id, json_data=default_profile_data()),
            SOURCE_DEFAULT,
        )

    async def update_profile(self, company_id: str, profile_data: dict[str, Any]) -> ProfileWrite:
        profile = CompanyProfile(
            company_id=company_id,
            json_data=dict(profile_data),
            updated_at=datetime.now(timezone.utc),
        )
        await self.repository.upsert(profile)
        warning = await self._cache_put(profile)
        if warning:
            logger.warning(warning)
        logger.info(f"Updated company profile for: {company_id}")
        return ProfileWrite(profile, warning)

    async def delete_profile(self, company_id: str) -> ProfileDelete:
        existed = await self.repository.delete(company_id)
        warning = None
        if existed:
            try:
                await self.cache.delete(self.cache_key(company_id))
            except RedisError as e:
                warning = f"Profile deleted but cache eviction failed: {e}"
                logger.warning(warning)
            logger.info(f"Deleted company profile for: {company_id}")
        return ProfileDelete(existed, warning)

    async def list_profiles(self, limit: int, offset: int) -> list[CompanyProfile]:
        return await self.repository.list_profiles(limit, offset)

    async def _cache_get(self, company_id: str) -> CompanyProfile | None:
        try:
            raw = await self.cache.get(self.cache_key(company_id))
        except RedisError as e:
            logger.warning(f"Profile cache read failed for {company_id}, using store: {e}")
            return None
        if raw is None:
            return None
        try:
            return CompanyProfile.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring unreadable cache entry for {company_id}: {e}")
            return None

    async def _cache_put(self, profile: CompanyProfile) -> str | None:
        """Write a profile to the cache. Returns a warning message on failure."""
        try:
            await self.cache.setex(
                self.cache_key(profile.company_id),
                self.ttl_seconds,
                json.dumps(profile.to_dict()),
            )
        except RedisError as e:
            return f"Profile cache update failed for {profile.company_id}: {e}"
        return None
