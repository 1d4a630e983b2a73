"""
Durable company profile storage (PostgreSQL via SQLAlchemy asyncio).

The repository is the authoritative copy of every profile. Any failure
talking to the database is raised as StoreUnavailable.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Protocol

from sqlalchemy import delete, select
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mcp_gateway.errors import StoreUnavailable
from mcp_gateway.models_db import Base, CompanyProfileRecord

logger = logging.getLogger(__name__)


@dataclass
class CompanyProfile:
    company_id: str
    json_data: dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "companyId": self.company_id,
            "jsonData": self.json_data,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompanyProfile":
        return cls(
            company_id=str(data["companyId"]),
            json_data=dict(data.get("jsonData") or {}),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
        )

    @classmethod
    def from_record(cls, record: CompanyProfileRecord) -> "CompanyProfile":
        return cls(
            company_id=record.company_id,
            json_data=dict(record.json_data or {}),
            updated_at=record.updated_at,
        )


class ProfileRepositoryProtocol(Protocol):
    """Durable profile store operations."""

    async def get(self, company_id: str) -> CompanyProfile | None:
        ...

    async def upsert(self, profile: CompanyProfile) -> None:
        ...

    async def delete(self, company_id: str) -> bool:
        """Returns True if a row was removed."""
        ...

    async def list_profiles(self, limit: int, offset: int) -> list[CompanyProfile]:
        """Most recently updated first."""
        ...


def upsert_statement(profile: CompanyProfile):
    """INSERT ... ON CONFLICT (company_id) DO UPDATE for one profile."""
    stmt = insert(CompanyProfileRecord).values(
        company_id=profile.company_id,
        json_data=profile.json_data,
        updated_at=profile.updated_at,
    )
    return stmt.on_conflict_do_update(
        index_elements=[CompanyProfileRecord.company_id],
        set_={
            "json_data": stmt.excluded.json_data,
            "updated_at": stmt.excluded.updated_at,
        },
    )


def list_statement(limit: int, offset: int):
    return (
        select(CompanyProfileRecord)
        .order_by(CompanyProfileRecord.updated_at.desc())
        .limit(limit)
        .offset(offset)
    )


class ProfileRepository(ProfileRepositoryProtocol):
    """PostgreSQL-backed implementation."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessionmaker = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Yield a session; commit on success, rollback and wrap errors on failure."""
        async with self._sessionmaker() as session:
            try:
                yield session
                await session.commit()
            except (SQLAlchemyError, OSError) as e:
                await session.rollback()
                logger.error(f"Profile store {operation} failed: {e}")
                raise StoreUnavailable(f"Profile store {operation} failed: {e}") from e

    async def create_schema(self) -> None:
        """Create the company_profiles table and index if missing."""
        try:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
        except (SQLAlchemyError, OSError) as e:
            raise StoreUnavailable(f"Failed to create company profiles table: {e}") from e
        logger.info("Company profiles table ready")

    async def get(self, company_id: str) -> CompanyProfile | None:
        async with self._session("get") as session:
            result = await session.execute(
                select(CompanyProfileRecord).where(CompanyProfileRecord.company_id == company_id)
            )
            record = result.scalar_one_or_none()
            return CompanyProfile.from_record(record) if record else None

    async def upsert(self, profile: CompanyProfile) -> None:
        async with self._session("upsert") as session:
            await session.execute(upsert_statement(profile))
        logger.info(f"Saved company profile for: {profile.company_id}")

    async def delete(self, company_id: str) -> bool:
        async with self._session("delete") as session:
            result = await session.execute(
                delete(CompanyProfileRecord).where(CompanyProfileRecord.company_id == company_id)
            )
            return (result.rowcount or 0) > 0

    async def list_profiles(self, limit: int, offset: int) -> list[CompanyProfile]:
        async with self._session("list") as session:
            result = await session.execute(list_statement(limit, offset))
            return [CompanyProfile.from_record(r) for r in result.scalars().all()]
