"""Tenant connection resolver - per-platform datastore handles.

Every platform (Discord guild) has its own database. Handles are opened per
call and always disposed on exit, including error paths; nothing is cached
between calls, so one tenant's slow connection never holds up another.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass

import structlog
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from modules.announcements.errors import TenantUnavailable
from shared.config import Settings
from shared.database import create_tenant_engine
from shared.models.platform import Platform

logger = structlog.get_logger()


@dataclass(frozen=True)
class PlatformTenant:
    """Identity of a connected platform's tenant."""

    platform_id: uuid.UUID
    tenant_id: str  # external id, e.g. the Discord guild id
    name: str | None = None


@dataclass
class TenantHandle:
    """Open connection scope onto one tenant datastore."""

    tenant_id: str
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]


class TenantConnectionResolver:
    """Resolves platforms to tenants and opens tenant datastore handles."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings,
        engine_factory: Callable[[str], AsyncEngine] | None = None,
    ):
        self.session_factory = session_factory
        self.settings = settings
        self._engine_factory = engine_factory or create_tenant_engine

    async def platform_tenant(self, platform_id: uuid.UUID | str) -> PlatformTenant:
        """Look up a connected platform and return its tenant identity."""
        pid = platform_id if isinstance(platform_id, uuid.UUID) else uuid.UUID(str(platform_id))
        async with self.session_factory() as session:
            result = await session.execute(
                select(Platform).where(
                    Platform.id == pid,
                    Platform.disconnected_at.is_(None),
                )
            )
            platform = result.scalar_one_or_none()

        if platform is None:
            raise TenantUnavailable(f"Platform {pid} is not connected")
        metadata = platform.platform_metadata or {}
        tenant_id = metadata.get("id")
        if not tenant_id:
            raise TenantUnavailable(f"Platform {pid} has no tenant metadata")
        return PlatformTenant(platform_id=pid, tenant_id=str(tenant_id), name=metadata.get("name"))

    def tenant_url(self, tenant_id: str) -> str:
        return self.settings.tenant_database_url_template.format(tenant_id=tenant_id)

    @asynccontextmanager
    async def resolve(self, tenant_id: str) -> AsyncIterator[TenantHandle]:
        """Open a handle onto ``tenant_id``'s datastore for the duration of the block.

        The connect timeout covers both acquiring a connection and the
        ``SELECT 1`` round trip.
        """
        engine = self._engine_factory(self.tenant_url(tenant_id))

        async def _check():
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        try:
            try:
                await asyncio.wait_for(
                    _check(), timeout=self.settings.tenant_connect_timeout_seconds
                )
            except (SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
                logger.warning("tenant_unreachable", tenant_id=tenant_id, error=str(e))
                raise TenantUnavailable(f"Tenant {tenant_id} datastore unreachable: {e}") from e

            logger.debug("tenant_handle_opened", tenant_id=tenant_id)
            yield TenantHandle(
                tenant_id=tenant_id,
                engine=engine,
                session_factory=async_sessionmaker(engine, expire_on_commit=False),
            )
        finally:
            await engine.dispose()
            logger.debug("tenant_handle_closed", tenant_id=tenant_id)
