"""Async SQLAlchemy engines and session factories.

The control-plane engine is process-wide and pooled. Tenant engines are
short-lived: one per resolved handle, with a small pool, disposed by the
caller when the handle is closed.
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from shared.config import get_settings

# Tenant handles live for one saga step, so they never need a large pool
TENANT_POOL_SIZE = 2


def create_engine(database_url: str | None = None) -> AsyncEngine:
    """Create the control-plane engine."""
    return create_async_engine(
        database_url or get_settings().database_url,
        echo=False,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def create_tenant_engine(database_url: str) -> AsyncEngine:
    """Create an engine for one tenant datastore."""
    return create_async_engine(
        database_url,
        echo=False,
        pool_size=TENANT_POOL_SIZE,
        max_overflow=0,
        pool_pre_ping=False,
    )


def create_session_factory(engine: AsyncEngine | None = None) -> async_sessionmaker[AsyncSession]:
    if engine is None:
        engine = create_engine()
    return async_sessionmaker(engine, expire_on_commit=False)


# Default instances (lazy)
_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """Get or create the control-plane engine."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the control-plane session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory
