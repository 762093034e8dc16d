"""Shared test fixtures for the announcement engine test suite.

Provides mock database sessions, an in-memory Redis double, settings and
factory helpers so module tests can run without Docker infrastructure.
"""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.announcements.queue import TriggerQueue
from shared.config import Settings
from shared.models.announcement import Announcement


# ---------------------------------------------------------------------------
# Database mocks
# ---------------------------------------------------------------------------


@pytest.fixture
def mock_db_session():
    """Mock async SQLAlchemy session.

    Supports the common patterns used in store code:
        session.execute(stmt) -> result
        session.get(Model, id, with_for_update=...)
        session.add(obj) / session.add_all(objs)
        session.flush() / session.commit() / session.rollback()
    """
    session = AsyncMock()
    # Default: execute returns a result with no rows
    default_result = MagicMock()
    default_result.scalar_one_or_none.return_value = None
    default_result.scalars.return_value.all.return_value = []
    session.execute = AsyncMock(return_value=default_result)
    session.get = AsyncMock(return_value=None)
    session.add = MagicMock()
    session.add_all = MagicMock()
    return session


@pytest.fixture
def mock_session_factory(mock_db_session):
    """Mock async session factory compatible with ``async with factory() as session:``."""

    @asynccontextmanager
    async def _session_ctx():
        yield mock_db_session

    factory = MagicMock(side_effect=lambda: _session_ctx())
    return factory


# ---------------------------------------------------------------------------
# Redis double
# ---------------------------------------------------------------------------


class _FakePipeline:
    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._ops: list[tuple] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        self._ops.clear()
        return False

    def __getattr__(self, name):
        def _queue(*args, **kwargs):
            self._ops.append((name, args, kwargs))
            return self

        return _queue

    async def execute(self):
        results = []
        for name, args, kwargs in self._ops:
            results.append(await getattr(self._redis, name)(*args, **kwargs))
        self._ops.clear()
        return results


class FakeRedis:
    """In-memory subset of redis.asyncio used by the trigger queue."""

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.fail_next: Exception | None = None

    def _maybe_fail(self):
        if self.fail_next is not None:
            error, self.fail_next = self.fail_next, None
            raise error

    def pipeline(self, transaction: bool = True):
        return _FakePipeline(self)

    async def hset(self, name, key, value):
        self._maybe_fail()
        h = self.hashes.setdefault(name, {})
        created = key not in h
        h[key] = value
        return int(created)

    async def hget(self, name, key):
        return self.hashes.get(name, {}).get(key)

    async def hgetall(self, name):
        return dict(self.hashes.get(name, {}))

    async def hdel(self, name, *keys):
        h = self.hashes.get(name, {})
        return sum(1 for k in keys if h.pop(k, None) is not None)

    async def zadd(self, name, mapping):
        self._maybe_fail()
        z = self.zsets.setdefault(name, {})
        added = sum(1 for k in mapping if k not in z)
        z.update(mapping)
        return added

    async def zrem(self, name, *members):
        z = self.zsets.get(name, {})
        return sum(1 for m in members if z.pop(m, None) is not None)

    async def zrangebyscore(self, name, min, max, start=None, num=None):
        lo = float(min)
        hi = float(max)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(name, {}).items()
            if lo <= score <= hi
        )
        result = [m for _, m in members]
        if start is not None and num is not None:
            result = result[start : start + num]
        return result

    async def aclose(self):
        pass


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def trigger_queue(fake_redis):
    return TriggerQueue(fake_redis, prefix="test")


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    """Settings with zero backoff so retry paths run instantly."""
    return Settings(
        discord_token="test-token",
        discord_api_base="https://discord.test/api/v10",
        dispatch_max_attempts=3,
        dispatch_backoff_initial_seconds=0,
        dispatch_backoff_max_seconds=0,
        dispatch_max_concurrency=4,
        saga_step_max_attempts=2,
        safety_channel_message="Verify the bot ID before acting on DMs.",
        safety_notice_template="Sent by {community}. Verify: {link}",
    )


# ---------------------------------------------------------------------------
# Model factories
# ---------------------------------------------------------------------------


def public_target(platform_id: uuid.UUID | None = None, channel_ids=("c1", "c2"), template="Hello!"):
    return {
        "platform_id": str(platform_id or uuid.uuid4()),
        "template": template,
        "delivery": {"kind": "public", "channel_ids": list(channel_ids)},
    }


def private_target(
    platform_id: uuid.UUID | None = None,
    user_ids=("u1", "u2"),
    role_ids=(),
    engagement_categories=(),
    safety_message_channel_id: str | None = None,
    template="Hi {{username}}",
):
    return {
        "platform_id": str(platform_id or uuid.uuid4()),
        "template": template,
        "delivery": {
            "kind": "private",
            "user_ids": list(user_ids),
            "role_ids": list(role_ids),
            "engagement_categories": list(engagement_categories),
            "safety_message_channel_id": safety_message_channel_id,
        },
    }


@pytest.fixture
def make_announcement():
    """Factory for creating Announcement instances."""

    def _make(
        announcement_id: uuid.UUID | None = None,
        title: str = "Community update",
        draft: bool = False,
        scheduled_at: datetime | None = None,
        job_id: str | None = None,
        data: list[dict] | None = None,
    ) -> Announcement:
        now = datetime.now(timezone.utc)
        return Announcement(
            id=announcement_id or uuid.uuid4(),
            title=title,
            community_id=uuid.uuid4(),
            draft=draft,
            scheduled_at=scheduled_at if scheduled_at is not None else now + timedelta(hours=1),
            job_id=job_id,
            data=data if data is not None else [public_target()],
            created_at=now,
            updated_at=now,
        )

    return _make


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def make_execute_side_effect(*results):
    """Create an execute side_effect that returns different results per call.

    Usage::

        session.execute = AsyncMock(
            side_effect=make_execute_side_effect(result1, result2)
        )

    Each result should be a MagicMock with the appropriate return values
    (e.g. scalar_one_or_none, scalars().all()).
    """
    call_idx = 0

    async def _side_effect(stmt, *args, **kwargs):
        nonlocal call_idx
        if call_idx < len(results):
            r = results[call_idx]
            call_idx += 1
            return r
        # Fallback: return empty result
        fallback = MagicMock()
        fallback.scalar_one_or_none.return_value = None
        fallback.scalars.return_value.all.return_value = []
        return fallback

    return _side_effect


def scalars_result(rows):
    result = MagicMock()
    result.scalars.return_value.all.return_value = list(rows)
    result.scalar_one_or_none.return_value = rows[0] if rows else None
    return result
