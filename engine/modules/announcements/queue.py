"""Durable trigger queue backed by Redis.

Layout under the configured prefix:

- ``<prefix>:schedule`` - sorted set, member = job id, score = fire time (epoch)
- ``<prefix>:jobs``     - hash, job id -> JSON payload

A job is claimed by removing it from the sorted set; ``ZREM`` is atomic, so
exactly one of a competing worker or a revocation wins, and a revoked job can
never fire.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone

import redis.asyncio as aioredis
import structlog

logger = structlog.get_logger()


@dataclass(frozen=True)
class TriggerJob:
    job_id: str
    announcement_id: str
    fire_at: datetime


class TriggerQueue:
    """Register, revoke and claim time-based announcement triggers."""

    def __init__(self, redis: aioredis.Redis, prefix: str = "announcements"):
        self.redis = redis
        self.schedule_key = f"{prefix}:schedule"
        self.jobs_key = f"{prefix}:jobs"

    async def add(
        self,
        announcement_id: uuid.UUID | str,
        fire_at: datetime,
        *,
        job_id: str | None = None,
    ) -> str:
        """Register a trigger; pass ``job_id`` to restore a previously revoked one."""
        job_id = job_id or uuid.uuid4().hex
        if fire_at.tzinfo is None:
            fire_at = fire_at.replace(tzinfo=timezone.utc)
        payload = json.dumps(
            {"announcement_id": str(announcement_id), "fire_at": fire_at.isoformat()}
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self.jobs_key, job_id, payload)
            pipe.zadd(self.schedule_key, {job_id: fire_at.timestamp()})
            await pipe.execute()

        logger.info(
            "trigger_registered",
            job_id=job_id,
            announcement_id=str(announcement_id),
            fire_at=fire_at.isoformat(),
        )
        return job_id

    async def remove(self, job_id: str) -> bool:
        """Revoke a trigger. Returns False if it had already fired or never existed."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self.schedule_key, job_id)
            pipe.hdel(self.jobs_key, job_id)
            results = await pipe.execute()

        removed = bool(results[0])
        logger.info("trigger_revoked", job_id=job_id, removed=removed)
        return removed

    async def get(self, job_id: str) -> TriggerJob | None:
        raw = await self.redis.hget(self.jobs_key, job_id)
        if raw is None:
            return None
        return _parse(job_id, raw)

    async def all(self) -> list[TriggerJob]:
        raw = await self.redis.hgetall(self.jobs_key)
        jobs = [_parse(job_id, payload) for job_id, payload in raw.items()]
        return sorted(jobs, key=lambda j: j.fire_at)

    async def jobs_for(self, announcement_id: uuid.UUID | str) -> list[TriggerJob]:
        """Live triggers referencing ``announcement_id``."""
        target = str(announcement_id)
        return [j for j in await self.all() if j.announcement_id == target]

    async def claim_due(self, now: datetime, limit: int = 50) -> list[TriggerJob]:
        """Atomically take up to ``limit`` jobs whose fire time has passed."""
        due = await self.redis.zrangebyscore(
            self.schedule_key, "-inf", now.timestamp(), start=0, num=limit
        )
        claimed: list[TriggerJob] = []
        for job_id in due:
            if not await self.redis.zrem(self.schedule_key, job_id):
                # Revoked or taken by another worker in the meantime
                continue
            raw = await self.redis.hget(self.jobs_key, job_id)
            await self.redis.hdel(self.jobs_key, job_id)
            if raw is None:
                logger.warning("trigger_payload_missing", job_id=job_id)
                continue
            claimed.append(_parse(job_id, raw))

        if claimed:
            logger.info("triggers_claimed", count=len(claimed))
        return claimed


def _parse(job_id: str, raw: str | bytes) -> TriggerJob:
    data = json.loads(raw)
    return TriggerJob(
        job_id=job_id,
        announcement_id=data["announcement_id"],
        fire_at=datetime.fromisoformat(data["fire_at"]),
    )
