"""Job scheduler - keeps announcement records and queue triggers consistent.

Each scheduling operation runs as one atomic unit: a database transaction
holding a row lock on the announcement, with every trigger registration or
revocation recorded so it can be undone. If anything fails before the commit
succeeds, the transaction is rolled back and the queue changes are reversed
(revoked triggers are restored under their original job id), then the error
is raised to the caller.
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.announcements.errors import (
    AnnouncementNotFound,
    InvalidSchedule,
    JobAlreadyExists,
    JobAssociationMissing,
)
from modules.announcements.queue import TriggerQueue
from modules.announcements.store import AnnouncementStore, apply_patch
from shared.models.announcement import Announcement
from shared.schemas.announcements import AnnouncementCreate, AnnouncementUpdate

logger = structlog.get_logger()


class _TriggerCompensation:
    """Queue operations performed inside an atomic unit, with their inverses."""

    def __init__(self, queue: TriggerQueue):
        self.queue = queue
        self._undo: list[tuple] = []

    async def register(self, announcement_id: uuid.UUID, fire_at: datetime) -> str:
        job_id = await self.queue.add(announcement_id, fire_at)
        self._undo.append(("remove", job_id))
        return job_id

    async def revoke(
        self, job_id: str, announcement_id: uuid.UUID, fire_at: datetime | None
    ) -> bool:
        removed = await self.queue.remove(job_id)
        if removed:
            self._undo.append(("restore", job_id, announcement_id, fire_at))
        else:
            # Already claimed by the worker; the orchestrator re-checks the
            # announcement before dispatching.
            logger.warning(
                "trigger_already_consumed",
                job_id=job_id,
                announcement_id=str(announcement_id),
            )
        return removed

    async def rollback(self) -> None:
        for action in reversed(self._undo):
            try:
                if action[0] == "remove":
                    await self.queue.remove(action[1])
                else:
                    _, job_id, announcement_id, fire_at = action
                    await self.queue.add(
                        announcement_id,
                        fire_at or datetime.now(timezone.utc),
                        job_id=job_id,
                    )
            except Exception as e:
                # Left for AnnouncementScheduler.reconcile()
                logger.error("trigger_compensation_failed", action=action[0], error=str(e))
        self._undo.clear()


class AnnouncementScheduler:
    """Create, reschedule, cancel and delete announcements with their triggers."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        store: AnnouncementStore,
        queue: TriggerQueue,
    ):
        self.session_factory = session_factory
        self.store = store
        self.queue = queue

    @asynccontextmanager
    async def _atomic(self) -> AsyncIterator[tuple[AsyncSession, _TriggerCompensation]]:
        compensation = _TriggerCompensation(self.queue)
        async with self.session_factory() as session:
            try:
                yield session, compensation
                await session.commit()
            except Exception:
                await session.rollback()
                await compensation.rollback()
                raise

    @staticmethod
    def _require_future(scheduled_at: datetime | None) -> datetime:
        if scheduled_at is None:
            raise InvalidSchedule("scheduled_at is required for non-draft announcements")
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        if scheduled_at <= datetime.now(timezone.utc):
            raise InvalidSchedule("scheduled_at must be in the future")
        return scheduled_at

    async def schedule_create(self, values: AnnouncementCreate) -> Announcement:
        """Create a scheduled announcement together with its trigger."""
        if values.draft:
            raise InvalidSchedule("Draft announcements are not scheduled")
        fire_at = self._require_future(values.scheduled_at)

        async with self._atomic() as (session, compensation):
            announcement = await self.store.create(values, session=session)
            announcement.job_id = await compensation.register(announcement.id, fire_at)
            await session.flush()

        logger.info(
            "announcement_scheduled",
            announcement_id=str(announcement.id),
            job_id=announcement.job_id,
            scheduled_at=fire_at.isoformat(),
        )
        return announcement

    async def schedule_update(
        self, announcement_id: uuid.UUID | str, changes: AnnouncementUpdate
    ) -> Announcement:
        """Apply changes; a new scheduled_at replaces the trigger."""
        patch = changes.to_patch()

        async with self._atomic() as (session, compensation):
            announcement = await self.store.require(
                announcement_id, for_update=True, session=session
            )
            if patch.get("scheduled_at") is not None:
                if patch.get("draft", announcement.draft):
                    raise InvalidSchedule("Draft announcements are not scheduled")
                fire_at = self._require_future(patch["scheduled_at"])
                if announcement.job_id:
                    await compensation.revoke(
                        announcement.job_id, announcement.id, announcement.scheduled_at
                    )
                patch["job_id"] = await compensation.register(announcement.id, fire_at)
            elif "scheduled_at" in patch and announcement.job_id:
                raise InvalidSchedule("scheduled_at cannot be cleared while a trigger is live")
            apply_patch(announcement, patch)
            await session.flush()

        logger.info(
            "announcement_updated",
            announcement_id=str(announcement.id),
            job_id=announcement.job_id,
            rescheduled="job_id" in patch,
        )
        return announcement

    async def schedule_remove(
        self,
        announcement_id: uuid.UUID | str,
        changes: AnnouncementUpdate | None = None,
    ) -> Announcement:
        """Clear the announcement's trigger and revoke it from the queue."""
        patch = changes.to_patch() if changes else {}

        async with self._atomic() as (session, compensation):
            announcement = await self.store.require(
                announcement_id, for_update=True, session=session
            )
            if not announcement.job_id:
                raise JobAssociationMissing(
                    f"Job associated with announcement {announcement.id} not found"
                )
            old_job_id = announcement.job_id
            old_fire_at = announcement.scheduled_at
            patch["job_id"] = None
            apply_patch(announcement, patch)
            await session.flush()
            await compensation.revoke(old_job_id, announcement.id, old_fire_at)

        logger.info(
            "announcement_unscheduled",
            announcement_id=str(announcement.id),
            job_id=old_job_id,
        )
        return announcement

    async def schedule_add(
        self,
        announcement_id: uuid.UUID | str,
        changes: AnnouncementUpdate | None = None,
    ) -> Announcement:
        """Register a trigger for an announcement that has none."""
        patch = changes.to_patch() if changes else {}

        async with self._atomic() as (session, compensation):
            announcement = await self.store.require(
                announcement_id, for_update=True, session=session
            )
            if announcement.job_id:
                raise JobAlreadyExists(
                    f"Job associated with announcement {announcement.id} already exists"
                )
            if patch.get("draft", announcement.draft):
                raise InvalidSchedule("Draft announcements are not scheduled")
            fire_at = self._require_future(patch.get("scheduled_at") or announcement.scheduled_at)
            patch["job_id"] = await compensation.register(announcement.id, fire_at)
            apply_patch(announcement, patch)
            await session.flush()

        logger.info(
            "announcement_scheduled",
            announcement_id=str(announcement.id),
            job_id=announcement.job_id,
            scheduled_at=fire_at.isoformat(),
        )
        return announcement

    async def update_announcement(
        self, announcement_id: uuid.UUID | str, changes: AnnouncementUpdate
    ) -> Announcement:
        """Route an edit to the scheduling operation its draft/time change implies."""
        patch = changes.to_patch()
        announcement = await self.store.require(announcement_id)
        will_be_draft = patch.get("draft", announcement.draft)

        if announcement.job_id and will_be_draft:
            return await self.schedule_remove(announcement_id, changes)
        if announcement.job_id is None and not will_be_draft and (
            announcement.draft or patch.get("scheduled_at") is not None
        ):
            return await self.schedule_add(announcement_id, changes)
        if announcement.job_id and "scheduled_at" in patch:
            # schedule_update rejects clearing the time of a live trigger
            return await self.schedule_update(announcement_id, changes)

        updated = await self.store.find_one_and_update({"id": announcement.id}, patch)
        if updated is None:
            raise AnnouncementNotFound(f"Announcement {announcement_id} not found")
        return updated

    async def delete(self, announcement_id: uuid.UUID | str) -> Announcement:
        """Hard-delete the announcement and revoke any live trigger."""
        async with self._atomic() as (session, compensation):
            announcement = await self.store.remove(announcement_id, session=session)
            if announcement is None:
                raise AnnouncementNotFound(f"Announcement {announcement_id} not found")
            if announcement.job_id:
                await compensation.revoke(
                    announcement.job_id, announcement.id, announcement.scheduled_at
                )

        logger.info(
            "announcement_deleted",
            announcement_id=str(announcement.id),
            job_id=announcement.job_id,
        )
        return announcement

    async def reconcile(self) -> int:
        """Restore triggers recorded on announcements but missing from the queue."""
        now = datetime.now(timezone.utc)
        restored = 0
        for announcement in await self.store.with_triggers():
            if await self.queue.get(announcement.job_id) is not None:
                continue
            fire_at = announcement.scheduled_at or now
            await self.queue.add(announcement.id, max(fire_at, now), job_id=announcement.job_id)
            restored += 1
            logger.warning(
                "trigger_restored",
                announcement_id=str(announcement.id),
                job_id=announcement.job_id,
            )

        logger.info("trigger_reconcile_complete", restored=restored)
        return restored
