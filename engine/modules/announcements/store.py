"""Announcement store - persistence operations over the announcements table.

Every method accepts an optional ``session``. When given, the operation joins
the caller's unit of work and only flushes; otherwise it opens its own
session and commits.
"""

from __future__ import annotations

import math
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.announcements.errors import AnnouncementNotFound
from shared.models.announcement import Announcement
from shared.schemas.announcements import (
    AnnouncementCreate,
    AnnouncementPage,
    AnnouncementRead,
    dump_targets,
)

logger = structlog.get_logger()

_SORTABLE_FIELDS = ("created_at", "updated_at", "scheduled_at", "title")


def parse_sort_by(sort_by: str | None) -> list:
    """Turn ``"field:desc,other:asc"`` into ORDER BY clauses; unknown fields are ignored."""
    clauses = []
    for part in (sort_by or "").split(","):
        field, _, direction = part.strip().partition(":")
        if field not in _SORTABLE_FIELDS:
            continue
        column = getattr(Announcement, field)
        clauses.append(column.desc() if direction.lower() == "desc" else column.asc())
    return clauses or [Announcement.created_at.desc()]


def _as_uuid(value: uuid.UUID | str) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


class AnnouncementStore:
    """CRUD and trigger-claim operations on announcements."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _scope(self, session: AsyncSession | None) -> AsyncIterator[AsyncSession]:
        if session is not None:
            yield session
            return
        async with self.session_factory() as own:
            yield own
            await own.commit()

    async def create(
        self,
        values: AnnouncementCreate,
        *,
        job_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> Announcement:
        now = datetime.now(timezone.utc)
        announcement = Announcement(
            id=uuid.uuid4(),
            title=values.title,
            community_id=values.community_id,
            draft=values.draft,
            scheduled_at=values.scheduled_at,
            job_id=job_id,
            data=dump_targets(values.data),
            created_by=values.created_by,
            created_at=now,
            updated_at=now,
        )
        async with self._scope(session) as s:
            s.add(announcement)
            await s.flush()
        return announcement

    async def create_draft(self, values: AnnouncementCreate) -> Announcement:
        """Store a draft announcement; drafts never carry a trigger."""
        if not values.draft:
            raise ValueError("Cannot create a draft announcement with draft set to false")
        announcement = await self.create(values)
        logger.info("announcement_draft_created", announcement_id=str(announcement.id))
        return announcement

    async def get(
        self,
        announcement_id: uuid.UUID | str,
        *,
        for_update: bool = False,
        session: AsyncSession | None = None,
    ) -> Announcement | None:
        async with self._scope(session) as s:
            return await s.get(
                Announcement, _as_uuid(announcement_id), with_for_update=for_update
            )

    async def require(
        self,
        announcement_id: uuid.UUID | str,
        *,
        for_update: bool = False,
        session: AsyncSession | None = None,
    ) -> Announcement:
        announcement = await self.get(announcement_id, for_update=for_update, session=session)
        if announcement is None:
            raise AnnouncementNotFound(f"Announcement {announcement_id} not found")
        return announcement

    async def find_one_and_update(
        self,
        filters: dict[str, Any],
        patch: dict[str, Any],
        *,
        session: AsyncSession | None = None,
    ) -> Announcement | None:
        """Apply ``patch`` to the first announcement matching ``filters`` and return it."""
        async with self._scope(session) as s:
            result = await s.execute(
                select(Announcement).filter_by(**filters).limit(1).with_for_update()
            )
            announcement = result.scalar_one_or_none()
            if announcement is None:
                return None
            apply_patch(announcement, patch)
            await s.flush()
            return announcement

    async def query(
        self,
        filters: dict[str, Any] | None = None,
        *,
        sort_by: str | None = None,
        limit: int = 10,
        page: int = 1,
    ) -> AnnouncementPage:
        """Paginated listing in the ``{results, limit, page, total_pages, total_results}`` shape."""
        filters = filters or {}
        limit = limit if limit > 0 else 10
        page = page if page > 0 else 1

        async with self.session_factory() as session:
            total = await session.scalar(
                select(func.count()).select_from(Announcement).filter_by(**filters)
            )
            result = await session.execute(
                select(Announcement)
                .filter_by(**filters)
                .order_by(*parse_sort_by(sort_by))
                .offset(limit * (page - 1))
                .limit(limit)
            )
            rows = list(result.scalars().all())

        total = total or 0
        return AnnouncementPage(
            results=[AnnouncementRead.model_validate(r) for r in rows],
            limit=limit,
            page=page,
            total_pages=math.ceil(total / limit),
            total_results=total,
        )

    async def remove(
        self,
        announcement_id: uuid.UUID | str,
        *,
        session: AsyncSession | None = None,
    ) -> Announcement | None:
        async with self._scope(session) as s:
            announcement = await s.get(
                Announcement, _as_uuid(announcement_id), with_for_update=True
            )
            if announcement is None:
                return None
            await s.delete(announcement)
            await s.flush()
            return announcement

    async def with_triggers(self, *, session: AsyncSession | None = None) -> list[Announcement]:
        """Non-draft announcements that record a live trigger."""
        async with self._scope(session) as s:
            result = await s.execute(
                select(Announcement).where(
                    Announcement.job_id.is_not(None),
                    Announcement.draft.is_(False),
                )
            )
            return list(result.scalars().all())

    async def claim_trigger(
        self,
        announcement_id: uuid.UUID | str,
        *,
        now: datetime,
        grace_seconds: int,
        job_id: str | None = None,
        session: AsyncSession | None = None,
    ) -> tuple[Announcement, str] | None:
        """Consume the announcement's trigger if it is still due.

        Returns the announcement and the consumed job id, or None when the
        announcement was deleted, returned to draft, had its trigger removed
        or replaced, or was rescheduled to a later time.
        """
        async with self._scope(session) as s:
            announcement = await s.get(
                Announcement, _as_uuid(announcement_id), with_for_update=True
            )
            reason = None
            if announcement is None:
                reason = "deleted"
            elif announcement.draft:
                reason = "draft"
            elif announcement.job_id is None:
                reason = "trigger_removed"
            elif job_id is not None and announcement.job_id != job_id:
                reason = "superseded"
            elif announcement.scheduled_at and announcement.scheduled_at > now + timedelta(
                seconds=grace_seconds
            ):
                reason = "rescheduled"

            if reason is not None:
                logger.info(
                    "announcement_trigger_skipped",
                    announcement_id=str(announcement_id),
                    reason=reason,
                )
                return None

            job_id = announcement.job_id
            announcement.job_id = None
            announcement.updated_at = now
            await s.flush()
            return announcement, job_id


def apply_patch(announcement: Announcement, patch: dict[str, Any]) -> None:
    for field, value in patch.items():
        if not hasattr(Announcement, field):
            raise ValueError(f"Unknown announcement field: {field}")
        setattr(announcement, field, value)
    announcement.updated_at = datetime.now(timezone.utc)
