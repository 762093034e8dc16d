"""Tests for the job scheduler: record/trigger consistency and compensation."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from modules.announcements.errors import (
    AnnouncementNotFound,
    InvalidSchedule,
    JobAlreadyExists,
    JobAssociationMissing,
)
from modules.announcements.scheduler import AnnouncementScheduler
from modules.announcements.store import AnnouncementStore
from shared.schemas.announcements import AnnouncementCreate, AnnouncementUpdate
from tests.conftest import public_target, scalars_result


def _future(hours: int = 1) -> datetime:
    return datetime.now(timezone.utc) + timedelta(hours=hours)


@pytest.fixture
def scheduler(mock_session_factory, trigger_queue):
    return AnnouncementScheduler(
        mock_session_factory, AnnouncementStore(mock_session_factory), trigger_queue
    )


@pytest.fixture
def scheduled(mock_db_session, trigger_queue, make_announcement):
    """A persisted announcement with a live trigger."""

    async def _make(**kwargs):
        announcement = make_announcement(**kwargs)
        announcement.job_id = await trigger_queue.add(announcement.id, announcement.scheduled_at)
        mock_db_session.get = AsyncMock(return_value=announcement)
        return announcement

    return _make


class TestScheduleCreate:
    @pytest.mark.asyncio
    async def test_registers_trigger_and_records_job(self, scheduler, trigger_queue, mock_db_session):
        values = AnnouncementCreate(title="Launch", scheduled_at=_future(), data=[public_target()])

        announcement = await scheduler.schedule_create(values)

        assert announcement.job_id is not None
        job = await trigger_queue.get(announcement.job_id)
        assert job.announcement_id == str(announcement.id)
        mock_db_session.commit.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_past_time_rejected_without_trigger(self, scheduler, trigger_queue):
        values = AnnouncementCreate(scheduled_at=datetime.now(timezone.utc) - timedelta(minutes=1))
        with pytest.raises(InvalidSchedule):
            await scheduler.schedule_create(values)
        assert await trigger_queue.all() == []

    @pytest.mark.asyncio
    async def test_draft_rejected(self, scheduler):
        with pytest.raises(InvalidSchedule):
            await scheduler.schedule_create(AnnouncementCreate(draft=True, scheduled_at=_future()))

    @pytest.mark.asyncio
    async def test_commit_failure_revokes_new_trigger(
        self, scheduler, trigger_queue, mock_db_session
    ):
        mock_db_session.commit = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await scheduler.schedule_create(AnnouncementCreate(scheduled_at=_future()))

        assert await trigger_queue.all() == []
        mock_db_session.rollback.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_queue_failure_leaves_nothing_committed(
        self, scheduler, fake_redis, mock_db_session
    ):
        fake_redis.fail_next = ConnectionError("redis down")

        with pytest.raises(ConnectionError):
            await scheduler.schedule_create(AnnouncementCreate(scheduled_at=_future()))

        mock_db_session.commit.assert_not_awaited()
        mock_db_session.rollback.assert_awaited_once()


class TestScheduleUpdate:
    @pytest.mark.asyncio
    async def test_reschedule_leaves_exactly_one_trigger(self, scheduler, scheduled, trigger_queue):
        announcement = await scheduled()
        old_job = announcement.job_id
        new_time = _future(hours=3)

        await scheduler.schedule_update(announcement.id, AnnouncementUpdate(scheduled_at=new_time))

        jobs = await trigger_queue.jobs_for(announcement.id)
        assert [j.job_id for j in jobs] == [announcement.job_id]
        assert announcement.job_id != old_job
        assert jobs[0].fire_at == new_time
        assert announcement.scheduled_at == new_time

    @pytest.mark.asyncio
    async def test_failed_reschedule_restores_original_trigger(
        self, scheduler, scheduled, trigger_queue, mock_db_session
    ):
        announcement = await scheduled()
        old_job = announcement.job_id
        mock_db_session.commit = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await scheduler.schedule_update(
                announcement.id, AnnouncementUpdate(scheduled_at=_future(hours=5))
            )

        jobs = await trigger_queue.jobs_for(announcement.id)
        assert [j.job_id for j in jobs] == [old_job]

    @pytest.mark.asyncio
    async def test_title_only_keeps_trigger(self, scheduler, scheduled, trigger_queue):
        announcement = await scheduled()
        old_job = announcement.job_id

        await scheduler.schedule_update(announcement.id, AnnouncementUpdate(title="Renamed"))

        assert announcement.job_id == old_job
        assert announcement.title == "Renamed"
        assert await trigger_queue.get(old_job) is not None

    @pytest.mark.asyncio
    async def test_clearing_time_with_live_trigger_rejected(self, scheduler, scheduled):
        announcement = await scheduled()
        with pytest.raises(InvalidSchedule):
            await scheduler.schedule_update(announcement.id, AnnouncementUpdate(scheduled_at=None))

    @pytest.mark.asyncio
    async def test_missing_announcement(self, scheduler):
        with pytest.raises(AnnouncementNotFound):
            await scheduler.schedule_update(
                "6a1f6e0e-9d0b-4d7e-9a55-1d9b8f0c1a2b", AnnouncementUpdate(title="x")
            )


class TestScheduleRemove:
    @pytest.mark.asyncio
    async def test_clears_job_and_revokes_trigger(self, scheduler, scheduled, trigger_queue):
        announcement = await scheduled()

        await scheduler.schedule_remove(announcement.id, AnnouncementUpdate(draft=True))

        assert announcement.job_id is None
        assert announcement.draft is True
        assert await trigger_queue.all() == []

    @pytest.mark.asyncio
    async def test_without_job_raises(self, scheduler, mock_db_session, make_announcement):
        mock_db_session.get = AsyncMock(return_value=make_announcement(job_id=None))
        with pytest.raises(JobAssociationMissing):
            await scheduler.schedule_remove(make_announcement().id)

    @pytest.mark.asyncio
    async def test_commit_failure_restores_trigger(
        self, scheduler, scheduled, trigger_queue, mock_db_session
    ):
        announcement = await scheduled()
        job_id = announcement.job_id
        mock_db_session.commit = AsyncMock(side_effect=RuntimeError("db down"))

        with pytest.raises(RuntimeError):
            await scheduler.schedule_remove(announcement.id)

        assert await trigger_queue.get(job_id) is not None


class TestScheduleAdd:
    @pytest.mark.asyncio
    async def test_publishing_a_draft_registers_trigger(
        self, scheduler, mock_db_session, trigger_queue, make_announcement
    ):
        draft = make_announcement(draft=True, job_id=None)
        mock_db_session.get = AsyncMock(return_value=draft)

        await scheduler.schedule_add(draft.id, AnnouncementUpdate(draft=False))

        assert draft.draft is False
        assert draft.job_id is not None
        assert [j.job_id for j in await trigger_queue.jobs_for(draft.id)] == [draft.job_id]

    @pytest.mark.asyncio
    async def test_existing_job_raises(self, scheduler, scheduled):
        announcement = await scheduled()
        with pytest.raises(JobAlreadyExists):
            await scheduler.schedule_add(announcement.id)

    @pytest.mark.asyncio
    async def test_draft_stays_unscheduled(self, scheduler, mock_db_session, make_announcement):
        draft = make_announcement(draft=True, job_id=None)
        mock_db_session.get = AsyncMock(return_value=draft)
        with pytest.raises(InvalidSchedule):
            await scheduler.schedule_add(draft.id)


class TestUpdateRouting:
    @pytest.mark.asyncio
    async def test_back_to_draft_removes_trigger(self, scheduler, scheduled, trigger_queue):
        announcement = await scheduled()

        await scheduler.update_announcement(announcement.id, AnnouncementUpdate(draft=True))

        assert announcement.job_id is None
        assert await trigger_queue.all() == []

    @pytest.mark.asyncio
    async def test_publish_adds_trigger(
        self, scheduler, mock_db_session, trigger_queue, make_announcement
    ):
        draft = make_announcement(draft=True, job_id=None)
        mock_db_session.get = AsyncMock(return_value=draft)

        await scheduler.update_announcement(
            draft.id, AnnouncementUpdate(draft=False, scheduled_at=_future(2))
        )

        assert draft.job_id is not None

    @pytest.mark.asyncio
    async def test_new_time_reschedules(self, scheduler, scheduled, trigger_queue):
        announcement = await scheduled()
        old_job = announcement.job_id

        await scheduler.update_announcement(
            announcement.id, AnnouncementUpdate(scheduled_at=_future(4))
        )

        assert announcement.job_id != old_job
        assert len(await trigger_queue.jobs_for(announcement.id)) == 1

    @pytest.mark.asyncio
    async def test_clearing_time_of_scheduled_announcement_rejected(
        self, scheduler, scheduled, trigger_queue
    ):
        announcement = await scheduled()
        fire_at = announcement.scheduled_at

        with pytest.raises(InvalidSchedule):
            await scheduler.update_announcement(
                announcement.id, AnnouncementUpdate(scheduled_at=None)
            )

        assert announcement.scheduled_at == fire_at
        assert await trigger_queue.get(announcement.job_id) is not None

    @pytest.mark.asyncio
    async def test_draft_edit_is_plain_update(
        self, scheduler, mock_db_session, trigger_queue, make_announcement
    ):
        draft = make_announcement(draft=True, job_id=None)
        mock_db_session.get = AsyncMock(return_value=draft)
        mock_db_session.execute = AsyncMock(return_value=scalars_result([draft]))

        await scheduler.update_announcement(draft.id, AnnouncementUpdate(title="Still a draft"))

        assert draft.title == "Still a draft"
        assert await trigger_queue.all() == []


class TestDelete:
    @pytest.mark.asyncio
    async def test_delete_revokes_trigger(self, scheduler, scheduled, trigger_queue, mock_db_session):
        announcement = await scheduled()

        await scheduler.delete(announcement.id)

        mock_db_session.delete.assert_awaited_once_with(announcement)
        assert await trigger_queue.all() == []

    @pytest.mark.asyncio
    async def test_delete_missing(self, scheduler):
        with pytest.raises(AnnouncementNotFound):
            await scheduler.delete("6a1f6e0e-9d0b-4d7e-9a55-1d9b8f0c1a2b")


class TestReconcile:
    @pytest.mark.asyncio
    async def test_restores_missing_trigger_under_same_job_id(
        self, scheduler, mock_db_session, trigger_queue, make_announcement
    ):
        lost = make_announcement(job_id="job-lost")
        mock_db_session.execute = AsyncMock(return_value=scalars_result([lost]))

        restored = await scheduler.reconcile()

        assert restored == 1
        job = await trigger_queue.get("job-lost")
        assert job.announcement_id == str(lost.id)

    @pytest.mark.asyncio
    async def test_present_trigger_untouched(self, scheduler, scheduled, mock_db_session):
        announcement = await scheduled()
        mock_db_session.execute = AsyncMock(return_value=scalars_result([announcement]))

        assert await scheduler.reconcile() == 0
