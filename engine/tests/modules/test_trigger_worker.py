"""Tests for the trigger worker's polling step and task tracking."""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from modules.announcements.worker import InFlight, _process_due_triggers


def _past() -> datetime:
    return datetime.now(timezone.utc) - timedelta(seconds=1)


@pytest.mark.asyncio
async def test_due_triggers_are_handed_to_orchestrator(trigger_queue, settings):
    due = uuid.uuid4()
    due_job = await trigger_queue.add(due, _past())
    await trigger_queue.add(uuid.uuid4(), datetime.now(timezone.utc) + timedelta(hours=1))
    orchestrator = MagicMock()
    orchestrator.on_trigger = AsyncMock(return_value=[])
    in_flight = InFlight(4)

    count = await _process_due_triggers(trigger_queue, orchestrator, settings, in_flight)
    await in_flight.wait()

    assert count == 1
    orchestrator.on_trigger.assert_awaited_once_with(str(due), job_id=due_job)


@pytest.mark.asyncio
async def test_nothing_due(trigger_queue, settings):
    orchestrator = MagicMock()
    orchestrator.on_trigger = AsyncMock()

    assert await _process_due_triggers(trigger_queue, orchestrator, settings, InFlight(4)) == 0
    orchestrator.on_trigger.assert_not_awaited()


@pytest.mark.asyncio
async def test_revoked_trigger_never_fires(trigger_queue, settings):
    job_id = await trigger_queue.add(uuid.uuid4(), _past())
    await trigger_queue.remove(job_id)
    orchestrator = MagicMock()
    orchestrator.on_trigger = AsyncMock()
    in_flight = InFlight(4)

    await _process_due_triggers(trigger_queue, orchestrator, settings, in_flight)
    await in_flight.wait()

    orchestrator.on_trigger.assert_not_awaited()


@pytest.mark.asyncio
async def test_polling_does_not_wait_for_delivery(trigger_queue, settings):
    release = asyncio.Event()

    async def _slow_delivery(announcement_id, *, job_id=None):
        await release.wait()
        return []

    orchestrator = MagicMock()
    orchestrator.on_trigger = AsyncMock(side_effect=_slow_delivery)
    in_flight = InFlight(4)
    await trigger_queue.add(uuid.uuid4(), _past())

    await asyncio.wait_for(
        _process_due_triggers(trigger_queue, orchestrator, settings, in_flight), timeout=1
    )
    assert len(in_flight.tasks) == 1

    # A trigger coming due while the first still delivers is picked up
    await trigger_queue.add(uuid.uuid4(), _past())
    assert await _process_due_triggers(trigger_queue, orchestrator, settings, in_flight) == 1
    assert len(in_flight.tasks) == 2

    release.set()
    await in_flight.wait()
    assert in_flight.tasks == set()


@pytest.mark.asyncio
async def test_claims_only_free_slots(trigger_queue, settings):
    release = asyncio.Event()

    async def _held(announcement_id, *, job_id=None):
        await release.wait()

    orchestrator = MagicMock()
    orchestrator.on_trigger = AsyncMock(side_effect=_held)
    in_flight = InFlight(1)
    for _ in range(3):
        await trigger_queue.add(uuid.uuid4(), _past())

    assert await _process_due_triggers(trigger_queue, orchestrator, settings, in_flight) == 1
    assert await _process_due_triggers(trigger_queue, orchestrator, settings, in_flight) == 0
    assert len(await trigger_queue.all()) == 2

    release.set()
    await in_flight.wait()


@pytest.mark.asyncio
async def test_failed_task_is_dropped_from_tracking(trigger_queue, settings):
    orchestrator = MagicMock()
    orchestrator.on_trigger = AsyncMock(side_effect=RuntimeError("boom"))
    in_flight = InFlight(4)
    await trigger_queue.add(uuid.uuid4(), _past())

    await _process_due_triggers(trigger_queue, orchestrator, settings, in_flight)
    await in_flight.wait()
    await asyncio.sleep(0)

    assert in_flight.tasks == set()
    assert in_flight.free == 4


@pytest.mark.asyncio
async def test_cancel_all_stops_running_tasks():
    in_flight = InFlight(2)
    task = in_flight.start(asyncio.sleep(3600))

    await in_flight.cancel_all()

    assert task.cancelled()
