"""Trigger worker - fires due announcement triggers and resumes stalled sagas.

Polling never waits on delivery: each claimed trigger runs as its own task,
and the loop only claims as many triggers as it has free task slots, so jobs
beyond that stay queued until a slot frees up.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Coroutine
from datetime import datetime, timezone

import structlog

from modules.announcements.orchestrator import SagaOrchestrator
from modules.announcements.queue import TriggerQueue
from modules.announcements.scheduler import AnnouncementScheduler
from shared.config import Settings

logger = structlog.get_logger()


class InFlight:
    """Orchestration tasks started by the worker, capped at ``limit``."""

    def __init__(self, limit: int):
        self.limit = max(1, limit)
        self.tasks: set[asyncio.Task] = set()

    @property
    def free(self) -> int:
        return max(0, self.limit - len(self.tasks))

    def start(self, coro: Coroutine, **context) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(lambda t: self._finished(t, context))
        return task

    def _finished(self, task: asyncio.Task, context: dict) -> None:
        self.tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("worker_task_failed", error=str(error), exc_info=error, **context)

    async def wait(self) -> None:
        await asyncio.gather(*list(self.tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        tasks = list(self.tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


async def trigger_loop(
    queue: TriggerQueue,
    orchestrator: SagaOrchestrator,
    scheduler: AnnouncementScheduler,
    settings: Settings,
) -> None:
    """Background loop that claims due triggers and hands them to the orchestrator."""
    logger.info("trigger_worker_started")
    in_flight = InFlight(settings.trigger_max_in_flight)

    try:
        await scheduler.reconcile()
    except Exception as e:
        logger.error("trigger_reconcile_error", error=str(e))

    last_sweep = 0.0
    sweep: asyncio.Task | None = None
    try:
        while True:
            try:
                await _process_due_triggers(queue, orchestrator, settings, in_flight)
            except Exception as e:
                logger.error("trigger_loop_error", error=str(e))

            due = time.monotonic() - last_sweep >= settings.saga_sweep_interval_seconds
            if due and (sweep is None or sweep.done()):
                last_sweep = time.monotonic()
                sweep = in_flight.start(_sweep_stale(orchestrator), task="saga_sweep")

            await asyncio.sleep(settings.trigger_poll_interval_seconds)
    finally:
        await in_flight.cancel_all()
        logger.info("trigger_worker_stopped")


async def _sweep_stale(orchestrator: SagaOrchestrator) -> int:
    resumed = await orchestrator.resume_stale()
    if resumed:
        logger.info("stale_sagas_resumed", count=resumed)
    return resumed


async def _process_due_triggers(
    queue: TriggerQueue,
    orchestrator: SagaOrchestrator,
    settings: Settings,
    in_flight: InFlight,
) -> int:
    """Claim due triggers up to the free task slots and start them."""
    capacity = min(settings.trigger_batch_size, in_flight.free)
    if capacity == 0:
        logger.debug("trigger_worker_saturated", in_flight=len(in_flight.tasks))
        return 0

    jobs = await queue.claim_due(datetime.now(timezone.utc), limit=capacity)
    for job in jobs:
        in_flight.start(
            orchestrator.on_trigger(job.announcement_id, job_id=job.job_id),
            announcement_id=job.announcement_id,
            job_id=job.job_id,
        )
    return len(jobs)
