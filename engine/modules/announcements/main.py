"""Announcements service - FastAPI app running the trigger worker."""

from __future__ import annotations

import asyncio

import structlog
from fastapi import FastAPI
from redis.exceptions import RedisError

from comms.discord_bot.rest_client import DiscordRestClient
from modules.announcements.audience import AudienceResolver
from modules.announcements.orchestrator import SagaOrchestrator
from modules.announcements.queue import TriggerQueue
from modules.announcements.saga import SagaStore
from modules.announcements.scheduler import AnnouncementScheduler
from modules.announcements.store import AnnouncementStore
from modules.announcements.tenancy import TenantConnectionResolver
from modules.announcements.worker import trigger_loop
from shared.config import get_settings
from shared.database import get_session_factory
from shared.redis import close_redis, get_redis
from shared.schemas.common import HealthResponse

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
)

logger = structlog.get_logger()
app = FastAPI(title="Announcement Delivery Engine", version="1.0.0")

scheduler: AnnouncementScheduler | None = None
orchestrator: SagaOrchestrator | None = None
_chat: DiscordRestClient | None = None
_worker_task: asyncio.Task | None = None


@app.on_event("startup")
async def startup():
    global scheduler, orchestrator, _chat, _worker_task
    settings = get_settings()
    session_factory = get_session_factory()
    redis = await get_redis()

    queue = TriggerQueue(redis, settings.announcement_queue_prefix)
    announcements = AnnouncementStore(session_factory)
    scheduler = AnnouncementScheduler(session_factory, announcements, queue)
    _chat = DiscordRestClient(settings)
    orchestrator = SagaOrchestrator(
        session_factory,
        announcements=announcements,
        sagas=SagaStore(session_factory),
        tenants=TenantConnectionResolver(session_factory, settings),
        audience=AudienceResolver(),
        chat=_chat,
        settings=settings,
    )

    _worker_task = asyncio.create_task(trigger_loop(queue, orchestrator, scheduler, settings))
    logger.info("announcements_service_ready")


@app.on_event("shutdown")
async def shutdown():
    global _worker_task
    if _worker_task and not _worker_task.done():
        _worker_task.cancel()
        try:
            await _worker_task
        except asyncio.CancelledError:
            pass
    if _chat is not None:
        await _chat.aclose()
    await close_redis()
    logger.info("announcements_service_shutdown")


@app.get("/health", response_model=HealthResponse)
async def health():
    try:
        redis = await get_redis()
        redis_ok = bool(await redis.ping())
    except (RedisError, OSError) as e:
        logger.warning("health_redis_unreachable", error=str(e))
        redis_ok = False
    return HealthResponse(
        status="ok" if redis_ok else "degraded",
        redis=redis_ok,
        worker_running=_worker_task is not None and not _worker_task.done(),
    )
