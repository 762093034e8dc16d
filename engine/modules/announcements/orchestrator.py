"""Saga orchestrator - turns a fired trigger into delivered messages.

One saga runs per deliverable target of the announcement. Each step's output
is persisted before the next step starts, so a saga interrupted by a crash is
picked up again by ``resume_stale`` from its last recorded step. Dispatch
progress is checkpointed per recipient, and recipients that already have a
recorded outcome are skipped on resume.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import TypeVar

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from modules.announcements.audience import AudienceResolver
from modules.announcements.dispatch import ChatClient, Dispatcher
from modules.announcements.errors import (
    AnnouncementCancelled,
    SafetyNoticeFailed,
    SagaCheckpointFailed,
    SagaTransitionError,
    SagaUnrecoverable,
)
from modules.announcements.saga import (
    AUDIENCE_RESOLVED,
    DISPATCHING,
    FAILED,
    MESSAGES_COMPOSED,
    START,
    TERMINAL_STEPS,
    AudienceResolvedPayload,
    DispatchingPayload,
    DonePayload,
    FailedPayload,
    MessagesComposedPayload,
    SagaPayload,
    SagaStore,
    StartPayload,
    load_payload,
)
from modules.announcements.store import AnnouncementStore
from modules.announcements.templates import (
    compose_private_message,
    compose_public_message,
)
from modules.announcements.tenancy import TenantConnectionResolver
from shared.config import Settings
from shared.error_capture import capture_error
from shared.models.announcement import Announcement
from shared.schemas.announcements import PrivateFanout, parse_targets
from shared.schemas.dispatch import (
    DeliveryRecord,
    DispatchUnit,
    SafetyMessageReference,
)

logger = structlog.get_logger()

T = TypeVar("T")

# Infrastructure errors worth retrying within a step
TRANSIENT_ERRORS = (OSError, asyncio.TimeoutError, OperationalError, InterfaceError)


def plan_sagas(announcement: Announcement) -> list[StartPayload]:
    """One start payload per target that has a known delivery type."""
    payloads = []
    for index, target in enumerate(parse_targets(announcement.data)):
        if target.kind == "unknown":
            logger.warning(
                "announcement_target_skipped",
                announcement_id=str(announcement.id),
                target_index=index,
                reason="unknown_delivery_type",
            )
            continue
        payloads.append(
            StartPayload(
                announcement_id=str(announcement.id),
                target_index=index,
                platform_id=str(target.platform_id),
                kind=target.kind,
            )
        )
    return payloads


class SagaOrchestrator:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        announcements: AnnouncementStore,
        sagas: SagaStore,
        tenants: TenantConnectionResolver,
        audience: AudienceResolver,
        chat: ChatClient,
        settings: Settings,
    ):
        self.session_factory = session_factory
        self.announcements = announcements
        self.sagas = sagas
        self.tenants = tenants
        self.audience = audience
        self.dispatcher = Dispatcher(chat, settings)
        self.settings = settings
        self._handlers: dict[str, Callable[[uuid.UUID, SagaPayload], Awaitable[SagaPayload]]] = {
            START: self._resolve_audience,
            AUDIENCE_RESOLVED: self._compose_messages,
            MESSAGES_COMPOSED: self._plan_dispatch,
            DISPATCHING: self._dispatch,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def on_trigger(
        self, announcement_id: uuid.UUID | str, *, job_id: str | None = None
    ) -> list[uuid.UUID]:
        """Handle a fired trigger: claim it, start one saga per target, run them.

        Never raises; failures are logged and recorded in error_logs.
        """
        now = datetime.now(timezone.utc)
        try:
            async with self.session_factory() as session:
                claimed = await self.announcements.claim_trigger(
                    announcement_id,
                    now=now,
                    grace_seconds=self.settings.trigger_grace_seconds,
                    job_id=job_id,
                    session=session,
                )
                if claimed is None:
                    return []
                announcement, consumed_job_id = claimed
                sagas = await self.sagas.create(
                    announcement.id, consumed_job_id, plan_sagas(announcement), session=session
                )
                await session.commit()
        except Exception as e:
            logger.error(
                "announcement_trigger_failed",
                announcement_id=str(announcement_id),
                error=str(e),
                exc_info=True,
            )
            await capture_error(
                self.session_factory,
                e,
                error_type="trigger_failed",
                announcement_id=announcement_id,
                job_id=job_id,
            )
            return []

        saga_ids = [s.id for s in sagas]
        logger.info(
            "announcement_dispatch_started",
            announcement_id=str(announcement_id),
            job_id=consumed_job_id,
            sagas=len(saga_ids),
        )
        await asyncio.gather(*(self.run(saga_id) for saga_id in saga_ids))
        return saga_ids

    async def run(self, saga_id: uuid.UUID) -> SagaPayload | None:
        """Drive a saga from its persisted step to Done or Failed.

        Returns the terminal payload, or None if the saga could not be
        loaded or its progress could not be persisted (it stays running and
        is resumed later).
        """
        try:
            saga = await self.sagas.get(saga_id)
            if saga is None:
                logger.warning("saga_not_found", saga_id=str(saga_id))
                return None
            payload = load_payload(saga.data)
        except Exception as e:
            logger.error("saga_load_failed", saga_id=str(saga_id), error=str(e), exc_info=True)
            return None

        log = logger.bind(saga_id=str(saga_id), announcement_id=payload.announcement_id)

        while payload.step not in TERMINAL_STEPS:
            current = payload.step
            try:
                following = await self._handlers[current](saga_id, payload)
            except SagaTransitionError as e:
                log.warning("saga_superseded", step=current, error=str(e))
                return None
            except SagaCheckpointFailed as e:
                # Left on this step with its saved progress for resume_stale
                log.error("saga_persist_failed", step=current, error=str(e))
                return None
            except Exception as e:
                return await self._fail(saga_id, payload, e)

            try:
                await self.sagas.save(saga_id, following, previous_step=current)
            except SagaTransitionError as e:
                # Another runner advanced this saga
                log.warning("saga_superseded", step=current, error=str(e))
                return None
            except Exception as e:
                log.error("saga_persist_failed", step=following.step, error=str(e), exc_info=True)
                return None

            log.info("saga_step_completed", step=following.step)
            payload = following

        if isinstance(payload, DonePayload):
            log.info(
                "saga_completed",
                kind=payload.kind,
                delivered=payload.delivered,
                failed=payload.failed,
            )
        return payload

    async def resume_stale(self) -> int:
        """Resume running sagas that stopped making progress."""
        older_than = datetime.now(timezone.utc) - timedelta(
            seconds=self.settings.saga_stale_after_seconds
        )
        saga_ids = await self.sagas.claim_stale(older_than=older_than)
        for saga_id in saga_ids:
            logger.info("saga_resuming", saga_id=str(saga_id))
        await asyncio.gather(*(self.run(saga_id) for saga_id in saga_ids))
        return len(saga_ids)

    async def retry_failed(self, saga_id: uuid.UUID) -> SagaPayload | None:
        """Restore a failed saga to the step it failed on and run it again."""
        saga = await self.sagas.get(saga_id)
        if saga is None:
            raise SagaTransitionError(f"Saga {saga_id} not found")
        payload = load_payload(saga.data)
        if not isinstance(payload, FailedPayload) or payload.resume_from is None:
            raise SagaTransitionError(f"Saga {saga_id} has no failed step to retry")

        await self.sagas.restore(saga_id, load_payload(payload.resume_from))
        logger.info("saga_retrying", saga_id=str(saga_id), step=payload.failed_step)
        return await self.run(saga_id)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _resolve_audience(
        self, saga_id: uuid.UUID, payload: StartPayload
    ) -> AudienceResolvedPayload:
        announcement = await self._retry(lambda: self.announcements.get(payload.announcement_id))
        if announcement is None:
            raise AnnouncementCancelled("Announcement was deleted")
        if announcement.draft:
            raise AnnouncementCancelled("Announcement was returned to draft")

        targets = parse_targets(announcement.data)
        if payload.target_index >= len(targets):
            raise AnnouncementCancelled("Target no longer exists")
        target = targets[payload.target_index]
        if target.kind != payload.kind:
            raise SagaUnrecoverable(
                f"Target delivery changed from {payload.kind} to {target.kind}"
            )

        tenant = await self._retry(lambda: self.tenants.platform_tenant(target.platform_id))

        safety_channel = None
        if isinstance(target.delivery, PrivateFanout):
            delivery = target.delivery
            safety_channel = delivery.safety_message_channel_id

            async def _recipients() -> list[str]:
                async with self.tenants.resolve(tenant.tenant_id) as handle:
                    return await self.audience.recipients_for(handle, delivery)

            recipients = await self._retry(_recipients)
        else:
            recipients = list(target.delivery.channel_ids)

        return AudienceResolvedPayload(
            announcement_id=payload.announcement_id,
            target_index=payload.target_index,
            platform_id=payload.platform_id,
            kind=payload.kind,
            tenant_id=tenant.tenant_id,
            community=tenant.name,
            template=target.template,
            recipients=recipients,
            safety_message_channel_id=safety_channel,
        )

    async def _compose_messages(
        self, saga_id: uuid.UUID, payload: AudienceResolvedPayload
    ) -> MessagesComposedPayload:
        units: list[DispatchUnit] = []

        if not payload.recipients:
            logger.info(
                "announcement_audience_empty",
                saga_id=str(saga_id),
                announcement_id=payload.announcement_id,
            )
        elif payload.kind == "public":
            text = compose_public_message(payload.template)
            units = [
                DispatchUnit(address=channel_id, kind="public", text=text)
                for channel_id in payload.recipients
            ]
        else:
            reference = payload.safety_reference
            if payload.safety_message_channel_id and reference is None:
                reference = await self._post_safety_notice(payload)
                # Persist the reference so a resumed saga does not post again
                await self._checkpoint(
                    saga_id, payload.model_copy(update={"safety_reference": reference})
                )
            units = [
                DispatchUnit(
                    address=discord_id,
                    kind="private",
                    text=compose_private_message(
                        payload.template,
                        discord_id,
                        settings=self.settings,
                        safety_reference=reference,
                        community=payload.community,
                    ),
                )
                for discord_id in payload.recipients
            ]

        return MessagesComposedPayload(
            announcement_id=payload.announcement_id,
            target_index=payload.target_index,
            platform_id=payload.platform_id,
            kind=payload.kind,
            units=units,
        )

    async def _post_safety_notice(
        self, payload: AudienceResolvedPayload
    ) -> SafetyMessageReference:
        channel_id = payload.safety_message_channel_id
        record = await self.dispatcher.deliver(
            DispatchUnit(
                address=channel_id,
                kind="public",
                text=self.settings.safety_channel_message,
            )
        )
        if record.status != "delivered" or not record.message_id:
            raise SafetyNoticeFailed(
                f"Could not post safety notice to channel {channel_id}: {record.error}"
            )
        logger.info(
            "safety_notice_posted",
            announcement_id=payload.announcement_id,
            channel_id=channel_id,
            message_id=record.message_id,
        )
        return SafetyMessageReference(
            guild_id=payload.tenant_id,
            channel_id=channel_id,
            message_id=record.message_id,
        )

    async def _plan_dispatch(
        self, saga_id: uuid.UUID, payload: MessagesComposedPayload
    ) -> DispatchingPayload:
        return DispatchingPayload(
            announcement_id=payload.announcement_id,
            target_index=payload.target_index,
            platform_id=payload.platform_id,
            kind=payload.kind,
            units=payload.units,
        )

    async def _dispatch(self, saga_id: uuid.UUID, payload: DispatchingPayload) -> DonePayload:
        records: dict[str, DeliveryRecord] = dict(payload.records)
        pending = [u for u in payload.units if u.address not in records]
        if records:
            logger.info(
                "dispatch_resumed",
                saga_id=str(saga_id),
                already_recorded=len(records),
                pending=len(pending),
            )

        lock = asyncio.Lock()

        async def _record(record: DeliveryRecord) -> None:
            # A recipient counts as dispatched only once its outcome is saved
            async with lock:
                records[record.address] = record
                checkpoint = payload.model_copy(update={"records": dict(records)})
                await self._checkpoint(saga_id, checkpoint)

        await self.dispatcher.dispatch_all(pending, on_record=_record)

        ordered = [records[u.address] for u in payload.units]
        delivered = sum(1 for r in ordered if r.status == "delivered")
        return DonePayload(
            announcement_id=payload.announcement_id,
            target_index=payload.target_index,
            platform_id=payload.platform_id,
            kind=payload.kind,
            records=ordered,
            delivered=delivered,
            failed=len(ordered) - delivered,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _checkpoint(self, saga_id: uuid.UUID, payload: SagaPayload) -> None:
        """Save progress within the current step."""
        try:
            await self.sagas.save(saga_id, payload, previous_step=payload.step)
        except SagaTransitionError:
            raise
        except Exception as e:
            raise SagaCheckpointFailed(f"Could not save {payload.step} progress: {e}") from e

    async def _retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.saga_step_max_attempts)),
            wait=wait_exponential_jitter(
                initial=self.settings.dispatch_backoff_initial_seconds,
                max=self.settings.dispatch_backoff_max_seconds,
                jitter=self.settings.dispatch_backoff_initial_seconds,
            ),
            retry=retry_if_exception_type(TRANSIENT_ERRORS),
            reraise=True,
        ):
            with attempt:
                result = await operation()
        return result

    async def _fail(self, saga_id: uuid.UUID, payload: SagaPayload, error: Exception) -> FailedPayload:
        failed = FailedPayload(
            announcement_id=payload.announcement_id,
            target_index=payload.target_index,
            platform_id=payload.platform_id,
            failed_step=payload.step,
            error_type=type(error).__name__,
            error=str(error),
            resume_from=payload.model_dump(mode="json"),
        )
        log = logger.bind(saga_id=str(saga_id), announcement_id=payload.announcement_id)
        if isinstance(error, AnnouncementCancelled):
            log.info("saga_cancelled", step=payload.step, reason=str(error))
        else:
            log.error(
                "saga_failed",
                step=payload.step,
                error_type=failed.error_type,
                error=str(error),
                exc_info=error,
            )

        try:
            await self.sagas.save(saga_id, failed, previous_step=payload.step)
        except Exception as e:
            log.error("saga_persist_failed", step=FAILED, error=str(e), exc_info=True)

        if not isinstance(error, AnnouncementCancelled):
            await capture_error(
                self.session_factory,
                error,
                error_type="saga_failed",
                step=payload.step,
                announcement_id=payload.announcement_id,
                saga_id=saga_id,
            )
        return failed
