"""Saga state machine and persistence.

A saga drives one announcement target through

    start -> audience_resolved -> messages_composed -> dispatching -> done

with ``failed`` reachable from any non-terminal step. Each step has its own
payload model; the persisted ``Saga.data`` is always exactly one of them,
discriminated by ``step``, and unknown fields are rejected.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

import structlog
from pydantic import BaseModel, ConfigDict, Field, TypeAdapter
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modules.announcements.errors import SagaTransitionError
from shared.models.saga import Saga
from shared.schemas.dispatch import (
    DeliveryRecord,
    DispatchUnit,
    FanoutKind,
    SafetyMessageReference,
)

logger = structlog.get_logger()

START = "start"
AUDIENCE_RESOLVED = "audience_resolved"
MESSAGES_COMPOSED = "messages_composed"
DISPATCHING = "dispatching"
DONE = "done"
FAILED = "failed"

NEXT_STEP = {
    START: AUDIENCE_RESOLVED,
    AUDIENCE_RESOLVED: MESSAGES_COMPOSED,
    MESSAGES_COMPOSED: DISPATCHING,
    DISPATCHING: DONE,
}
TERMINAL_STEPS = frozenset({DONE, FAILED})

CHOREOGRAPHIES = {
    "public": "announcement_public",
    "private": "announcement_private",
}


class _SagaPayload(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    announcement_id: str
    target_index: int
    platform_id: str


class StartPayload(_SagaPayload):
    step: Literal["start"] = START
    kind: FanoutKind


class AudienceResolvedPayload(_SagaPayload):
    step: Literal["audience_resolved"] = AUDIENCE_RESOLVED
    kind: FanoutKind
    tenant_id: str
    community: str | None = None
    template: str
    # Channel ids (public) or external user ids (private)
    recipients: list[str]
    safety_message_channel_id: str | None = None
    safety_reference: SafetyMessageReference | None = None


class MessagesComposedPayload(_SagaPayload):
    step: Literal["messages_composed"] = MESSAGES_COMPOSED
    kind: FanoutKind
    units: list[DispatchUnit]


class DispatchingPayload(_SagaPayload):
    step: Literal["dispatching"] = DISPATCHING
    kind: FanoutKind
    units: list[DispatchUnit]
    # Terminal outcomes so far, keyed by address
    records: dict[str, DeliveryRecord] = Field(default_factory=dict)


class DonePayload(_SagaPayload):
    step: Literal["done"] = DONE
    kind: FanoutKind
    records: list[DeliveryRecord]
    delivered: int
    failed: int


class FailedPayload(_SagaPayload):
    step: Literal["failed"] = FAILED
    failed_step: str
    error_type: str
    error: str
    # Payload that was being processed, for operator retry
    resume_from: dict[str, Any] | None = None


SagaPayload = Annotated[
    Union[
        StartPayload,
        AudienceResolvedPayload,
        MessagesComposedPayload,
        DispatchingPayload,
        DonePayload,
        FailedPayload,
    ],
    Field(discriminator="step"),
]

_payload_adapter: TypeAdapter = TypeAdapter(SagaPayload)


def load_payload(data: dict[str, Any]) -> SagaPayload:
    return _payload_adapter.validate_python(data)


def ensure_transition(current: str, target: str) -> None:
    """Raise SagaTransitionError unless ``current -> target`` is allowed.

    Re-saving the current non-terminal step is allowed (checkpoint).
    """
    if current in TERMINAL_STEPS:
        raise SagaTransitionError(f"Saga already terminal at {current!r}")
    if target == current or target == FAILED or NEXT_STEP.get(current) == target:
        return
    raise SagaTransitionError(f"Cannot move saga from {current!r} to {target!r}")


def _status_for(step: str) -> str:
    if step == DONE:
        return "done"
    if step == FAILED:
        return "failed"
    return "running"


class SagaStore:
    """Persistence for saga rows."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def create(
        self,
        announcement_id: uuid.UUID,
        trigger_job_id: str,
        payloads: list[StartPayload],
        *,
        session: AsyncSession,
    ) -> list[Saga]:
        """Add one saga per start payload to the caller's unit of work."""
        now = datetime.now(timezone.utc)
        sagas = [
            Saga(
                id=uuid.uuid4(),
                announcement_id=announcement_id,
                trigger_job_id=trigger_job_id,
                target_index=p.target_index,
                choreography=CHOREOGRAPHIES[p.kind],
                step=START,
                status="running",
                data=p.model_dump(mode="json"),
                created_at=now,
                updated_at=now,
            )
            for p in payloads
        ]
        session.add_all(sagas)
        await session.flush()
        return sagas

    async def get(self, saga_id: uuid.UUID) -> Saga | None:
        async with self.session_factory() as session:
            return await session.get(Saga, saga_id)

    async def save(self, saga_id: uuid.UUID, payload: SagaPayload, *, previous_step: str) -> None:
        """Persist ``payload`` as the saga's state, guarding step order."""
        ensure_transition(previous_step, payload.step)
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            saga = await session.get(Saga, saga_id, with_for_update=True)
            if saga is None:
                raise SagaTransitionError(f"Saga {saga_id} not found")
            if saga.step != previous_step:
                raise SagaTransitionError(
                    f"Saga {saga_id} is at {saga.step!r}, expected {previous_step!r}"
                )
            saga.step = payload.step
            saga.status = _status_for(payload.step)
            saga.data = payload.model_dump(mode="json")
            saga.updated_at = now
            if isinstance(payload, FailedPayload):
                saga.failed_step = payload.failed_step
                saga.error = f"{payload.error_type}: {payload.error}"
            if payload.step in TERMINAL_STEPS:
                saga.completed_at = now
            await session.commit()

    async def restore(self, saga_id: uuid.UUID, payload: SagaPayload) -> None:
        """Put a failed saga back to the payload it failed on."""
        if payload.step in TERMINAL_STEPS:
            raise SagaTransitionError("Cannot restore a saga to a terminal step")
        async with self.session_factory() as session:
            saga = await session.get(Saga, saga_id, with_for_update=True)
            if saga is None or saga.step != FAILED:
                raise SagaTransitionError(f"Saga {saga_id} is not failed")
            saga.step = payload.step
            saga.status = "running"
            saga.data = payload.model_dump(mode="json")
            saga.failed_step = None
            saga.error = None
            saga.completed_at = None
            saga.updated_at = datetime.now(timezone.utc)
            await session.commit()

    async def list(
        self,
        *,
        status: str | None = None,
        announcement_id: uuid.UUID | None = None,
        limit: int = 50,
    ) -> list[Saga]:
        async with self.session_factory() as session:
            query = select(Saga).order_by(Saga.created_at.desc()).limit(limit)
            if status:
                query = query.where(Saga.status == status)
            if announcement_id:
                query = query.where(Saga.announcement_id == announcement_id)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def claim_stale(self, *, older_than: datetime, limit: int = 20) -> list[uuid.UUID]:
        """Claim running sagas with no progress since ``older_than``."""
        now = datetime.now(timezone.utc)
        async with self.session_factory() as session:
            result = await session.execute(
                select(Saga)
                .where(Saga.status == "running", Saga.updated_at < older_than)
                .order_by(Saga.updated_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            sagas = list(result.scalars().all())
            for saga in sagas:
                saga.updated_at = now
            await session.commit()
        return [s.id for s in sagas]
