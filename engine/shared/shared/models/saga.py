"""Saga model - persisted, resumable dispatch workflow for one announcement target."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class Saga(Base):
    __tablename__ = "sagas"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    announcement_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("announcements.id", ondelete="SET NULL"), default=None, index=True
    )
    # Trigger whose firing created this saga
    trigger_job_id: Mapped[str] = mapped_column(String)
    target_index: Mapped[int] = mapped_column(Integer)
    choreography: Mapped[str] = mapped_column(String)  # "announcement_public" | "announcement_private"

    step: Mapped[str] = mapped_column(String, default="start")
    status: Mapped[str] = mapped_column(String, default="running")  # running | done | failed
    data: Mapped[dict] = mapped_column(JSON)

    failed_step: Mapped[str | None] = mapped_column(String, default=None)
    error: Mapped[str | None] = mapped_column(Text, default=None)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    __table_args__ = (
        UniqueConstraint(
            "announcement_id", "trigger_job_id", "target_index", name="uq_saga_trigger_target"
        ),
    )
