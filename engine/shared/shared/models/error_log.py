"""Error log model: failed triggers and sagas recorded for operators."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class ErrorLog(Base):
    __tablename__ = "error_logs"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    service: Mapped[str] = mapped_column(String, default="announcements")
    error_type: Mapped[str] = mapped_column(String)  # "trigger_failed" | "saga_failed"
    exception_class: Mapped[str] = mapped_column(String)
    error_message: Mapped[str] = mapped_column(Text)
    stack_trace: Mapped[str | None] = mapped_column(Text, default=None)

    # Where delivery stopped
    step: Mapped[str | None] = mapped_column(String, default=None)
    job_id: Mapped[str | None] = mapped_column(String, default=None)
    announcement_id: Mapped[uuid.UUID | None] = mapped_column(default=None, index=True)
    saga_id: Mapped[uuid.UUID | None] = mapped_column(default=None)

    status: Mapped[str] = mapped_column(String, default="open")  # open | resolved
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
