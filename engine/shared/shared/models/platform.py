"""Connected chat platform (one per tenant datastore)."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

from sqlalchemy import DateTime, JSON
from sqlalchemy.orm import Mapped, mapped_column

from shared.models.base import Base


class Platform(Base):
    __tablename__ = "platforms"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    community_id: Mapped[uuid.UUID | None] = mapped_column(default=None, index=True)
    name: Mapped[str] = mapped_column(default="discord")  # discord

    # ``metadata`` is reserved on declarative classes.
    # Holds at least {"id": <guild id>, "name": <guild name>}.
    platform_metadata: Mapped[dict] = mapped_column("metadata", JSON, default=dict)

    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    disconnected_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
