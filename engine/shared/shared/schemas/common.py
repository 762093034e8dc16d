"""Service-level response schemas."""

from __future__ import annotations

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Liveness of the announcements service and its trigger worker."""

    status: str = "ok"
    service: str = "announcements"
    redis: bool = True
    worker_running: bool = False
