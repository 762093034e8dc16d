"""Dispatch schemas shared by the orchestrator and chat-platform clients."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict

FanoutKind = Literal["public", "private"]


class DispatchOutcome(BaseModel):
    """Result of a single send attempt returned by a chat client."""

    status: Literal["delivered", "transient", "permanent"]
    message_id: str | None = None
    error: str | None = None

    @classmethod
    def delivered(cls, message_id: str | None = None) -> DispatchOutcome:
        return cls(status="delivered", message_id=message_id)

    @classmethod
    def transient(cls, error: str) -> DispatchOutcome:
        return cls(status="transient", error=error)

    @classmethod
    def permanent(cls, error: str) -> DispatchOutcome:
        return cls(status="permanent", error=error)


class DispatchUnit(BaseModel):
    """One composed message bound for a channel (public) or a user (private)."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    address: str  # channel id or external user id
    kind: FanoutKind
    text: str


class DeliveryRecord(BaseModel):
    """Terminal outcome of a dispatch unit, kept for audit."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    address: str
    kind: FanoutKind
    status: Literal["delivered", "failed"]
    attempts: int
    message_id: str | None = None
    error: str | None = None


class SafetyMessageReference(BaseModel):
    """Platform ids of the posted safety notice, used to build the deep link."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    guild_id: str
    channel_id: str
    message_id: str
