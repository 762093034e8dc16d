"""Announcement schemas - targets, create/update payloads and query pages.

A target's delivery is an explicit tagged variant decided when the target is
constructed:

- ``PublicFanout``  - post the template to each listed channel
- ``PrivateFanout`` - direct-message the union of users, role members and
  engagement cohorts, optionally preceded by a safety notice in a channel
- ``Unclassified``  - no audience configured; never dispatched

Request payloads may still use the flat ``options`` shape; it is classified
into one of the variants on the way in.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from shared.models.tenant import ENGAGEMENT_CATEGORIES

TargetKind = Literal["public", "private", "unknown"]

_OPTION_KEYS = frozenset(
    {
        "channel_ids",
        "user_ids",
        "role_ids",
        "engagement_categories",
        "safety_message_channel_id",
    }
)


def _dedupe(values: list[str]) -> list[str]:
    return list(dict.fromkeys(str(v) for v in values))


class PublicFanout(BaseModel):
    """Deliver the template to each channel."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["public"] = "public"
    channel_ids: list[str] = Field(min_length=1)

    @field_validator("channel_ids")
    @classmethod
    def _unique_channels(cls, v: list[str]) -> list[str]:
        return _dedupe(v)


class PrivateFanout(BaseModel):
    """Deliver the template to each recipient by direct message."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["private"] = "private"
    user_ids: list[str] = Field(default_factory=list)
    role_ids: list[str] = Field(default_factory=list)
    engagement_categories: list[str] = Field(default_factory=list)
    safety_message_channel_id: str | None = None

    @field_validator("user_ids", "role_ids", "engagement_categories")
    @classmethod
    def _unique_ids(cls, v: list[str]) -> list[str]:
        return _dedupe(v)

    @field_validator("engagement_categories")
    @classmethod
    def _known_categories(cls, v: list[str]) -> list[str]:
        unknown = [c for c in v if c not in ENGAGEMENT_CATEGORIES]
        if unknown:
            raise ValueError(f"Unknown engagement categories: {', '.join(unknown)}")
        return v

    @model_validator(mode="after")
    def _has_audience(self) -> PrivateFanout:
        if not (self.user_ids or self.role_ids or self.engagement_categories):
            raise ValueError("Private fan-out needs user_ids, role_ids or engagement_categories")
        return self


class Unclassified(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    kind: Literal["unknown"] = "unknown"


Delivery = Annotated[
    Union[PublicFanout, PrivateFanout, Unclassified],
    Field(discriminator="kind"),
]


def classify_target(options: dict[str, Any] | None) -> TargetKind:
    """Return the delivery type implied by a flat options dict."""
    options = options or {}
    if options.get("channel_ids"):
        return "public"
    if options.get("user_ids") or options.get("role_ids") or options.get("engagement_categories"):
        return "private"
    return "unknown"


def delivery_from_options(options: dict[str, Any] | None) -> dict[str, Any]:
    """Convert the flat ``options`` shape into a tagged delivery dict.

    Raises ValueError for unknown keys and for options mixing public and
    private audiences.
    """
    options = dict(options or {})
    extra = set(options) - _OPTION_KEYS
    if extra:
        raise ValueError(f"Unknown target options: {', '.join(sorted(extra))}")

    kind = classify_target(options)
    if kind == "public":
        private_keys = [
            k
            for k in ("user_ids", "role_ids", "engagement_categories", "safety_message_channel_id")
            if options.get(k)
        ]
        if private_keys:
            raise ValueError(
                "A target cannot combine channel_ids with " + ", ".join(private_keys)
            )
        return {"kind": "public", "channel_ids": options["channel_ids"]}
    if kind == "private":
        return {
            "kind": "private",
            "user_ids": options.get("user_ids") or [],
            "role_ids": options.get("role_ids") or [],
            "engagement_categories": options.get("engagement_categories") or [],
            "safety_message_channel_id": options.get("safety_message_channel_id"),
        }
    return {"kind": "unknown"}


class AnnouncementTarget(BaseModel):
    """One platform-scoped delivery instruction inside an announcement."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    platform_id: uuid.UUID
    template: str
    delivery: Delivery

    @model_validator(mode="before")
    @classmethod
    def _classify_options(cls, values: Any) -> Any:
        if isinstance(values, dict) and "options" in values:
            if "delivery" in values:
                raise ValueError("Provide either options or delivery, not both")
            values = dict(values)
            values["delivery"] = delivery_from_options(values.pop("options"))
        return values

    @property
    def kind(self) -> TargetKind:
        return self.delivery.kind


def parse_targets(data: list[dict] | None) -> list[AnnouncementTarget]:
    """Load the persisted ``Announcement.data`` list into typed targets."""
    return [AnnouncementTarget.model_validate(item) for item in data or []]


def dump_targets(targets: list[AnnouncementTarget]) -> list[dict]:
    return [t.model_dump(mode="json") for t in targets]


def _as_utc(value: datetime | None) -> datetime | None:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class AnnouncementCreate(BaseModel):
    """Fields accepted when creating an announcement."""

    title: str | None = None
    community_id: uuid.UUID | None = None
    draft: bool = False
    scheduled_at: datetime | None = None
    data: list[AnnouncementTarget] = Field(default_factory=list)
    created_by: str | None = None

    @field_validator("scheduled_at")
    @classmethod
    def _tz_aware(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class AnnouncementUpdate(BaseModel):
    """Partial update; only fields explicitly set are applied."""

    title: str | None = None
    draft: bool | None = None
    scheduled_at: datetime | None = None
    data: list[AnnouncementTarget] | None = None
    updated_by: str | None = None

    @field_validator("scheduled_at")
    @classmethod
    def _tz_aware(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)

    def to_patch(self) -> dict[str, Any]:
        """Column patch for the fields that were set."""
        patch = self.model_dump(exclude_unset=True, exclude={"data"})
        if "data" in self.model_fields_set and self.data is not None:
            patch["data"] = dump_targets(self.data)
        return patch


class AnnouncementRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    title: str | None
    community_id: uuid.UUID | None
    draft: bool
    scheduled_at: datetime | None
    job_id: str | None
    data: list[dict]
    created_at: datetime
    updated_at: datetime


class AnnouncementPage(BaseModel):
    results: list[AnnouncementRead]
    limit: int
    page: int
    total_pages: int
    total_results: int
