"""Pydantic schemas for the announcement engine."""

from shared.schemas.announcements import (
    AnnouncementCreate,
    AnnouncementPage,
    AnnouncementRead,
    AnnouncementTarget,
    AnnouncementUpdate,
    PrivateFanout,
    PublicFanout,
    Unclassified,
)
from shared.schemas.audience import ChannelInfo, RoleInfo, TargetAudienceDetails, UserInfo
from shared.schemas.common import HealthResponse
from shared.schemas.dispatch import (
    DeliveryRecord,
    DispatchOutcome,
    DispatchUnit,
    SafetyMessageReference,
)

__all__ = [
    "AnnouncementCreate",
    "AnnouncementPage",
    "AnnouncementRead",
    "AnnouncementTarget",
    "AnnouncementUpdate",
    "ChannelInfo",
    "DeliveryRecord",
    "DispatchOutcome",
    "DispatchUnit",
    "HealthResponse",
    "PrivateFanout",
    "PublicFanout",
    "RoleInfo",
    "SafetyMessageReference",
    "TargetAudienceDetails",
    "Unclassified",
    "UserInfo",
]
