"""Audience lookup results returned from tenant datastores."""

from __future__ import annotations

from pydantic import BaseModel


class ChannelInfo(BaseModel):
    channel_id: str
    name: str | None = None
    parent_id: str | None = None


class UserInfo(BaseModel):
    discord_id: str
    username: str | None = None
    ngu: str | None = None  # display name: nickname, global name, username
    avatar: str | None = None


class RoleInfo(BaseModel):
    role_id: str
    name: str | None = None
    color: int | None = None


class TargetAudienceDetails(BaseModel):
    """Resolved display information for a target's configured audience."""

    safety_message_channel: ChannelInfo | None = None
    channels: list[ChannelInfo] = []
    users: list[UserInfo] = []
    roles: list[RoleInfo] = []
    engagement_categories: list[str] = []
