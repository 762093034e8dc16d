"""Read-only models for the per-platform tenant databases.

These tables are populated by the platform extraction pipeline; this service
only queries them. They live on their own declarative base so they are never
part of control-plane migrations.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.dialects.postgresql import ARRAY
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Engagement categories tracked on each member_activities snapshot
ENGAGEMENT_CATEGORIES = (
    "all_active",
    "all_new_active",
    "all_consistent",
    "all_vital",
    "all_new_disengaged",
    "all_disengaged_were_newly_active",
    "all_disengaged_were_consistently_active",
    "all_disengaged_were_vital",
    "all_lurker",
    "all_about_to_disengage",
    "all_dropped",
    "all_joined",
    "all_returned",
    "all_still_active",
)


class TenantBase(DeclarativeBase):
    pass


class Channel(TenantBase):
    __tablename__ = "channels"

    channel_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(default=None)
    parent_id: Mapped[str | None] = mapped_column(default=None)
    type: Mapped[int | None] = mapped_column(default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class Role(TenantBase):
    __tablename__ = "roles"

    role_id: Mapped[str] = mapped_column(String, primary_key=True)
    name: Mapped[str | None] = mapped_column(default=None)
    color: Mapped[int | None] = mapped_column(default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class GuildMember(TenantBase):
    __tablename__ = "guild_members"

    discord_id: Mapped[str] = mapped_column(String, primary_key=True)
    username: Mapped[str | None] = mapped_column(default=None)
    discriminator: Mapped[str | None] = mapped_column(default=None)
    global_name: Mapped[str | None] = mapped_column(default=None)
    nickname: Mapped[str | None] = mapped_column(default=None)
    avatar: Mapped[str | None] = mapped_column(default=None)
    roles: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    joined_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)


class MemberActivity(TenantBase):
    __tablename__ = "member_activities"

    date: Mapped[datetime] = mapped_column(DateTime(timezone=True), primary_key=True)
    all_active: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_new_active: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_consistent: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_vital: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_new_disengaged: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_disengaged_were_newly_active: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_disengaged_were_consistently_active: Mapped[list[str]] = mapped_column(
        ARRAY(String), default=list
    )
    all_disengaged_were_vital: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_lurker: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_about_to_disengage: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_dropped: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_joined: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_returned: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
    all_still_active: Mapped[list[str]] = mapped_column(ARRAY(String), default=list)
