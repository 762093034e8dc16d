"""Audience resolver - turns a target's audience description into recipients.

All lookups are read-only queries against a tenant datastore. Empty input
returns empty output without touching the database, and zero matches are
never an error.
"""

from __future__ import annotations

import structlog
from sqlalchemy import select

from modules.announcements.tenancy import TenantHandle
from shared.models.tenant import ENGAGEMENT_CATEGORIES, Channel, GuildMember, MemberActivity, Role
from shared.schemas.announcements import PrivateFanout, PublicFanout, Unclassified
from shared.schemas.audience import ChannelInfo, RoleInfo, TargetAudienceDetails, UserInfo

logger = structlog.get_logger()


def member_username(member: GuildMember) -> str | None:
    """Username, with ``#discriminator`` for legacy (non-"0") discriminators."""
    if member.username is None:
        return None
    if member.discriminator and member.discriminator != "0":
        return f"{member.username}#{member.discriminator}"
    return member.username


def member_display_name(member: GuildMember) -> str | None:
    """Display name priority: nickname, global name, username."""
    return member.nickname or member.global_name or member_username(member)


class AudienceResolver:
    """Stateless queries over a tenant handle."""

    async def resolve_channels(
        self, handle: TenantHandle, channel_ids: list[str] | None
    ) -> list[ChannelInfo]:
        if not channel_ids:
            return []
        async with handle.session_factory() as session:
            result = await session.execute(
                select(Channel).where(Channel.channel_id.in_(list(channel_ids)))
            )
            channels = list(result.scalars().all())
        return [
            ChannelInfo(channel_id=c.channel_id, name=c.name, parent_id=c.parent_id)
            for c in channels
        ]

    async def resolve_users(
        self, handle: TenantHandle, user_ids: list[str] | None
    ) -> list[UserInfo]:
        if not user_ids:
            return []
        async with handle.session_factory() as session:
            result = await session.execute(
                select(GuildMember).where(GuildMember.discord_id.in_(list(user_ids)))
            )
            members = list(result.scalars().all())
        return [
            UserInfo(
                discord_id=m.discord_id,
                username=member_username(m),
                ngu=member_display_name(m),
                avatar=m.avatar,
            )
            for m in members
        ]

    async def resolve_role_info(
        self, handle: TenantHandle, role_ids: list[str] | None
    ) -> list[RoleInfo]:
        if not role_ids:
            return []
        async with handle.session_factory() as session:
            result = await session.execute(select(Role).where(Role.role_id.in_(list(role_ids))))
            roles = list(result.scalars().all())
        return [RoleInfo(role_id=r.role_id, name=r.name, color=r.color) for r in roles]

    async def resolve_roles(self, handle: TenantHandle, role_ids: list[str] | None) -> set[str]:
        """External ids of current members holding any of ``role_ids``."""
        if not role_ids:
            return set()
        async with handle.session_factory() as session:
            result = await session.execute(
                select(GuildMember.discord_id).where(
                    GuildMember.roles.overlap(list(role_ids)),
                    GuildMember.deleted_at.is_(None),
                )
            )
            return set(result.scalars().all())

    async def resolve_cohorts(
        self, handle: TenantHandle, cohort_names: list[str] | None
    ) -> set[str]:
        """External ids in the named categories of the latest activity snapshot."""
        if not cohort_names:
            return set()
        names = [n for n in cohort_names if n in ENGAGEMENT_CATEGORIES]
        if len(names) != len(cohort_names):
            logger.warning(
                "unknown_engagement_categories_ignored",
                tenant_id=handle.tenant_id,
                categories=sorted(set(cohort_names) - set(names)),
            )
        if not names:
            return set()

        async with handle.session_factory() as session:
            result = await session.execute(
                select(MemberActivity).order_by(MemberActivity.date.desc()).limit(1)
            )
            latest = result.scalar_one_or_none()

        if latest is None:
            return set()
        ids: set[str] = set()
        for name in names:
            ids.update(getattr(latest, name) or [])
        return ids

    async def recipients_for(self, handle: TenantHandle, delivery: PrivateFanout) -> list[str]:
        """Deduplicated union of explicit users, role members and cohorts."""
        recipients: set[str] = set(delivery.user_ids)
        recipients |= await self.resolve_roles(handle, delivery.role_ids)
        recipients |= await self.resolve_cohorts(handle, delivery.engagement_categories)
        return sorted(recipients)

    async def describe_target(
        self,
        handle: TenantHandle,
        delivery: PublicFanout | PrivateFanout | Unclassified,
    ) -> TargetAudienceDetails:
        """Resolve ids in a target's audience into display information."""
        if isinstance(delivery, PublicFanout):
            return TargetAudienceDetails(
                channels=await self.resolve_channels(handle, delivery.channel_ids)
            )
        if isinstance(delivery, PrivateFanout):
            safety_channel = None
            if delivery.safety_message_channel_id:
                found = await self.resolve_channels(handle, [delivery.safety_message_channel_id])
                safety_channel = found[0] if found else None
            return TargetAudienceDetails(
                safety_message_channel=safety_channel,
                users=await self.resolve_users(handle, delivery.user_ids),
                roles=await self.resolve_role_info(handle, delivery.role_ids),
                engagement_categories=list(delivery.engagement_categories),
            )
        return TargetAudienceDetails()
