"""Tests for the admin CLI's announcement commands."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock, MagicMock, patch

from click.testing import CliRunner

import cli
from modules.announcements.errors import TenantUnavailable
from modules.announcements.tenancy import PlatformTenant
from shared.schemas.audience import ChannelInfo, RoleInfo, TargetAudienceDetails, UserInfo
from tests.conftest import private_target


def _graph(announcement, details=None, tenant_error=None):
    tenants = MagicMock()
    if tenant_error is not None:
        tenants.platform_tenant = AsyncMock(side_effect=tenant_error)
    else:
        tenants.platform_tenant = AsyncMock(
            return_value=PlatformTenant(platform_id=uuid.uuid4(), tenant_id="guild-1")
        )

    @asynccontextmanager
    async def _resolve(tenant_id):
        yield MagicMock(tenant_id=tenant_id)

    tenants.resolve = _resolve

    graph = {
        "announcements": MagicMock(get=AsyncMock(return_value=announcement)),
        "queue": MagicMock(jobs_for=AsyncMock(return_value=[])),
        "tenants": tenants,
        "audience": MagicMock(describe_target=AsyncMock(return_value=details)),
    }

    @asynccontextmanager
    async def _engine_graph():
        yield graph

    return graph, _engine_graph


class TestShowAnnouncement:
    def test_malformed_id_is_a_usage_error(self):
        build = MagicMock()
        with patch.object(cli, "_engine_graph", build):
            result = CliRunner().invoke(cli.cli, ["announcements", "show", "not-a-uuid"])

        assert result.exit_code == 2
        assert "not-a-uuid" in result.output
        assert not isinstance(result.exception, ValueError)
        build.assert_not_called()

    def test_lists_resolved_audience_names(self, make_announcement):
        announcement = make_announcement(
            data=[
                private_target(
                    user_ids=["u1"],
                    role_ids=["r1"],
                    engagement_categories=["lurkers"],
                    safety_message_channel_id="c9",
                )
            ]
        )
        details = TargetAudienceDetails(
            safety_message_channel=ChannelInfo(channel_id="c9", name="safety"),
            users=[UserInfo(discord_id="u1", ngu="Ada")],
            roles=[RoleInfo(role_id="r1", name="Moderators")],
            engagement_categories=["lurkers"],
        )
        graph, build = _graph(announcement, details=details)

        with patch.object(cli, "_engine_graph", build):
            result = CliRunner().invoke(cli.cli, ["announcements", "show", str(announcement.id)])

        assert result.exit_code == 0, result.output
        assert "Safety channel: safety (c9)" in result.output
        assert "Users: Ada (u1)" in result.output
        assert "Roles: Moderators (r1)" in result.output
        assert "Cohorts: lurkers" in result.output
        graph["audience"].describe_target.assert_awaited_once()

    def test_unreachable_tenant_is_reported_per_target(self, make_announcement):
        announcement = make_announcement(data=[private_target()])
        _, build = _graph(announcement, tenant_error=TenantUnavailable("Platform x is not connected"))

        with patch.object(cli, "_engine_graph", build):
            result = CliRunner().invoke(cli.cli, ["announcements", "show", str(announcement.id)])

        assert result.exit_code == 0, result.output
        assert "Audience unavailable: Platform x is not connected" in result.output

    def test_missing_announcement(self):
        _, build = _graph(None)

        with patch.object(cli, "_engine_graph", build):
            result = CliRunner().invoke(cli.cli, ["announcements", "show", str(uuid.uuid4())])

        assert "not found" in result.output
