"""Tests for announcement target classification and request schemas."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from shared.schemas.announcements import (
    AnnouncementCreate,
    AnnouncementTarget,
    AnnouncementUpdate,
    PrivateFanout,
    PublicFanout,
    Unclassified,
    classify_target,
    dump_targets,
    parse_targets,
)


def _target(**options) -> AnnouncementTarget:
    return AnnouncementTarget.model_validate(
        {"platform_id": str(uuid.uuid4()), "template": "Hi", "options": options}
    )


class TestClassifyTarget:
    def test_channels_are_public(self):
        assert classify_target({"channel_ids": ["c1"]}) == "public"

    def test_users_roles_or_categories_are_private(self):
        assert classify_target({"user_ids": ["u1"]}) == "private"
        assert classify_target({"role_ids": ["r1"]}) == "private"
        assert classify_target({"engagement_categories": ["all_active"]}) == "private"

    def test_empty_options_are_unknown(self):
        assert classify_target({}) == "unknown"
        assert classify_target(None) == "unknown"
        assert classify_target({"channel_ids": [], "user_ids": []}) == "unknown"


class TestAnnouncementTarget:
    def test_options_become_public_delivery(self):
        target = _target(channel_ids=["c1", "c2", "c1"])
        assert isinstance(target.delivery, PublicFanout)
        assert target.kind == "public"
        assert target.delivery.channel_ids == ["c1", "c2"]

    def test_options_become_private_delivery(self):
        target = _target(user_ids=["u1"], safety_message_channel_id="s1")
        assert isinstance(target.delivery, PrivateFanout)
        assert target.delivery.safety_message_channel_id == "s1"

    def test_no_audience_is_unclassified(self):
        target = _target()
        assert isinstance(target.delivery, Unclassified)
        assert target.kind == "unknown"

    def test_mixing_public_and_private_rejected(self):
        with pytest.raises(ValidationError, match="cannot combine"):
            _target(channel_ids=["c1"], user_ids=["u1"])

    def test_unknown_option_rejected(self):
        with pytest.raises(ValidationError, match="Unknown target options"):
            _target(channel_ids=["c1"], thread_ids=["t1"])

    def test_unknown_engagement_category_rejected(self):
        with pytest.raises(ValidationError, match="Unknown engagement categories"):
            _target(engagement_categories=["all_active", "all_bored"])

    def test_private_delivery_needs_an_audience(self):
        with pytest.raises(ValidationError):
            PrivateFanout(safety_message_channel_id="s1")

    def test_public_delivery_needs_a_channel(self):
        with pytest.raises(ValidationError):
            PublicFanout(channel_ids=[])

    def test_extra_fields_rejected(self):
        with pytest.raises(ValidationError):
            AnnouncementTarget.model_validate(
                {
                    "platform_id": str(uuid.uuid4()),
                    "template": "Hi",
                    "delivery": {"kind": "public", "channel_ids": ["c1"]},
                    "colour": "red",
                }
            )

    def test_persisted_shape_loads_back(self):
        targets = [_target(channel_ids=["c1"]), _target(role_ids=["r1"])]
        loaded = parse_targets(dump_targets(targets))
        assert [t.kind for t in loaded] == ["public", "private"]
        assert loaded == targets


class TestAnnouncementPayloads:
    def test_naive_scheduled_at_is_treated_as_utc(self):
        values = AnnouncementCreate(scheduled_at=datetime(2030, 1, 1, 12, 0))
        assert values.scheduled_at.tzinfo == timezone.utc

    def test_update_patch_only_contains_set_fields(self):
        patch = AnnouncementUpdate(title="New").to_patch()
        assert patch == {"title": "New"}

    def test_update_patch_serializes_targets(self):
        target = _target(channel_ids=["c1"])
        patch = AnnouncementUpdate(data=[target]).to_patch()
        assert patch["data"][0]["delivery"] == {"kind": "public", "channel_ids": ["c1"]}

    def test_explicit_null_scheduled_at_is_kept(self):
        patch = AnnouncementUpdate(scheduled_at=None).to_patch()
        assert patch == {"scheduled_at": None}
