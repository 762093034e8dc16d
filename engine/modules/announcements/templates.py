"""Message composition - placeholder substitution and the safety notice."""

from __future__ import annotations

import re

from shared.config import Settings
from shared.schemas.dispatch import SafetyMessageReference

# Handlebars-style ``{{ name }}`` placeholders
_PLACEHOLDER_RE = re.compile(r"\{\{\s*(\w+)\s*\}\}")

RECIPIENT_PLACEHOLDER = "username"


def render_template(template: str, values: dict[str, str] | None = None) -> str:
    """Substitute ``{{ name }}`` placeholders; names without a value render empty."""
    values = values or {}

    def _replace(m: re.Match) -> str:
        return values.get(m.group(1), "")

    return _PLACEHOLDER_RE.sub(_replace, template)


def mention(discord_id: str) -> str:
    return f"<@{discord_id}>"


def safety_message_link(reference: SafetyMessageReference, base_url: str) -> str:
    """Deep link to the posted safety notice: ``<base>/<guild>/<channel>/<message>``."""
    return (
        f"{base_url.rstrip('/')}/{reference.guild_id}"
        f"/{reference.channel_id}/{reference.message_id}"
    )


def safety_notice(reference: SafetyMessageReference, settings: Settings, community: str | None) -> str:
    return settings.safety_notice_template.format(
        community=community or "this community",
        link=safety_message_link(reference, settings.discord_deep_link_base),
    )


def compose_public_message(template: str) -> str:
    return render_template(template)


def compose_private_message(
    template: str,
    discord_id: str,
    *,
    settings: Settings,
    safety_reference: SafetyMessageReference | None = None,
    community: str | None = None,
) -> str:
    """Render ``template`` for one recipient, appending the safety notice when one was posted."""
    message = render_template(template, {RECIPIENT_PLACEHOLDER: mention(discord_id)})
    if safety_reference is None:
        return message
    return f"{message}\n{safety_notice(safety_reference, settings, community)}"
