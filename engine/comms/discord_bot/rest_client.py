"""Discord client - sends announcement messages through the Discord REST API."""

from __future__ import annotations

import httpx
import structlog

from shared.config import Settings
from shared.schemas.dispatch import DispatchOutcome

logger = structlog.get_logger()

# Discord JSON error code for "Cannot send messages to this user"
_DM_DISABLED_CODE = 50007


class DiscordRestClient:
    """Channel and direct-message sends over Discord REST v10.

    Every call returns a DispatchOutcome instead of raising: rate limits,
    server errors and transport failures are ``transient``; any other 4xx
    (missing access, unknown channel, DMs disabled) is ``permanent``.
    """

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None):
        self.base_url = settings.discord_api_base.rstrip("/")
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bot {settings.discord_token}",
                "Content-Type": "application/json",
            },
            timeout=settings.discord_request_timeout_seconds,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _post(self, path: str, json: dict) -> tuple[DispatchOutcome, dict]:
        try:
            resp = await self._client.post(path, json=json)
        except httpx.TransportError as e:
            logger.warning("discord_transport_error", path=path, error=str(e))
            return DispatchOutcome.transient(f"transport error: {e}"), {}

        if resp.status_code == 429:
            retry_after = _json(resp).get("retry_after")
            logger.warning("discord_rate_limited", path=path, retry_after=retry_after)
            return DispatchOutcome.transient(f"rate limited (retry_after={retry_after})"), {}
        if resp.status_code >= 500:
            return DispatchOutcome.transient(f"Discord API error {resp.status_code}"), {}
        if resp.status_code >= 400:
            body = _json(resp)
            if body.get("code") == _DM_DISABLED_CODE:
                return DispatchOutcome.permanent("recipient does not accept direct messages"), body
            message = body.get("message") or resp.text[:200]
            return DispatchOutcome.permanent(f"Discord API error {resp.status_code}: {message}"), body

        body = _json(resp)
        return DispatchOutcome.delivered(body.get("id")), body

    # ------------------------------------------------------------------
    # Sends
    # ------------------------------------------------------------------

    async def send_channel_message(self, channel_id: str, text: str) -> DispatchOutcome:
        outcome, _ = await self._post(f"/channels/{channel_id}/messages", {"content": text})
        return outcome

    async def send_direct_message(self, user_id: str, text: str) -> DispatchOutcome:
        """Open (or reuse) the DM channel with ``user_id`` and post into it."""
        outcome, body = await self._post("/users/@me/channels", {"recipient_id": user_id})
        if outcome.status != "delivered":
            return outcome
        dm_channel_id = body.get("id")
        if not dm_channel_id:
            return DispatchOutcome.permanent("Discord returned no DM channel id")
        return await self.send_channel_message(dm_channel_id, text)

    async def aclose(self) -> None:
        await self._client.aclose()


def _json(resp: httpx.Response) -> dict:
    try:
        data = resp.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}
