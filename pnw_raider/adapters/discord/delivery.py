"""Best-effort alert delivery over a discord.py client."""

from __future__ import annotations

import logging
from typing import Optional

import discord

from ...models import AlertMessage
from ...telemetry import TelemetryCollector, get_telemetry
from .builders import build_alert_embed, build_alert_view, mention_content

logger = logging.getLogger(__name__)


class DiscordDelivery:
    """Sends alerts to channels and users; failures are logged and swallowed."""

    def __init__(self, client: discord.Client, telemetry: Optional[TelemetryCollector] = None) -> None:
        self._client = client
        self._telemetry = telemetry

    def _metrics(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    async def post_to_channel(self, channel_id: int, message: AlertMessage, *, purpose: str) -> bool:
        channel = self._client.get_channel(channel_id)
        try:
            if channel is None:
                channel = await self._client.fetch_channel(channel_id)
            await channel.send(
                content=mention_content(message),
                embed=build_alert_embed(message),
                view=build_alert_view(message),
                allowed_mentions=discord.AllowedMentions(roles=True, users=False, everyone=False),
            )
        except Exception as exc:
            logger.exception("Failed to send %s message", purpose)
            self._metrics().track_delivery_failure(purpose, str(exc))
            return False
        return True

    async def send_direct_message(self, user_id: str, message: AlertMessage, *, purpose: str) -> bool:
        try:
            snowflake = int(user_id)
            user = self._client.get_user(snowflake)
            if user is None:
                user = await self._client.fetch_user(snowflake)
            await user.send(embed=build_alert_embed(message), view=build_alert_view(message))
        except Exception as exc:
            logger.exception("Failed to send %s message", purpose)
            self._metrics().track_delivery_failure(purpose, str(exc))
            return False
        return True


__all__ = ["DiscordDelivery"]
