"""Discord-facing delivery and rendering."""

from __future__ import annotations

from .builders import build_alert_embed, build_alert_view, parse_watch_toggle
from .delivery import DiscordDelivery

__all__ = ["DiscordDelivery", "build_alert_embed", "build_alert_view", "parse_watch_toggle"]
