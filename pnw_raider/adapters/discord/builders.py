"""Discord embed/view builders.

Pure-ish construction helpers for Discord UI objects. Alerts arrive as
platform-neutral ``AlertMessage`` values and are only turned into Discord
objects here.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Optional

import discord

from ...models import AlertMessage, GuildSettings, Watch
from ...notional import format_usd

WATCH_TOGGLE_PREFIX = "watch:toggle:"
_MAX_FIELD_LENGTH = 1024
_MAX_DESCRIPTION_LENGTH = 4000
# Clicks after expiry are still handled by the bot's on_interaction listener.
_VIEW_TIMEOUT_SEC = 600


def watch_toggle_id(nation_id: int) -> str:
    return f"{WATCH_TOGGLE_PREFIX}{nation_id}"


def parse_watch_toggle(custom_id: Optional[str]) -> Optional[int]:
    """Return the nation id encoded in a "Notify me" button, if any."""

    if not custom_id or not custom_id.startswith(WATCH_TOGGLE_PREFIX):
        return None
    raw = custom_id[len(WATCH_TOGGLE_PREFIX):]
    if not raw.isdigit():
        return None
    nation_id = int(raw)
    return nation_id if nation_id > 0 else None


def _clamp(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[: limit - 1].rstrip() + "…"


def build_alert_embed(message: AlertMessage) -> discord.Embed:
    embed = discord.Embed(
        title=message.title,
        description=_clamp("\n".join(message.lines), _MAX_DESCRIPTION_LENGTH),
        colour=discord.Colour(message.color),
        timestamp=message.timestamp or datetime.now(timezone.utc),
    )
    if message.footer:
        embed.set_footer(text=message.footer)
    return embed


def build_alert_view(message: AlertMessage) -> Optional[discord.ui.View]:
    """Link buttons plus the "Notify me" toggle. Needs a running event loop."""

    if not message.links and not message.watch_button:
        return None
    view = discord.ui.View(timeout=_VIEW_TIMEOUT_SEC)
    for label, url in message.links[:4]:
        view.add_item(discord.ui.Button(label=label, url=url, style=discord.ButtonStyle.link))
    if message.watch_button:
        view.add_item(
            discord.ui.Button(
                label="Notify me",
                emoji="🔔",
                style=discord.ButtonStyle.secondary,
                custom_id=watch_toggle_id(message.subject_id),
            )
        )
    return view


def mention_content(message: AlertMessage) -> Optional[str]:
    if message.mention_role_id:
        mention = f"<@&{message.mention_role_id}>"
        return f"{mention} {message.mention_note}" if message.mention_note else mention
    return None


def build_dossier_embed(data: Dict[str, Any]) -> discord.Embed:
    """Render the dict returned by ``RaiderService.dossier``."""

    target = data["target"]
    embed = discord.Embed(
        title=f"Dossier — {target.name}",
        url=data.get("target_url"),
        colour=discord.Color.dark_red(),
        timestamp=datetime.now(timezone.utc),
    )
    score = f"{target.score:,.2f}" if target.score is not None else "unknown"
    overview = [f"Score: {score}"]
    if target.alliance_name:
        overview.append(f"Alliance: {target.alliance_name}")
    if target.cities is not None:
        overview.append(f"Cities: {target.cities}")
    if target.beige_turns:
        overview.append(f"Beige: {target.beige_turns} turn(s)")
    if target.vacation_turns:
        overview.append(f"Vacation mode: {target.vacation_turns} turn(s)")
    embed.add_field(name="Overview", value="\n".join(overview), inline=False)

    embed.add_field(
        name="War slots",
        value=(
            f"Offensive open: {target.open_offensive_slots}/3\n"
            f"Defensive open: {target.open_defensive_slots}/3"
        ),
        inline=True,
    )

    military = data.get("military") or {}
    if military:
        lines = [
            f"{name.capitalize()}: {value:,}" if value is not None else f"{name.capitalize()}: ?"
            for name, value in military.items()
        ]
        embed.add_field(name="Military", value="\n".join(lines), inline=True)

    embed.add_field(name="Range", value=data.get("range_text", "Link a nation with /link_nation"), inline=False)
    low, high = data.get("window") or (None, None)
    if low is not None and high is not None:
        embed.add_field(
            name="Your declare window",
            value=f"{low:,.2f} – {high:,.2f}",
            inline=False,
        )

    wars = data.get("wars") or []
    if wars:
        war_lines = []
        for war in wars[:6]:
            attacker = war.attacker_name or f"#{war.attacker_id}"
            defender = war.defender_name or f"#{war.defender_id}"
            war_lines.append(f"{attacker} ⚔️ {defender} ({war.war_type or 'war'})")
        embed.add_field(name="Active wars", value=_clamp("\n".join(war_lines), _MAX_FIELD_LENGTH), inline=False)
    return embed


def build_watchlist_embed(watches: Iterable[Watch]) -> discord.Embed:
    embed = discord.Embed(title="Your watchlist", colour=discord.Color.gold())
    lines = []
    for watch in watches:
        parts = [f"DM {'on' if watch.dm_enabled else 'off'}"]
        if watch.bank_abs_usd is not None:
            parts.append(f"floor {format_usd(watch.bank_abs_usd)}")
        if watch.beige_early_min is not None:
            parts.append(f"beige lead {watch.beige_early_min}m")
        if watch.inrange_only:
            parts.append("in-range only")
        lines.append(f"**#{watch.nation_id}** · " + " · ".join(parts))
    embed.description = _clamp("\n".join(lines), _MAX_DESCRIPTION_LENGTH) if lines else "Not watching anything yet."
    return embed


def build_settings_embed(settings: GuildSettings) -> discord.Embed:
    def _channel(channel_id: Optional[int]) -> str:
        return f"<#{channel_id}>" if channel_id else "not set"

    embed = discord.Embed(title="Raider settings", colour=discord.Color.blurple())
    embed.add_field(
        name="Deposits",
        value=(
            f"Channel: {_channel(settings.deposits_channel_id)}\n"
            f"Enabled: {'yes' if settings.deposits_enabled else 'no'}\n"
            f"Floor: {format_usd(settings.bank_abs_usd)} (rel {settings.bank_rel_pct:g}%)"
        ),
        inline=False,
    )
    embed.add_field(
        name="Radar",
        value=(
            f"Channel: {_channel(settings.radar_channel_id)}\n"
            f"Enabled: {'yes' if settings.radar_enabled else 'no'}\n"
            f"Poll: {settings.radar_poll_ms // 1000}s"
        ),
        inline=False,
    )
    if settings.war_alliance_id:
        defense_role = f"<@&{settings.war_defense_role_id}>" if settings.war_defense_role_id else "none"
        embed.add_field(
            name="Wars",
            value=(
                f"Alliance: #{settings.war_alliance_id}\n"
                f"Enabled: {'yes' if settings.war_alerts_enabled else 'no'}\n"
                f"Offense: {_channel(settings.war_offense_channel_id)}\n"
                f"Defense: {_channel(settings.war_defense_channel_id)} (ping {defense_role})"
            ),
            inline=False,
        )
    role = f"<@&{settings.alerts_role_id}>" if settings.alerts_role_id else "none"
    embed.add_field(
        name="Alerts",
        value=(
            f"Near range: {settings.near_range_pct:g}%\n"
            f"DM on watch: {'yes' if settings.dm_default else 'no'}\n"
            f"In-range only: {'yes' if settings.inrange_only else 'no'}\n"
            f"Mention role: {role}"
        ),
        inline=False,
    )
    return embed


__all__ = [
    "WATCH_TOGGLE_PREFIX",
    "build_alert_embed",
    "build_alert_view",
    "build_dossier_embed",
    "build_settings_embed",
    "build_watchlist_embed",
    "mention_content",
    "parse_watch_toggle",
    "watch_toggle_id",
]
