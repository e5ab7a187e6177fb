"""Discord bot entry point for the PnW raider bot."""
import atexit
import logging
import os
from pathlib import Path
from typing import Optional

import discord
from discord import app_commands
from discord.ext import commands

from .adapters.discord.builders import (
    build_dossier_embed,
    build_settings_embed,
    build_watchlist_embed,
    parse_watch_toggle,
)
from .adapters.discord.delivery import DiscordDelivery
from .scheduler import RadarScheduler
from .service import RaiderService
from .services.cursor import BANK_FEED
from .telemetry import get_telemetry
from .telemetry_decorator import track_command

logger = logging.getLogger(__name__)

_GUILD_ONLY = "Use this command inside a server."


def build_bot(
    db_path: Path,
    intents: Optional[discord.Intents] = None,
    *,
    service: Optional[RaiderService] = None,
) -> commands.Bot:
    intents = intents or discord.Intents.default()
    app_id_raw = os.environ.get("DISCORD_APP_ID")
    application_id: Optional[int] = None
    if app_id_raw:
        try:
            application_id = int(app_id_raw)
        except ValueError:
            logger.warning("Invalid DISCORD_APP_ID: %s", app_id_raw)
    bot = commands.Bot(command_prefix="/", intents=intents, application_id=application_id)
    service = service or RaiderService(db_path)
    setattr(bot, "raider_service", service)
    delivery = DiscordDelivery(bot)
    scheduler: Optional[RadarScheduler] = None

    def _shutdown_scheduler() -> None:  # pragma: no cover - process shutdown hook
        if scheduler is not None:
            scheduler.shutdown()

    atexit.register(_shutdown_scheduler)

    @bot.event
    async def on_ready() -> None:
        nonlocal scheduler
        logger.info("Raider bot connected as %s", bot.user)
        try:
            synced = await bot.tree.sync()
            logger.info("Synced %d commands", len(synced))
        except Exception as exc:  # pragma: no cover - logging only
            logger.exception("Failed to sync commands: %s", exc)
        if scheduler is None:
            deposits, radar, wars = service.build_pollers(delivery)
            scheduler = RadarScheduler(
                deposits,
                radar,
                service.settings,
                radar_interval_ms=service.radar_interval_ms,
                wars=wars,
            )
            scheduler.start()

    async def on_interaction(interaction: discord.Interaction) -> None:
        if interaction.type != discord.InteractionType.component:
            return
        data = interaction.data or {}
        nation_id = parse_watch_toggle(data.get("custom_id"))
        if nation_id is None:
            return
        guild_id = str(interaction.guild_id) if interaction.guild_id else None
        watching = service.toggle_watch(str(interaction.user.id), nation_id, guild_id)
        text = (
            f"🔔 Watching nation #{nation_id}. You'll get DMs for its alerts."
            if watching
            else f"🔕 Stopped watching nation #{nation_id}."
        )
        await interaction.response.send_message(text, ephemeral=True)

    bot.add_listener(on_interaction, "on_interaction")
    setattr(bot, "handle_watch_toggle", on_interaction)

    @app_commands.command(name="link_nation", description="Link your Discord user to a PnW nation ID")
    @track_command
    @app_commands.describe(nation_id="Your PnW nation ID or nation URL")
    async def link_nation(interaction: discord.Interaction, nation_id: str) -> None:
        guild_id = str(interaction.guild_id) if interaction.guild_id else None
        try:
            link = service.link_nation(str(interaction.user.id), nation_id, guild_id)
        except ValueError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(
            f"Linked **{interaction.user.name}** → nation **#{link.nation_id}** (primary).",
            ephemeral=True,
        )

    @app_commands.command(name="dossier", description="Show intel and your declare range for a nation")
    @track_command
    @app_commands.describe(nation_id="Target nation ID or nation URL")
    async def dossier(interaction: discord.Interaction, nation_id: str) -> None:
        guild_id = str(interaction.guild_id) if interaction.guild_id else None
        await interaction.response.defer(thinking=True)
        try:
            data = await service.dossier(str(interaction.user.id), nation_id, guild_id)
        except (ValueError, LookupError) as exc:
            await interaction.followup.send(str(exc), ephemeral=True)
            return
        await interaction.followup.send(embed=build_dossier_embed(data))

    watch = app_commands.Group(name="watch", description="Manage your nation watchlist")

    @watch.command(name="add", description="Watch a nation for deposit and radar DMs")
    @track_command
    @app_commands.describe(
        nation_id="Nation ID or nation URL",
        dm="Send me DMs for this nation",
        bank_abs_usd="Minimum deposit value (USD) for DMs",
        beige_early_min="Minutes of warning before beige ends (default 60; one turn is 120)",
        inrange_only="Only DM when my linked nation can hit it",
        bank_rel_pct="Relative deposit floor for DMs, in percent of typical loot",
    )
    async def watch_add(
        interaction: discord.Interaction,
        nation_id: str,
        dm: Optional[bool] = None,
        bank_abs_usd: Optional[float] = None,
        beige_early_min: Optional[int] = None,
        inrange_only: Optional[bool] = None,
        bank_rel_pct: Optional[float] = None,
    ) -> None:
        guild_id = str(interaction.guild_id) if interaction.guild_id else None
        try:
            entry = service.add_watch(
                str(interaction.user.id),
                nation_id,
                guild_id=guild_id,
                dm_enabled=dm,
                bank_abs_usd=bank_abs_usd,
                beige_early_min=beige_early_min,
                inrange_only=inrange_only,
                bank_rel_pct=bank_rel_pct,
            )
        except ValueError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(
            f"Watching nation #{entry.nation_id} (DM {'on' if entry.dm_enabled else 'off'}).",
            ephemeral=True,
        )

    @watch.command(name="remove", description="Stop watching a nation")
    @track_command
    @app_commands.describe(nation_id="Nation ID or nation URL")
    async def watch_remove(interaction: discord.Interaction, nation_id: str) -> None:
        try:
            removed = service.remove_watch(str(interaction.user.id), nation_id)
        except ValueError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        text = "Removed from your watchlist." if removed else "You were not watching that nation."
        await interaction.response.send_message(text, ephemeral=True)

    @watch.command(name="list", description="Show your watchlist")
    @track_command
    async def watch_list(interaction: discord.Interaction) -> None:
        watches = service.list_watches(str(interaction.user.id))
        await interaction.response.send_message(embed=build_watchlist_embed(watches), ephemeral=True)

    settings_group = app_commands.Group(
        name="settings",
        description="Configure raider alerts for this server",
        default_permissions=discord.Permissions(manage_guild=True),
        guild_only=True,
    )

    @settings_group.command(name="show", description="Show this server's raider settings")
    @track_command
    async def settings_show(interaction: discord.Interaction) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        current = service.guild_settings(str(interaction.guild_id))
        await interaction.response.send_message(embed=build_settings_embed(current), ephemeral=True)

    @settings_group.command(name="deposits", description="Configure the bank radar channel")
    @track_command
    @app_commands.describe(channel="Channel for deposit alerts", enabled="Turn deposit alerts on or off")
    async def settings_deposits(
        interaction: discord.Interaction,
        channel: Optional[discord.TextChannel] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        updated = service.update_guild_settings(
            str(interaction.guild_id),
            deposits_channel_id=channel.id if channel else None,
            deposits_enabled=enabled,
        )
        await interaction.response.send_message(embed=build_settings_embed(updated), ephemeral=True)

    @settings_group.command(name="radar", description="Configure the watch radar channel")
    @track_command
    @app_commands.describe(channel="Channel for beige and slot alerts", enabled="Turn radar alerts on or off")
    async def settings_radar(
        interaction: discord.Interaction,
        channel: Optional[discord.TextChannel] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        updated = service.update_guild_settings(
            str(interaction.guild_id),
            radar_channel_id=channel.id if channel else None,
            radar_enabled=enabled,
        )
        await interaction.response.send_message(embed=build_settings_embed(updated), ephemeral=True)

    @settings_group.command(name="thresholds", description="Tune range and deposit thresholds")
    @track_command
    @app_commands.describe(
        near_range_pct="Near-range tolerance in percent",
        bank_abs_usd="Deposit alert floor in USD",
        bank_rel_pct="Relative deposit floor in percent",
        radar_poll_ms="Watch radar interval in milliseconds",
    )
    async def settings_thresholds(
        interaction: discord.Interaction,
        near_range_pct: Optional[float] = None,
        bank_abs_usd: Optional[float] = None,
        bank_rel_pct: Optional[float] = None,
        radar_poll_ms: Optional[int] = None,
    ) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        try:
            updated = service.update_guild_settings(
                str(interaction.guild_id),
                near_range_pct=near_range_pct,
                bank_abs_usd=bank_abs_usd,
                bank_rel_pct=bank_rel_pct,
                radar_poll_ms=radar_poll_ms,
            )
        except ValueError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(embed=build_settings_embed(updated), ephemeral=True)

    @settings_group.command(name="alerts", description="Configure DMs, range gating and mentions")
    @track_command
    @app_commands.describe(
        dm_default="Enable DMs by default when members watch a nation",
        inrange_only="Only post alerts members can act on",
        role="Role to mention on alerts",
    )
    async def settings_alerts(
        interaction: discord.Interaction,
        dm_default: Optional[bool] = None,
        inrange_only: Optional[bool] = None,
        role: Optional[discord.Role] = None,
    ) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        updated = service.update_guild_settings(
            str(interaction.guild_id),
            dm_default=dm_default,
            inrange_only=inrange_only,
            alerts_role_id=role.id if role else None,
        )
        await interaction.response.send_message(embed=build_settings_embed(updated), ephemeral=True)

    @settings_group.command(name="wars", description="Configure war declaration alerts")
    @track_command
    @app_commands.describe(
        alliance_id="Alliance whose wars are announced",
        offense_channel="Channel for wars our members declare",
        defense_channel="Channel for wars declared on our members",
        defense_role="Role pinged when a defensive war starts",
        enabled="Turn war alerts on or off",
    )
    async def settings_wars(
        interaction: discord.Interaction,
        alliance_id: Optional[int] = None,
        offense_channel: Optional[discord.TextChannel] = None,
        defense_channel: Optional[discord.TextChannel] = None,
        defense_role: Optional[discord.Role] = None,
        enabled: Optional[bool] = None,
    ) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        try:
            updated = service.update_guild_settings(
                str(interaction.guild_id),
                war_alliance_id=alliance_id,
                war_offense_channel_id=offense_channel.id if offense_channel else None,
                war_defense_channel_id=defense_channel.id if defense_channel else None,
                war_defense_role_id=defense_role.id if defense_role else None,
                war_alerts_enabled=enabled,
            )
        except ValueError as exc:
            await interaction.response.send_message(str(exc), ephemeral=True)
            return
        await interaction.response.send_message(embed=build_settings_embed(updated), ephemeral=True)

    @app_commands.command(name="test_deposit", description="Post a sample deposit alert to the deposits channel")
    @track_command
    @app_commands.default_permissions(manage_guild=True)
    async def test_deposit(interaction: discord.Interaction) -> None:
        if interaction.guild_id is None:
            await interaction.response.send_message(_GUILD_ONLY, ephemeral=True)
            return
        current = service.guild_settings(str(interaction.guild_id))
        if not current.deposits_channel_id:
            await interaction.response.send_message(
                "No deposits channel configured. Use /settings deposits first.", ephemeral=True
            )
            return
        message = service.sample_deposit_message().with_mention(current.alerts_role_id)
        delivered = await delivery.post_to_channel(
            current.deposits_channel_id, message, purpose="test deposit"
        )
        text = (
            f"Test alert posted to <#{current.deposits_channel_id}>."
            if delivered
            else "Could not post to the deposits channel; check my permissions there."
        )
        await interaction.response.send_message(text, ephemeral=True)

    @app_commands.command(name="raider_status", description="Show bank cursor and alert statistics")
    @track_command
    async def raider_status(interaction: discord.Interaction) -> None:
        cursor = service.state.get_cursor(BANK_FEED)
        report = get_telemetry().generate_report()
        alerts = report.get("alerts") or {}
        lines = [
            f"Bank cursor: {cursor.last_event_id if cursor.last_event_id is not None else 'not primed'}",
            f"Watched nations: {len(service.watches.watched_nation_ids())}",
            "Alerts (24h): "
            + (", ".join(f"{name} {count}" for name, count in sorted(alerts.items())) or "none"),
            f"Delivery failures (24h): {sum((report.get('delivery_failures') or {}).values())}",
        ]
        await interaction.response.send_message("\n".join(lines), ephemeral=True)

    bot.tree.add_command(link_nation)
    bot.tree.add_command(dossier)
    bot.tree.add_command(watch)
    bot.tree.add_command(settings_group)
    bot.tree.add_command(test_deposit)
    bot.tree.add_command(raider_status)
    return bot


def main() -> None:
    level = os.environ.get("PNW_RAIDER_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(level=getattr(logging, level, logging.INFO))
    token = os.environ.get("DISCORD_TOKEN")
    if not token:
        raise RuntimeError("DISCORD_TOKEN environment variable must be set")
    db_path = Path(os.environ.get("PNW_RAIDER_DB", "pnw_raider.db"))
    bot = build_bot(db_path)
    bot.run(token)


__all__ = ["build_bot", "main"]
