"""High-level raider service used by the command layer and the scheduler."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .config import Settings, get_settings, resolve_api_key
from .models import AlertMessage, AlertSink, BankTransfer, EntityType, GuildSettings, NationLink, Watch
from .pnw_client import PnWClient, nation_url
from .ranges import DeclareWindow, classify, describe
from .services.deposits import DepositPoller, build_deposit_message
from .services.ledger import AlertLedger
from .services.linking import NationLinker
from .services.radar import RadarPoller
from .services.wars import WarAlertPoller
from .services.watchlist import WatchRegistry
from .state import RaiderState
from .telemetry import track_duration

logger = logging.getLogger(__name__)


def parse_nation_id(raw: Any) -> int:
    """Accept a bare id or a nation URL; raise ``ValueError`` otherwise."""

    text = str(raw).strip()
    if "id=" in text:
        text = text.rsplit("id=", 1)[1].split("&", 1)[0]
    if not text.isdigit() or int(text) <= 0:
        raise ValueError("Invalid nation ID.")
    return int(text)


class RaiderService:
    """Wires settings, persistence, the game API and the decision components."""

    def __init__(
        self,
        db_path: Path,
        settings: Optional[Settings] = None,
        *,
        client: Optional[PnWClient] = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.state = RaiderState(db_path, self.settings)
        self.client = client or PnWClient(
            resolve_api_key(),
            graphql_url=self.settings.graphql_url,
            timeout=self.settings.api_timeout_sec,
            military_ttl_seconds=self.settings.military_cache_ttl_sec,
        )
        self.ledger = AlertLedger(self.state)
        self.watches = WatchRegistry(self.state)
        self.linker = NationLinker(self.state)
        self.window = DeclareWindow(self.settings.declare_min_ratio, self.settings.declare_max_ratio)

    async def aclose(self) -> None:
        await self.client.aclose()

    def build_pollers(self, sink: AlertSink) -> Tuple[DepositPoller, RadarPoller, WarAlertPoller]:
        deposits = DepositPoller(
            self.state,
            self.client,
            sink,
            self.settings,
            ledger=self.ledger,
            watches=self.watches,
            linker=self.linker,
        )
        radar = RadarPoller(
            self.state,
            self.client,
            sink,
            self.settings,
            ledger=self.ledger,
            watches=self.watches,
            linker=self.linker,
        )
        wars = WarAlertPoller(self.state, self.client, sink, self.settings, ledger=self.ledger)
        return deposits, radar, wars

    # Linking -----------------------------------------------------------
    def link_nation(self, discord_user_id: str, raw_nation_id: Any, guild_id: Optional[str] = None) -> NationLink:
        nation_id = parse_nation_id(raw_nation_id)
        return self.linker.link(discord_user_id, nation_id, guild_id=guild_id)

    def primary_nation(self, discord_user_id: str) -> Optional[int]:
        return self.linker.primary(discord_user_id)

    # Dossier -----------------------------------------------------------
    async def dossier(
        self,
        discord_user_id: str,
        raw_target_id: Any,
        guild_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Collect target intel and the caller's range to it.

        Raises ``LookupError`` when the game API has no such nation.
        """

        target_id = parse_nation_id(raw_target_id)
        primary = self.linker.primary(discord_user_id)
        ids = [target_id] + ([primary] if primary else [])
        with track_duration("dossier_fetch"):
            nations = await self.client.fetch_nations(ids)
            target = nations.get(target_id)
            if target is None:
                raise LookupError(f"Nation #{target_id} was not found.")
            wars = await self.client.fetch_active_wars(target_id)
            military = await self.client.fetch_military(target_id)

        near_pct = self.guild_settings(guild_id).near_range_pct if guild_id else self.settings.near_range_pct
        data: Dict[str, Any] = {
            "target": target,
            "target_url": nation_url(target_id),
            "wars": wars,
            "military": military,
            "window": None,
            "range": None,
        }
        attacker = nations.get(primary) if primary else None
        if attacker is None:
            data["range_text"] = "Link a nation with /link_nation to see your range."
            return data
        result = classify(attacker.score, target.score, near_pct, window=self.window)
        data["attacker"] = attacker
        data["range"] = result
        data["range_text"] = describe(result)
        if attacker.score:
            data["window"] = self.window.bounds(attacker.score)
        return data

    # Watches -----------------------------------------------------------
    def add_watch(
        self,
        discord_user_id: str,
        raw_nation_id: Any,
        *,
        guild_id: Optional[str] = None,
        dm_enabled: Optional[bool] = None,
        bank_abs_usd: Optional[float] = None,
        bank_rel_pct: Optional[float] = None,
        beige_early_min: Optional[int] = None,
        inrange_only: Optional[bool] = None,
    ) -> Watch:
        nation_id = parse_nation_id(raw_nation_id)
        if dm_enabled is None and self.watches.get_watch(discord_user_id, nation_id) is None:
            dm_enabled = self._dm_default(guild_id)
        return self.watches.upsert_watch(
            discord_user_id,
            nation_id,
            dm_enabled=dm_enabled,
            bank_abs_usd=bank_abs_usd,
            bank_rel_pct=bank_rel_pct,
            beige_early_min=beige_early_min,
            inrange_only=inrange_only,
        )

    def remove_watch(self, discord_user_id: str, raw_nation_id: Any) -> bool:
        return self.watches.remove_watch(discord_user_id, parse_nation_id(raw_nation_id))

    def list_watches(self, discord_user_id: str) -> List[Watch]:
        return self.watches.list_watches(discord_user_id)

    def toggle_watch(self, discord_user_id: str, nation_id: int, guild_id: Optional[str] = None) -> bool:
        return self.watches.toggle(discord_user_id, nation_id, dm_default=self._dm_default(guild_id))

    def _dm_default(self, guild_id: Optional[str]) -> bool:
        if guild_id:
            return self.guild_settings(guild_id).dm_default
        return self.settings.dm_default

    # Guild settings ----------------------------------------------------
    def guild_settings(self, guild_id: str) -> GuildSettings:
        return self.state.get_guild_settings(guild_id)

    def radar_interval_ms(self) -> int:
        """Fastest cadence requested by any guild with a radar channel."""

        intervals = [
            guild.radar_poll_ms
            for guild in self.state.all_guild_settings()
            if guild.radar_enabled and guild.radar_channel_id
        ]
        return min(intervals) if intervals else self.settings.radar_poll_ms

    def update_guild_settings(self, guild_id: str, **fields: Any) -> GuildSettings:
        supplied = {key: value for key, value in fields.items() if value is not None}
        updated = self.state.update_guild_settings(guild_id, **supplied)
        logger.info("Updated settings for guild %s: %s", guild_id, ", ".join(sorted(supplied)) or "none")
        return updated

    # Test alert --------------------------------------------------------
    def sample_deposit_message(self, notional_usd: Optional[float] = None) -> AlertMessage:
        """A realistic deposit alert that never touches the ledger."""

        amount = notional_usd if notional_usd is not None else max(self.settings.bank_abs_usd, 1.0) * 1.2
        event = BankTransfer(
            id=0,
            created_at=datetime.now(timezone.utc),
            sender_id=1,
            sender_type=EntityType.ALLIANCE,
            receiver_id=1,
            receiver_type=EntityType.NATION,
            cash=amount,
            sender_name="Sample Alliance",
            receiver_name="Sample Nation",
        )
        message = build_deposit_message(event, amount)
        message.title = "🧪 Test deposit alert"
        message.footer = "Test alert • Bank Radar"
        message.watch_button = False
        return message


__all__ = ["RaiderService", "parse_nation_id"]
