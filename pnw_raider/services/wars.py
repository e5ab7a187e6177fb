"""War declaration feed for alliances followed by a guild.

Every new war with the guild's alliance on either side is posted once to the
offense or defense channel. Defensive posts ping the guild's defense role.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

from ..config import Settings
from ..models import AlertMessage, AlertSink, AlertType, GuildSettings, WarRecord
from ..pnw_client import MILITARY_FIELDS, PnWClient, alliance_url, nation_url, war_url
from ..state import RaiderState
from ..telemetry import TelemetryCollector, get_telemetry
from .ledger import AlertLedger, war_fingerprint

logger = logging.getLogger(__name__)

OFFENSE_COLOR = 0xF39C12
DEFENSE_COLOR = 0x3498DB
DEFENSE_NOTE = "New defensive war started!"


@dataclass
class WarCycleResult:
    wars: int = 0
    alerts: int = 0
    skipped: bool = False
    ok: bool = True


def war_status(war: WarRecord) -> str:
    if war.winner_id:
        return "Finished"
    if war.turns_left is not None and war.turns_left <= 0:
        return "Expired"
    return "Active"


def _side_lines(
    label: str,
    nation_id: int,
    name: Optional[str],
    alliance_id: Optional[int],
    alliance_name: Optional[str],
    military: Dict[str, Optional[int]],
) -> List[str]:
    lines = [f"**{label}:** [{name or f'Nation #{nation_id}'}]({nation_url(nation_id)})"]
    if alliance_id and alliance_name:
        lines.append(f"Alliance: [{alliance_name}]({alliance_url(alliance_id)})")
    elif alliance_id:
        lines.append(f"Alliance: Unknown (#{alliance_id})")
    else:
        lines.append("Alliance: None")
    stats = [
        f"{field.capitalize()} {military[field]:,}"
        for field in MILITARY_FIELDS
        if military.get(field) is not None
    ]
    if stats:
        lines.append(" · ".join(stats))
    return lines


def build_war_message(
    war: WarRecord,
    offensive: bool,
    attacker_military: Optional[Dict[str, Optional[int]]] = None,
    defender_military: Optional[Dict[str, Optional[int]]] = None,
) -> AlertMessage:
    """Embed payload for one war, seen from our alliance's side.

    The subject is the enemy nation so the "Notify me" button watches it.
    """

    enemy_id = war.defender_id if offensive else war.attacker_id
    lines = [
        f"**Type:** {war.war_type or 'Unknown'}",
        f"**Status:** {war_status(war)}",
    ]
    if war.started_at is not None:
        lines.append(f"**Started:** <t:{int(war.started_at.timestamp())}:R>")
    if war.turns_left is not None:
        lines.append(f"**Turns left:** {war.turns_left}")
    lines.append("")
    lines.extend(
        _side_lines(
            "Attacker",
            war.attacker_id,
            war.attacker_name,
            war.attacker_alliance_id,
            war.attacker_alliance_name,
            attacker_military or {},
        )
    )
    lines.append("")
    lines.extend(
        _side_lines(
            "Defender",
            war.defender_id,
            war.defender_name,
            war.defender_alliance_id,
            war.defender_alliance_name,
            defender_military or {},
        )
    )
    lines.append("")
    lines.append(f"**Our side:** {'Attacker' if offensive else 'Defender'}")
    return AlertMessage(
        kind=AlertType.WAR_DECLARED,
        title=f"⚔️ Offensive War #{war.id}" if offensive else f"🛡️ Defensive War #{war.id}",
        lines=lines,
        subject_id=enemy_id,
        color=OFFENSE_COLOR if offensive else DEFENSE_COLOR,
        footer=f"War #{war.id} • War Alerts",
        timestamp=war.started_at,
        links=[("Open war", war_url(war.id)), ("Enemy", nation_url(enemy_id))],
        mention_note=None if offensive else DEFENSE_NOTE,
    )


class WarAlertPoller:
    """Posts each new war once per guild that follows one of its alliances."""

    def __init__(
        self,
        state: RaiderState,
        client: PnWClient,
        sink: AlertSink,
        settings: Settings,
        *,
        ledger: Optional[AlertLedger] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._state = state
        self._client = client
        self._sink = sink
        self._settings = settings
        self._ledger = ledger or AlertLedger(state)
        self._telemetry = telemetry
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _metrics(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    async def run_once(self) -> WarCycleResult:
        if self._in_flight:
            logger.debug("War alert tick skipped; previous cycle still running")
            self._metrics().track_system_event("tick_skipped", source="wars")
            return WarCycleResult(skipped=True)
        self._in_flight = True
        result = WarCycleResult()
        started = time.perf_counter()
        try:
            await self._run_cycle(result)
        except Exception:
            result.ok = False
            logger.exception("War alert cycle failed")
        finally:
            self._in_flight = False
        self._metrics().track_poll_cycle(
            "wars",
            duration_ms=(time.perf_counter() - started) * 1000,
            fetched=result.wars,
            alerts=result.alerts,
            ok=result.ok,
        )
        logger.info("War alert tick - wars=%d alerts=%d", result.wars, result.alerts)
        return result

    async def _run_cycle(self, result: WarCycleResult) -> None:
        guilds = self._state.war_guilds()
        if not guilds:
            return
        alliance_ids = {int(guild.war_alliance_id) for guild in guilds}
        wars = await self._client.fetch_alliance_wars(alliance_ids, self._settings.war_page_size)
        result.wars = len(wars)
        # Oldest first so channels read in declaration order.
        for war in sorted(wars, key=lambda item: item.id):
            if not war.active:
                continue
            for guild in guilds:
                if await self._post_war(guild, war):
                    result.alerts += 1

    async def _post_war(self, guild: GuildSettings, war: WarRecord) -> bool:
        offensive = war.attacker_alliance_id == guild.war_alliance_id
        if not offensive and war.defender_alliance_id != guild.war_alliance_id:
            return False
        channel_id = guild.war_channel(offensive)
        if not channel_id:
            return False
        fingerprint = war_fingerprint(guild.guild_id, war.id)
        if self._ledger.has_fired(fingerprint):
            return False
        attacker_military = await self._client.fetch_military(war.attacker_id)
        defender_military = await self._client.fetch_military(war.defender_id)
        message = build_war_message(war, offensive, attacker_military, defender_military)
        if not offensive:
            message = message.with_mention(guild.war_defense_role_id)
        delivered = await self._sink.post_to_channel(
            int(channel_id), message, purpose="war alert"
        )
        self._metrics().track_alert(AlertType.WAR_DECLARED.value, audience="channel")
        if not delivered:
            logger.warning("War #%s alert for guild %s was not delivered", war.id, guild.guild_id)
        self._ledger.record(AlertType.WAR_DECLARED, war.id, war.turns_left or 0, fingerprint)
        return True


__all__ = ["WarAlertPoller", "WarCycleResult", "build_war_message", "war_status"]
