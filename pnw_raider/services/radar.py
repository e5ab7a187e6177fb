"""Watch radar: slot-open and beige-exit alerts for watched nations."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List, Optional

from ..config import Settings
from ..models import MAX_WAR_SLOTS, AlertMessage, AlertSink, AlertType, GuildSettings, Nation, Watch
from ..pnw_client import PnWClient, nation_url
from ..ranges import Anchor, DeclareWindow
from ..state import RaiderState
from ..telemetry import TelemetryCollector, get_telemetry
from .ledger import AlertLedger, beige_dm_fingerprint, beige_fingerprint, slot_fingerprint
from .linking import NationLinker, RangeGate
from .watchlist import WatchRegistry

logger = logging.getLogger(__name__)

BEIGE_COLOR = 0xF1C40F
SLOT_COLOR = 0xE74C3C


@dataclass
class RadarCycleResult:
    nations: int = 0
    slot_alerts: int = 0
    beige_alerts: int = 0
    dms: int = 0
    skipped: bool = False
    ok: bool = True


def _nation_header(nation: Nation) -> List[str]:
    lines = []
    if nation.score is not None:
        lines.append(f"**Score:** {nation.score:,.2f}")
    if nation.alliance_name:
        lines.append(f"**Alliance:** {nation.alliance_name}")
    if nation.cities is not None:
        lines.append(f"**Cities:** {nation.cities}")
    return lines


def build_slot_message(nation: Nation) -> AlertMessage:
    lines = [
        f"**Offensive slots open:** {nation.open_offensive_slots}/{MAX_WAR_SLOTS}",
        f"**Defensive slots open:** {nation.open_defensive_slots}/{MAX_WAR_SLOTS}",
        *_nation_header(nation),
    ]
    return AlertMessage(
        kind=AlertType.SLOT_OPEN,
        title=f"⚔️ War slot open: {nation.name}",
        lines=lines,
        subject_id=nation.id,
        color=SLOT_COLOR,
        footer=f"Nation #{nation.id} • Watch Radar",
        links=[("Nation", nation_url(nation.id))],
    )


def build_beige_message(nation: Nation, minutes_left: int) -> AlertMessage:
    lines = [
        f"Leaves beige in about **{minutes_left} min** ({nation.beige_turns} turn(s))",
        *_nation_header(nation),
        f"**Defensive slots open:** {nation.open_defensive_slots}/{MAX_WAR_SLOTS}",
    ]
    return AlertMessage(
        kind=AlertType.BEIGE_SOON,
        title=f"🟡 Beige exit soon: {nation.name}",
        lines=lines,
        subject_id=nation.id,
        color=BEIGE_COLOR,
        footer=f"Nation #{nation.id} • Watch Radar",
        links=[("Nation", nation_url(nation.id))],
    )


class RadarPoller:
    """Checks every watched nation once per cycle.

    Channel alerts are limited by a per-nation cooldown in the ledger. Beige
    DMs go to each watcher whose lead time covers the estimated exit, at most
    once per watcher and beige turn count when DM dedup is on.
    """

    def __init__(
        self,
        state: RaiderState,
        client: PnWClient,
        sink: AlertSink,
        settings: Settings,
        *,
        ledger: Optional[AlertLedger] = None,
        watches: Optional[WatchRegistry] = None,
        linker: Optional[NationLinker] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._state = state
        self._client = client
        self._sink = sink
        self._settings = settings
        self._ledger = ledger or AlertLedger(state)
        self._watches = watches or WatchRegistry(state)
        self._linker = linker or NationLinker(state)
        self._telemetry = telemetry
        self._window = DeclareWindow(settings.declare_min_ratio, settings.declare_max_ratio)
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _metrics(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    async def run_once(self) -> RadarCycleResult:
        if self._in_flight:
            logger.debug("Watch radar tick skipped; previous cycle still running")
            self._metrics().track_system_event("tick_skipped", source="radar")
            return RadarCycleResult(skipped=True)
        self._in_flight = True
        result = RadarCycleResult()
        started = time.perf_counter()
        try:
            await self._run_cycle(result)
        except Exception:
            result.ok = False
            logger.exception("Watch radar cycle failed")
        finally:
            self._in_flight = False
        self._metrics().track_poll_cycle(
            "radar",
            duration_ms=(time.perf_counter() - started) * 1000,
            fetched=result.nations,
            alerts=result.slot_alerts + result.beige_alerts + result.dms,
            ok=result.ok,
        )
        logger.info(
            "Watch radar tick - nations=%d slot_alerts=%d beige_alerts=%d dms=%d",
            result.nations,
            result.slot_alerts,
            result.beige_alerts,
            result.dms,
        )
        return result

    async def _run_cycle(self, result: RadarCycleResult) -> None:
        nation_ids = self._watches.watched_nation_ids()
        if not nation_ids:
            return
        nations = await self._client.fetch_nations(nation_ids)
        result.nations = len(nations)
        if not nations:
            return
        guilds = [
            guild
            for guild in self._state.all_guild_settings()
            if guild.radar_enabled and guild.radar_channel_id
        ]
        gate = RangeGate(self._client, self._linker, self._window)
        gate.seed(nations)
        for nation_id in nation_ids:
            nation = nations.get(nation_id)
            if nation is None:
                continue
            await self._check_slots(nation, guilds, gate, result)
            await self._check_beige(nation, guilds, gate, result)

    async def _check_slots(
        self,
        nation: Nation,
        guilds: List[GuildSettings],
        gate: RangeGate,
        result: RadarCycleResult,
    ) -> None:
        offensive_open = nation.open_offensive_slots
        defensive_open = nation.open_defensive_slots
        if offensive_open <= 0 and defensive_open <= 0:
            return
        if await self._post_channel_alert(
            AlertType.SLOT_OPEN,
            nation,
            build_slot_message(nation),
            guilds,
            gate,
            value=offensive_open + defensive_open,
            fingerprint=slot_fingerprint(nation.id, offensive_open, defensive_open),
        ):
            result.slot_alerts += 1

    async def _check_beige(
        self,
        nation: Nation,
        guilds: List[GuildSettings],
        gate: RangeGate,
        result: RadarCycleResult,
    ) -> None:
        if nation.beige_turns <= 0:
            return
        settings = self._settings
        minutes_left = nation.beige_turns * settings.minutes_per_turn
        qualifying: List[Watch] = []
        for watch in self._watches.watchers_of(nation.id):
            lead = watch.beige_early_min if watch.beige_early_min is not None else settings.beige_lead_minutes
            if lead >= minutes_left:
                qualifying.append(watch)
        if not qualifying:
            return

        message = build_beige_message(nation, minutes_left)
        for watch in qualifying:
            if watch.inrange_only and not await gate.user_can_hit(
                watch.discord_user_id, nation.id, settings.near_range_pct, anchor=Anchor.TARGET
            ):
                continue
            fingerprint = beige_dm_fingerprint(nation.id, watch.discord_user_id, nation.beige_turns)
            if settings.dedupe_beige_dms and self._ledger.has_fired(fingerprint):
                continue
            delivered = await self._sink.send_direct_message(
                watch.discord_user_id, message, purpose="beige watch DM"
            )
            self._metrics().track_alert(AlertType.BEIGE_SOON_DM.value, audience="dm")
            if delivered:
                result.dms += 1
            if settings.dedupe_beige_dms:
                self._ledger.record(AlertType.BEIGE_SOON_DM, nation.id, minutes_left, fingerprint)

        if await self._post_channel_alert(
            AlertType.BEIGE_SOON,
            nation,
            message,
            guilds,
            gate,
            value=minutes_left,
            fingerprint=beige_fingerprint(nation.id, nation.beige_turns),
        ):
            result.beige_alerts += 1

    async def _post_channel_alert(
        self,
        alert_type: AlertType,
        nation: Nation,
        message: AlertMessage,
        guilds: List[GuildSettings],
        gate: RangeGate,
        *,
        value: float,
        fingerprint: str,
    ) -> bool:
        """Post to every radar channel unless the subject is still cooling down."""

        if not guilds:
            return False
        if self._ledger.in_cooldown(alert_type, nation.id, self._settings.radar_cooldown_minutes):
            return False
        targets = []
        for guild in guilds:
            if guild.inrange_only and not await gate.guild_can_hit(
                guild, nation.id, anchor=Anchor.TARGET
            ):
                continue
            targets.append(guild)
        if not targets:
            return False
        for guild in targets:
            await self._sink.post_to_channel(
                int(guild.radar_channel_id),
                message.with_mention(guild.alerts_role_id),
                purpose=f"{alert_type.value} alert",
            )
            self._metrics().track_alert(alert_type.value, audience="channel")
        self._ledger.record(alert_type, nation.id, value, fingerprint)
        return True


__all__ = ["RadarCycleResult", "RadarPoller", "build_beige_message", "build_slot_message"]
