"""Bank radar: turns the upstream transfer feed into deposit alerts."""
from __future__ import annotations

import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, List, Optional

from ..config import Settings
from ..models import AlertMessage, AlertSink, AlertType, BankTransfer, EntityType, GuildSettings
from ..notional import breakdown, compute_notional_usd, format_usd, passes_floor
from ..pnw_client import PnWClient, alliance_url, nation_url
from ..ranges import DeclareWindow
from ..state import RaiderState
from ..telemetry import TelemetryCollector, get_telemetry
from .cursor import EventCursorTracker, select_new_events
from .ledger import AlertLedger, deposit_dm_fingerprint, deposit_fingerprint
from .linking import NationLinker, RangeGate
from .watchlist import WatchRegistry

logger = logging.getLogger(__name__)

DEPOSIT_COLOR = 0x00E676
_SENDER_LABELS = {EntityType.ALLIANCE: "Alliance", EntityType.TAX: "Tax"}


class PollCadence:
    """Adaptive interval for the bank radar.

    Long quiet spells double the interval up to ``max_sec``; a burst of ticks
    that saw new records tightens it to two thirds of the base, never below
    ``min_sec``, until the burst window drains. A new record after a quiet
    spell resets it to the base.
    """

    def __init__(
        self,
        *,
        base_sec: float,
        min_sec: float,
        max_sec: float,
        jitter_sec: float,
        quiet_backoff_sec: float,
        burst_tighten_count: int,
        burst_window_sec: float,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.base_sec = base_sec
        self.min_sec = min_sec
        self.max_sec = max(max_sec, min_sec)
        self.jitter_sec = jitter_sec
        self.quiet_backoff_sec = quiet_backoff_sec
        self.burst_tighten_count = burst_tighten_count
        self.burst_window_sec = burst_window_sec
        self._clock = clock
        self._rng = rng or random.Random()
        self._interval = base_sec
        self._last_hit = clock()
        self._hits: Deque[float] = deque()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "PollCadence":
        return cls(
            base_sec=settings.deposit_poll_sec,
            min_sec=settings.deposit_poll_min_sec,
            max_sec=settings.deposit_poll_max_sec,
            jitter_sec=settings.deposit_poll_jitter_sec,
            quiet_backoff_sec=settings.deposit_quiet_backoff_sec,
            burst_tighten_count=settings.deposit_burst_tighten_count,
            burst_window_sec=settings.deposit_burst_window_sec,
            **kwargs,
        )

    @property
    def interval(self) -> float:
        """Current interval before jitter."""

        return self._interval

    def record(self, new_rows: int) -> None:
        """Note one finished tick; a tick with any new rows counts as a single hit."""

        now = self._clock()
        if new_rows > 0:
            self._last_hit = now
            self._hits.append(now)
            if self._interval > self.base_sec:
                self._interval = self.base_sec

    def next_interval(self) -> float:
        now = self._clock()
        if now - self._last_hit >= self.quiet_backoff_sec:
            self._interval = min(self.max_sec, max(self._interval, self.base_sec * 2))
        cutoff = now - self.burst_window_sec
        while self._hits and self._hits[0] < cutoff:
            self._hits.popleft()
        if self.burst_tighten_count > 0 and len(self._hits) >= self.burst_tighten_count:
            self._interval = max(self.min_sec, self.base_sec * 0.66)
        elif self._interval < self.base_sec:
            self._interval = self.base_sec
        jitter = min(self.jitter_sec, self._interval * 0.2)
        wait = self._interval + self._rng.uniform(-jitter, jitter)
        return max(self.min_sec, min(self.max_sec, wait))


@dataclass
class DepositCycleResult:
    fetched: int = 0
    new: int = 0
    posted: int = 0
    dms: int = 0
    cursor: Optional[int] = None
    primed: bool = False
    skipped: bool = False
    ok: bool = True


def build_deposit_message(event: BankTransfer, notional_usd: float) -> AlertMessage:
    sender_is_alliance = event.sender_type is EntityType.ALLIANCE
    sender_label = _SENDER_LABELS.get(event.sender_type, "Nation")
    lines = [f"{sender_label} → Nation transfer", f"**Amount:** {format_usd(notional_usd)}"]
    links = []
    if event.sender_type is EntityType.TAX:
        lines.append("**From:** tax collection")
    elif event.sender_id:
        sender_link = alliance_url(event.sender_id) if sender_is_alliance else nation_url(event.sender_id)
        sender_name = event.sender_name or f"{sender_label} #{event.sender_id}"
        lines.append(f"**From:** [{sender_name}]({sender_link})")
    receiver_name = event.receiver_name or f"Nation #{event.receiver_id}"
    lines.append(f"**To:** [{receiver_name}]({nation_url(event.receiver_id)})")
    lines.append(f"**Contents:** {breakdown(event.bundle())}")
    links.append(("Receiver", nation_url(event.receiver_id)))
    return AlertMessage(
        kind=AlertType.DEPOSIT,
        title="💰 Large deposit detected",
        lines=lines,
        subject_id=event.receiver_id,
        color=DEPOSIT_COLOR,
        footer=f"Aid ID {event.id} • Bank Radar",
        timestamp=event.created_at,
        links=links,
    )


class DepositPoller:
    """Fetches new bank records and fans alerts out to guild channels and watchers.

    Each record is valued once, checked against each guild's floor, deduplicated
    through the ledger and only then delivered. The cursor moves last, after
    every new record has been handled or deliberately skipped.
    """

    def __init__(
        self,
        state: RaiderState,
        client: PnWClient,
        sink: AlertSink,
        settings: Settings,
        *,
        ledger: Optional[AlertLedger] = None,
        cursor: Optional[EventCursorTracker] = None,
        watches: Optional[WatchRegistry] = None,
        linker: Optional[NationLinker] = None,
        cadence: Optional[PollCadence] = None,
        telemetry: Optional[TelemetryCollector] = None,
    ) -> None:
        self._state = state
        self._client = client
        self._sink = sink
        self._settings = settings
        self._ledger = ledger or AlertLedger(state)
        self._cursor = cursor or EventCursorTracker(state)
        self._watches = watches or WatchRegistry(state)
        self._linker = linker or NationLinker(state)
        self.cadence = cadence or PollCadence.from_settings(settings)
        self._telemetry = telemetry
        self._window = DeclareWindow(settings.declare_min_ratio, settings.declare_max_ratio)
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def _metrics(self) -> TelemetryCollector:
        return self._telemetry or get_telemetry()

    async def run_once(self) -> DepositCycleResult:
        if self._in_flight:
            logger.debug("Bank radar tick skipped; previous cycle still running")
            self._metrics().track_system_event("tick_skipped", source="deposits")
            return DepositCycleResult(skipped=True)
        self._in_flight = True
        result = DepositCycleResult()
        started = time.perf_counter()
        try:
            await self._run_cycle(result)
        except Exception:
            result.ok = False
            logger.exception("Bank radar cycle failed")
        finally:
            self._in_flight = False
        self.cadence.record(result.new)
        self._metrics().track_poll_cycle(
            "deposits",
            duration_ms=(time.perf_counter() - started) * 1000,
            fetched=result.fetched,
            alerts=result.posted + result.dms,
            ok=result.ok,
        )
        logger.info(
            "Bank radar tick - fetched=%d new=%d posted=%d dms=%d cursor=%s",
            result.fetched,
            result.new,
            result.posted,
            result.dms,
            result.cursor,
        )
        return result

    async def _run_cycle(self, result: DepositCycleResult) -> None:
        events = await self._client.fetch_recent_transfers(self._settings.bank_page_size)
        result.fetched = len(events)
        cursor = self._cursor.current()
        result.cursor = cursor.last_event_id
        if not events:
            return
        if not self._cursor.is_primed(cursor):
            primed = self._cursor.prime(events)
            result.primed = True
            result.cursor = primed.last_event_id if primed else None
            return

        fresh = select_new_events(events, cursor)
        result.new = len(fresh)
        if not fresh:
            return

        prices = await self._price_map()
        guilds = [
            guild
            for guild in self._state.all_guild_settings()
            if guild.deposits_enabled and guild.deposits_channel_id
        ]
        gate = RangeGate(self._client, self._linker, self._window)
        for event in fresh:
            if event.receiver_type is not EntityType.NATION:
                continue
            await self._process_event(event, prices, guilds, gate, result)

        result.cursor = self._cursor.advance(fresh).last_event_id

    async def _process_event(
        self,
        event: BankTransfer,
        prices: Dict[str, float],
        guilds: List[GuildSettings],
        gate: RangeGate,
        result: DepositCycleResult,
    ) -> None:
        notional = compute_notional_usd(event.bundle(), prices)
        fingerprint = deposit_fingerprint(event.id, event.receiver_id, notional)
        message = build_deposit_message(event, notional)

        eligible = []
        for guild in guilds:
            if not passes_floor(
                notional,
                guild.bank_abs_usd,
                rel_pct=guild.bank_rel_pct,
                loot_p50_usd=self._settings.loot_p50_usd,
            ):
                continue
            if guild.inrange_only and not await gate.guild_can_hit(guild, event.receiver_id):
                continue
            eligible.append(guild)

        if eligible and not self._ledger.has_fired(fingerprint):
            for guild in eligible:
                delivered = await self._sink.post_to_channel(
                    int(guild.deposits_channel_id),
                    message.with_mention(guild.alerts_role_id),
                    purpose="deposit alert",
                )
                self._metrics().track_alert(AlertType.DEPOSIT.value, audience="channel")
                if delivered:
                    result.posted += 1
            self._ledger.record(AlertType.DEPOSIT, event.receiver_id, notional, fingerprint)

        await self._notify_watchers(event, notional, fingerprint, message, gate, result)

    async def _notify_watchers(
        self,
        event: BankTransfer,
        notional: float,
        fingerprint: str,
        message: AlertMessage,
        gate: RangeGate,
        result: DepositCycleResult,
    ) -> None:
        settings = self._settings
        for watch in self._watches.watchers_of(event.receiver_id):
            floor = watch.bank_abs_usd if watch.bank_abs_usd is not None else settings.bank_abs_usd
            rel_pct = watch.bank_rel_pct if watch.bank_rel_pct is not None else settings.bank_rel_pct
            if not passes_floor(notional, floor, rel_pct=rel_pct, loot_p50_usd=settings.loot_p50_usd):
                continue
            if watch.inrange_only and not await gate.user_can_hit(
                watch.discord_user_id, event.receiver_id, settings.near_range_pct
            ):
                continue
            dm_fingerprint = deposit_dm_fingerprint(fingerprint, watch.discord_user_id)
            if self._ledger.has_fired(dm_fingerprint):
                continue
            delivered = await self._sink.send_direct_message(
                watch.discord_user_id, message, purpose="deposit watch DM"
            )
            self._metrics().track_alert(AlertType.DEPOSIT_WATCH_DM.value, audience="dm")
            if delivered:
                result.dms += 1
            self._ledger.record(AlertType.DEPOSIT_WATCH_DM, event.receiver_id, notional, dm_fingerprint)

    async def _price_map(self) -> Dict[str, float]:
        prices = await self._client.fetch_price_map()
        if prices:
            self._state.save_prices(prices)
            return prices
        cached = self._state.load_prices()
        if cached:
            logger.warning("Market prices unavailable; using %d cached prices", len(cached))
        else:
            logger.warning("Market prices unavailable; valuing deposits by cash only")
        return cached


__all__ = ["DepositCycleResult", "DepositPoller", "PollCadence", "build_deposit_message"]
