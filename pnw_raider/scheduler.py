"""APScheduler wiring for the bank radar, the watch radar and war alerts."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .config import Settings
from .services.deposits import DepositPoller
from .services.radar import RadarPoller
from .services.wars import WarAlertPoller
from .telemetry import get_telemetry

logger = logging.getLogger(__name__)

DEPOSIT_JOB_ID = "bank_radar"
RADAR_JOB_ID = "watch_radar"
WAR_JOB_ID = "war_alerts"
TELEMETRY_CLEANUP_JOB_ID = "telemetry_cleanup"
TELEMETRY_RETENTION_DAYS = 30


class RadarScheduler:
    """Runs each poller on its own job inside the bot's event loop.

    The bank radar reschedules itself after every cycle using its adaptive
    cadence. The watch radar fires within ±``radar_jitter_pct`` of its interval,
    which is re-read after each cycle so guild setting changes take effect.
    APScheduler only ever delays a run by up to ``jitter``, so the trigger
    starts from the low end of the band and jitters across its full width.
    War alerts, when given, run on a fixed ``war_poll_ms`` interval.
    """

    def __init__(
        self,
        deposits: DepositPoller,
        radar: RadarPoller,
        settings: Settings,
        *,
        radar_interval_ms: Optional[Callable[[], int]] = None,
        wars: Optional[WarAlertPoller] = None,
    ) -> None:
        self._deposits = deposits
        self._radar = radar
        self._wars = wars
        self._settings = settings
        self._radar_interval_ms = radar_interval_ms or (lambda: settings.radar_poll_ms)
        self._scheduler = AsyncIOScheduler()
        self._current_radar_ms: Optional[int] = None
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    def _radar_trigger_args(self, interval_ms: int) -> dict:
        seconds = max(interval_ms, 1000) / 1000
        spread = seconds * min(max(self._settings.radar_jitter_pct, 0.0), 90.0) / 100
        return {"seconds": seconds - spread, "jitter": 2 * spread}

    def start(self) -> None:
        if self._started:
            return
        self._scheduler.add_job(
            self._run_deposits,
            "interval",
            seconds=self._deposits.cadence.next_interval(),
            id=DEPOSIT_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._current_radar_ms = int(self._radar_interval_ms())
        self._scheduler.add_job(
            self._run_radar,
            "interval",
            id=RADAR_JOB_ID,
            max_instances=1,
            coalesce=True,
            **self._radar_trigger_args(self._current_radar_ms),
        )
        if self._wars is not None:
            self._scheduler.add_job(
                self._wars.run_once,
                "interval",
                seconds=max(self._settings.war_poll_ms, 10_000) / 1000,
                id=WAR_JOB_ID,
                max_instances=1,
                coalesce=True,
            )
        self._scheduler.add_job(
            self._cleanup_telemetry,
            "interval",
            hours=24,
            id=TELEMETRY_CLEANUP_JOB_ID,
            max_instances=1,
            coalesce=True,
        )
        self._scheduler.start()
        self._started = True
        get_telemetry().track_system_event("scheduler_started", source="scheduler")
        logger.info(
            "Started radar scheduler (bank radar ~%.0fs, watch radar %dms)",
            self._deposits.cadence.interval,
            self._current_radar_ms,
        )

    def shutdown(self) -> None:
        if not self._started:
            return
        self._scheduler.shutdown(wait=False)
        self._started = False
        get_telemetry().track_system_event("scheduler_stopped", source="scheduler")
        get_telemetry().flush()

    async def _run_deposits(self) -> None:
        await self._deposits.run_once()
        next_seconds = self._deposits.cadence.next_interval()
        self._scheduler.reschedule_job(DEPOSIT_JOB_ID, trigger="interval", seconds=next_seconds)
        logger.debug("Bank radar next run in %.1fs", next_seconds)

    async def _run_radar(self) -> None:
        await self._radar.run_once()
        interval_ms = int(self._radar_interval_ms())
        if interval_ms != self._current_radar_ms:
            self._current_radar_ms = interval_ms
            self._scheduler.reschedule_job(
                RADAR_JOB_ID, trigger="interval", **self._radar_trigger_args(interval_ms)
            )
            logger.info("Watch radar interval changed to %dms", interval_ms)

    def _cleanup_telemetry(self) -> None:
        deleted = get_telemetry().cleanup_old_data(days_to_keep=TELEMETRY_RETENTION_DAYS)
        logger.debug("Telemetry cleanup removed %d rows", deleted)


__all__ = ["AsyncIOScheduler", "RadarScheduler"]
