"""Alert deduplication ledger.

Upstream feeds are at-least-once; the ledger turns them into at-most-once
alerts. Deposit alerts dedup on an exact fingerprint. Radar alerts use a
per-subject cooldown window so they can repeat once the state changes.
War alerts fire once per guild and war id.
"""
from __future__ import annotations

import hashlib
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..models import AlertType
from ..state import RaiderState

logger = logging.getLogger(__name__)


def _digest(*parts: object) -> str:
    raw = "|".join(str(part) for part in parts)
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def deposit_fingerprint(event_id: int, receiver_id: int, notional_usd: float) -> str:
    return _digest(AlertType.DEPOSIT.value, event_id, receiver_id, int(round(notional_usd)))


def deposit_dm_fingerprint(deposit_fp: str, discord_user_id: str) -> str:
    return f"{deposit_fp}:{discord_user_id}"


def slot_fingerprint(nation_id: int, offensive_open: int, defensive_open: int) -> str:
    return _digest(AlertType.SLOT_OPEN.value, nation_id, offensive_open, defensive_open)


def beige_fingerprint(nation_id: int, beige_turns: int) -> str:
    return _digest(AlertType.BEIGE_SOON.value, nation_id, beige_turns)


def beige_dm_fingerprint(nation_id: int, discord_user_id: str, beige_turns: int) -> str:
    return _digest(AlertType.BEIGE_SOON_DM.value, nation_id, discord_user_id, beige_turns)


def war_fingerprint(guild_id: str, war_id: int) -> str:
    return f"{AlertType.WAR_DECLARED.value}:{guild_id}:{war_id}"


class AlertLedger:
    """Append-only record of fired alerts, queried before every send."""

    def __init__(
        self,
        state: RaiderState,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._state = state
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._clock()

    def has_fired(self, fingerprint: str) -> bool:
        return self._state.ledger_has_fingerprint(fingerprint)

    def record(
        self,
        event_type: AlertType,
        subject_id: int,
        value: float,
        fingerprint: str,
    ) -> int:
        entry_id = self._state.append_ledger(
            event_type, subject_id, value, fingerprint, now=self._clock()
        )
        logger.debug("Recorded %s alert for %s (%s)", AlertType(event_type).value, subject_id, fingerprint)
        return entry_id

    def in_cooldown(self, event_type: AlertType, subject_id: int, minutes: float) -> bool:
        """True when an alert of this type fired for the subject within ``minutes``."""

        if minutes <= 0:
            return False
        since = self._clock() - timedelta(minutes=minutes)
        return self._state.ledger_fired_since(event_type, subject_id, since)


__all__ = [
    "AlertLedger",
    "beige_dm_fingerprint",
    "beige_fingerprint",
    "deposit_dm_fingerprint",
    "deposit_fingerprint",
    "slot_fingerprint",
    "war_fingerprint",
]
