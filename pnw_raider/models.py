"""Core data models for the PnW raider bot."""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Protocol, Tuple

MAX_WAR_SLOTS = 3

RESOURCE_KEYS: Tuple[str, ...] = (
    "food",
    "munitions",
    "steel",
    "oil",
    "aluminum",
    "uranium",
    "gasoline",
    "coal",
    "iron",
    "bauxite",
    "lead",
)


class AlertType(str, Enum):
    DEPOSIT = "deposit"
    DEPOSIT_WATCH_DM = "deposit_watch_dm"
    BEIGE_SOON = "beige_soon"
    BEIGE_SOON_DM = "beige_soon_dm"
    SLOT_OPEN = "slot_open"
    WAR_DECLARED = "war_declared"


class EntityType(str, Enum):
    NATION = "nation"
    ALLIANCE = "alliance"
    TAX = "tax"


@dataclass
class Nation:
    """Snapshot of a nation as reported by the game API for one polling cycle."""

    id: int
    name: str = "Unknown"
    score: Optional[float] = None
    alliance_id: Optional[int] = None
    alliance_name: Optional[str] = None
    cities: Optional[int] = None
    offensive_wars: int = 0
    defensive_wars: int = 0
    beige_turns: int = 0
    vacation_turns: int = 0
    last_active: Optional[datetime] = None
    military: Dict[str, Optional[int]] = field(default_factory=dict)

    @property
    def open_offensive_slots(self) -> int:
        return MAX_WAR_SLOTS - min(max(self.offensive_wars, 0), MAX_WAR_SLOTS)

    @property
    def open_defensive_slots(self) -> int:
        return MAX_WAR_SLOTS - min(max(self.defensive_wars, 0), MAX_WAR_SLOTS)


@dataclass
class BankTransfer:
    """A single bank/aid record from the upstream transfer feed."""

    id: int
    created_at: Optional[datetime]
    sender_id: Optional[int]
    sender_type: EntityType
    receiver_id: int
    receiver_type: EntityType
    cash: float = 0.0
    resources: Dict[str, float] = field(default_factory=dict)
    sender_name: Optional[str] = None
    receiver_name: Optional[str] = None

    def bundle(self) -> Dict[str, float]:
        """Return cash and resource quantities as one mapping."""

        bundle = {"cash": self.cash}
        bundle.update(self.resources)
        return bundle


@dataclass
class WarRecord:
    id: int
    attacker_id: int
    defender_id: int
    war_type: Optional[str] = None
    started_at: Optional[datetime] = None
    turns_left: Optional[int] = None
    attacker_name: Optional[str] = None
    defender_name: Optional[str] = None
    attacker_alliance_id: Optional[int] = None
    defender_alliance_id: Optional[int] = None
    attacker_alliance_name: Optional[str] = None
    defender_alliance_name: Optional[str] = None
    winner_id: Optional[int] = None

    @property
    def active(self) -> bool:
        """Not yet won by either side and not run out of turns."""

        if self.winner_id:
            return False
        return self.turns_left is None or self.turns_left > 0


@dataclass
class Watch:
    discord_user_id: str
    nation_id: int
    dm_enabled: bool = True
    bank_abs_usd: Optional[float] = None
    bank_rel_pct: Optional[float] = None
    beige_early_min: Optional[int] = None
    inrange_only: bool = False


@dataclass
class NationLink:
    discord_user_id: str
    nation_id: int
    is_primary: bool
    linked_at: datetime


@dataclass
class GuildSettings:
    """Per-guild alert configuration; unset guilds fall back to global defaults."""

    guild_id: str
    near_range_pct: float
    bank_abs_usd: float
    bank_rel_pct: float
    radar_poll_ms: int
    dm_default: bool
    inrange_only: bool
    deposits_channel_id: Optional[int] = None
    radar_channel_id: Optional[int] = None
    deposits_enabled: bool = True
    radar_enabled: bool = True
    alerts_role_id: Optional[int] = None
    war_alliance_id: Optional[int] = None
    war_offense_channel_id: Optional[int] = None
    war_defense_channel_id: Optional[int] = None
    war_defense_role_id: Optional[int] = None
    war_alerts_enabled: bool = True

    def war_channel(self, offensive: bool) -> Optional[int]:
        return self.war_offense_channel_id if offensive else self.war_defense_channel_id


@dataclass
class EventCursor:
    feed: str
    last_event_id: Optional[int] = None
    last_seen_at: Optional[datetime] = None


@dataclass
class LedgerEntry:
    id: int
    event_type: AlertType
    subject_id: int
    value: float
    fingerprint: str
    created_at: datetime


@dataclass
class AlertMessage:
    """Platform-neutral alert payload handed to the delivery adapter."""

    kind: AlertType
    title: str
    lines: List[str]
    subject_id: int
    color: int = 0x00E676
    footer: Optional[str] = None
    timestamp: Optional[datetime] = None
    links: List[Tuple[str, str]] = field(default_factory=list)
    watch_button: bool = True
    mention_role_id: Optional[int] = None
    mention_note: Optional[str] = None

    def with_mention(self, role_id: Optional[int]) -> "AlertMessage":
        return replace(self, lines=list(self.lines), links=list(self.links), mention_role_id=role_id)


class AlertSink(Protocol):
    """Best-effort delivery target; returns False instead of raising on failure."""

    async def post_to_channel(self, channel_id: int, message: AlertMessage, *, purpose: str) -> bool:
        ...

    async def send_direct_message(self, user_id: str, message: AlertMessage, *, purpose: str) -> bool:
        ...
