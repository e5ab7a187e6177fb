"""Shared fixtures for the raider test suite."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

import pytest

from pnw_raider.config import Settings
from pnw_raider.models import AlertMessage, BankTransfer, EntityType, Nation, WarRecord
from pnw_raider.state import RaiderState
from pnw_raider.telemetry import TelemetryCollector, set_telemetry


@pytest.fixture(autouse=True)
def isolated_telemetry(tmp_path):
    """Point the telemetry singleton at a throwaway database."""

    collector = TelemetryCollector(tmp_path / "telemetry.db")
    set_telemetry(collector)
    yield collector
    set_telemetry(None)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in (
        "NEAR_RANGE_PCT",
        "BANK_ABS_USD",
        "BANK_REL_PCT",
        "LOOT_P50_USD",
        "RADAR_POLL_MS",
        "DEPOSITS_POLL_SEC",
        "WAR_POLL_MS",
        "PNW_API_BASE_GRAPHQL",
        "PNW_RAIDER_SETTINGS",
        "PNW_API_KEY",
        "PNW_GRAPH_KEY",
        "PNW_SERVICE_API_KEY",
        "PNW_DEFAULT_API_KEY",
    ):
        monkeypatch.delenv(key, raising=False)
    yield


@pytest.fixture
def settings() -> Settings:
    return Settings.from_dict({})


@pytest.fixture
def state(tmp_path, settings) -> RaiderState:
    return RaiderState(tmp_path / "raider.db", settings)


class FakeSink:
    """Records every delivery; individual targets can be made to fail."""

    def __init__(self) -> None:
        self.channel_posts: List[Tuple[int, AlertMessage, str]] = []
        self.direct_messages: List[Tuple[str, AlertMessage, str]] = []
        self.failing_channels: set = set()
        self.failing_users: set = set()

    async def post_to_channel(self, channel_id: int, message: AlertMessage, *, purpose: str) -> bool:
        self.channel_posts.append((channel_id, message, purpose))
        return channel_id not in self.failing_channels

    async def send_direct_message(self, user_id: str, message: AlertMessage, *, purpose: str) -> bool:
        self.direct_messages.append((user_id, message, purpose))
        return user_id not in self.failing_users


class FakeClient:
    """In-memory stand-in for ``PnWClient`` driven by plain attributes."""

    def __init__(self) -> None:
        self.transfers: List[BankTransfer] = []
        self.prices: Dict[str, float] = {}
        self.nations: Dict[int, Nation] = {}
        self.wars: Dict[int, List[WarRecord]] = {}
        self.alliance_wars: List[WarRecord] = []
        self.alliance_war_calls: List[List[int]] = []
        self.military_calls: List[int] = []
        self.military: Dict[int, Dict[str, Optional[int]]] = {}
        self.transfer_calls = 0
        self.nation_calls: List[List[int]] = []

    async def fetch_recent_transfers(self, limit: int = 50) -> List[BankTransfer]:
        self.transfer_calls += 1
        return list(self.transfers[:limit])

    async def fetch_price_map(self) -> Dict[str, float]:
        return dict(self.prices)

    async def fetch_nations(self, ids: Iterable[int]) -> Dict[int, Nation]:
        wanted = sorted(set(ids))
        self.nation_calls.append(wanted)
        return {nation_id: self.nations[nation_id] for nation_id in wanted if nation_id in self.nations}

    async def fetch_active_wars(self, nation_id: int) -> List[WarRecord]:
        return list(self.wars.get(nation_id, []))

    async def fetch_alliance_wars(self, alliance_ids: Iterable[int], limit: int = 50) -> List[WarRecord]:
        wanted = set(alliance_ids)
        self.alliance_war_calls.append(sorted(wanted))
        return [
            war
            for war in self.alliance_wars
            if war.attacker_alliance_id in wanted or war.defender_alliance_id in wanted
        ][:limit]

    async def fetch_military(self, nation_id: int) -> Dict[str, Optional[int]]:
        self.military_calls.append(nation_id)
        return dict(self.military.get(nation_id, {}))

    async def aclose(self) -> None:
        return None


class FixedClock:
    """Mutable clock returning aware UTC datetimes."""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def make_transfer(
    transfer_id: int,
    receiver_id: int = 1001,
    *,
    cash: float = 0.0,
    resources: Optional[Dict[str, float]] = None,
    sender_id: int = 77,
    sender_type: EntityType = EntityType.ALLIANCE,
    receiver_type: EntityType = EntityType.NATION,
    created_at: Optional[datetime] = None,
) -> BankTransfer:
    return BankTransfer(
        id=transfer_id,
        created_at=created_at or datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc) + timedelta(seconds=transfer_id),
        sender_id=sender_id,
        sender_type=sender_type,
        receiver_id=receiver_id,
        receiver_type=receiver_type,
        cash=cash,
        resources=dict(resources or {}),
    )


@pytest.fixture
def sink() -> FakeSink:
    return FakeSink()


@pytest.fixture
def client() -> FakeClient:
    return FakeClient()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()
