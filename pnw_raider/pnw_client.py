"""Async client for the Politics and War GraphQL API.

Every public coroutine degrades to an empty result on failure. Callers
treat "no data" as "nothing to do this cycle", so nothing here raises
past the client boundary.
"""
from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import httpx

from .cache import TTLCache
from .models import RESOURCE_KEYS, BankTransfer, EntityType, Nation, WarRecord

logger = logging.getLogger(__name__)

DEFAULT_GRAPHQL_URL = "https://api.politicsandwar.com/graphql"
NATION_URL = "https://politicsandwar.com/nation/id={id}"
ALLIANCE_URL = "https://politicsandwar.com/alliance/id={id}"
WAR_URL = "https://politicsandwar.com/nation/war/timeline/war={id}"

MILITARY_FIELDS = ("soldiers", "tanks", "aircraft", "ships", "missiles", "nukes")

_NATIONS_QUERY = """
query Nations($ids: [Int], $first: Int) {
  nations(id: $ids, first: $first) {
    data {
      id
      nation_name
      score
      alliance_id
      alliance { name }
      num_cities
      offensive_wars_count
      defensive_wars_count
      beige_turns
      vacation_mode_turns
      last_active
      soldiers
      tanks
      aircraft
      ships
      missiles
      nukes
    }
  }
}
"""

_BANKRECS_QUERY = """
query Bankrecs($first: Int) {
  bankrecs(first: $first, orderBy: [{column: ID, order: DESC}]) {
    data {
      id
      date
      sender_id
      sender_type
      receiver_id
      receiver_type
      money
      food
      munitions
      steel
      oil
      aluminum
      uranium
      gasoline
      coal
      iron
      bauxite
      lead
    }
  }
}
"""

_PRICES_QUERY = """
query Prices {
  tradeprices(first: 1, orderBy: [{column: DATE, order: DESC}]) {
    data {
      food
      munitions
      steel
      oil
      aluminum
      uranium
      gasoline
      coal
      iron
      bauxite
      lead
    }
  }
}
"""

_WARS_QUERY = """
query Wars($ids: [Int]) {
  wars(nation_id: $ids, active: true, first: 50) {
    data {
      id
      att_id
      def_id
      war_type
      date
      turns_left
      attacker { nation_name }
      defender { nation_name }
    }
  }
}
"""

_ALLIANCE_WARS_QUERY = """
query AllianceWars($alliances: [Int], $first: Int) {
  wars(alliance_id: $alliances, active: true, first: $first, orderBy: [{column: ID, order: DESC}]) {
    data {
      id
      date
      war_type
      att_id
      def_id
      att_alliance_id
      def_alliance_id
      turns_left
      winner_id
      attacker { nation_name alliance { name } }
      defender { nation_name alliance { name } }
    }
  }
}
"""

_MILITARY_QUERY = """
query Military($ids: [Int]) {
  nations(id: $ids, first: 1) {
    data { id soldiers tanks aircraft ships missiles nukes }
  }
}
"""


def nation_url(nation_id: int) -> str:
    return NATION_URL.format(id=nation_id)


def alliance_url(alliance_id: int) -> str:
    return ALLIANCE_URL.format(id=alliance_id)


def war_url(war_id: int) -> str:
    return WAR_URL.format(id=war_id)


def _to_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return None


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None


_ENTITY_TYPES = {1: EntityType.NATION, 2: EntityType.ALLIANCE, 3: EntityType.TAX}


def _entity_type(value: Any) -> EntityType:
    return _ENTITY_TYPES.get(_to_int(value), EntityType.NATION)


def _rows(payload: Optional[Dict[str, Any]], key: str) -> List[Dict[str, Any]]:
    if not payload:
        return []
    node = payload.get(key)
    if isinstance(node, dict):
        node = node.get("data")
    if not isinstance(node, list):
        return []
    return [row for row in node if isinstance(row, dict)]


def parse_nation(row: Dict[str, Any]) -> Optional[Nation]:
    nation_id = _to_int(row.get("id"))
    if not nation_id:
        return None
    alliance = row.get("alliance") or {}
    alliance_id = _to_int(row.get("alliance_id"))
    return Nation(
        id=nation_id,
        name=str(row.get("nation_name") or row.get("name") or "Unknown"),
        score=_to_float(row.get("score")),
        alliance_id=alliance_id or None,
        alliance_name=alliance.get("name") if isinstance(alliance, dict) else None,
        cities=_to_int(row.get("num_cities")),
        offensive_wars=_to_int(row.get("offensive_wars_count")) or 0,
        defensive_wars=_to_int(row.get("defensive_wars_count")) or 0,
        beige_turns=max(_to_int(row.get("beige_turns")) or 0, 0),
        vacation_turns=max(_to_int(row.get("vacation_mode_turns")) or 0, 0),
        last_active=_to_datetime(row.get("last_active")),
        military={field: _to_int(row.get(field)) for field in MILITARY_FIELDS if field in row},
    )


def parse_transfer(row: Dict[str, Any]) -> Optional[BankTransfer]:
    transfer_id = _to_int(row.get("id"))
    receiver_id = _to_int(row.get("receiver_id"))
    if not transfer_id or not receiver_id:
        return None
    resources = {}
    for key in RESOURCE_KEYS:
        quantity = _to_float(row.get(key))
        if quantity:
            resources[key] = quantity
    return BankTransfer(
        id=transfer_id,
        created_at=_to_datetime(row.get("date")),
        sender_id=_to_int(row.get("sender_id")),
        sender_type=_entity_type(row.get("sender_type")),
        receiver_id=receiver_id,
        receiver_type=_entity_type(row.get("receiver_type")),
        cash=_to_float(row.get("money")) or 0.0,
        resources=resources,
    )


def _alliance_name(side: Dict[str, Any]) -> Optional[str]:
    alliance = side.get("alliance")
    return alliance.get("name") if isinstance(alliance, dict) else None


def parse_war(row: Dict[str, Any]) -> Optional[WarRecord]:
    war_id = _to_int(row.get("id"))
    if not war_id:
        return None
    attacker = row.get("attacker") or {}
    defender = row.get("defender") or {}
    if not isinstance(attacker, dict):
        attacker = {}
    if not isinstance(defender, dict):
        defender = {}
    return WarRecord(
        id=war_id,
        attacker_id=_to_int(row.get("att_id")) or 0,
        defender_id=_to_int(row.get("def_id")) or 0,
        war_type=row.get("war_type"),
        started_at=_to_datetime(row.get("date")),
        turns_left=_to_int(row.get("turns_left")),
        attacker_name=attacker.get("nation_name"),
        defender_name=defender.get("nation_name"),
        attacker_alliance_id=_to_int(row.get("att_alliance_id")) or None,
        defender_alliance_id=_to_int(row.get("def_alliance_id")) or None,
        attacker_alliance_name=_alliance_name(attacker),
        defender_alliance_name=_alliance_name(defender),
        winner_id=_to_int(row.get("winner_id")) or None,
    )


class PnWClient:
    """Thin GraphQL wrapper with a bounded per-call timeout."""

    def __init__(
        self,
        api_key: Optional[str],
        *,
        graphql_url: str = DEFAULT_GRAPHQL_URL,
        timeout: float = 10.0,
        military_ttl_seconds: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._api_key = api_key
        self._graphql_url = graphql_url
        self._timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._military_cache: TTLCache[int, Dict[str, Optional[int]]] = TTLCache(
            military_ttl_seconds, clock=clock
        )
        self._warned_missing_key = False

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    async def __aenter__(self) -> "PnWClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def _query(
        self, query: str, variables: Optional[Dict[str, Any]] = None, *, purpose: str
    ) -> Optional[Dict[str, Any]]:
        if not self._api_key:
            if not self._warned_missing_key:
                logger.warning("No PnW API key configured; %s and later calls return nothing", purpose)
                self._warned_missing_key = True
            return None
        try:
            response = await self._http().post(
                self._graphql_url,
                params={"api_key": self._api_key},
                json={"query": query, "variables": variables or {}},
            )
        except httpx.TimeoutException:
            logger.warning("PnW %s request timed out after %.1fs", purpose, self._timeout)
            return None
        except httpx.HTTPError as exc:
            logger.warning("PnW %s request failed: %s", purpose, exc)
            return None
        if response.status_code != 200:
            logger.warning("PnW %s request returned HTTP %d", purpose, response.status_code)
            return None
        try:
            payload = response.json()
        except ValueError:
            logger.warning("PnW %s response was not valid JSON", purpose)
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("errors"):
            messages = [
                str(error.get("message", error)) if isinstance(error, dict) else str(error)
                for error in payload["errors"]
            ]
            logger.warning("PnW %s query returned errors: %s", purpose, "; ".join(messages))
            return None
        data = payload.get("data")
        return data if isinstance(data, dict) else None

    async def fetch_nations(self, ids: Iterable[int]) -> Dict[int, Nation]:
        unique = sorted({int(i) for i in ids if _to_int(i) and int(i) > 0})
        if not unique:
            return {}
        data = await self._query(
            _NATIONS_QUERY, {"ids": unique, "first": len(unique)}, purpose="nations"
        )
        nations: Dict[int, Nation] = {}
        for row in _rows(data, "nations"):
            nation = parse_nation(row)
            if nation is not None:
                nations[nation.id] = nation
        return nations

    async def fetch_recent_transfers(self, limit: int = 50) -> List[BankTransfer]:
        """Most recent bank records, newest first, as served by the feed."""

        data = await self._query(_BANKRECS_QUERY, {"first": int(limit)}, purpose="bankrecs")
        transfers = []
        for row in _rows(data, "bankrecs"):
            transfer = parse_transfer(row)
            if transfer is not None:
                transfers.append(transfer)
        return transfers

    async def fetch_price_map(self) -> Dict[str, float]:
        data = await self._query(_PRICES_QUERY, purpose="tradeprices")
        rows = _rows(data, "tradeprices")
        if not rows:
            return {}
        prices = {}
        for key in RESOURCE_KEYS:
            price = _to_float(rows[0].get(key))
            if price is not None and price >= 0:
                prices[key] = price
        return prices

    async def fetch_active_wars(self, nation_id: int) -> List[WarRecord]:
        data = await self._query(_WARS_QUERY, {"ids": [int(nation_id)]}, purpose="wars")
        wars = []
        for row in _rows(data, "wars"):
            war = parse_war(row)
            if war is not None:
                wars.append(war)
        return wars

    async def fetch_alliance_wars(self, alliance_ids: Iterable[int], limit: int = 50) -> List[WarRecord]:
        """Newest active wars with any of ``alliance_ids`` on either side."""

        unique = sorted({int(i) for i in alliance_ids if _to_int(i) and int(i) > 0})
        if not unique:
            return []
        data = await self._query(
            _ALLIANCE_WARS_QUERY, {"alliances": unique, "first": int(limit)}, purpose="alliance wars"
        )
        wars = []
        for row in _rows(data, "wars"):
            war = parse_war(row)
            if war is not None:
                wars.append(war)
        return wars

    async def fetch_military(self, nation_id: int) -> Dict[str, Optional[int]]:
        cached = self._military_cache.get(nation_id)
        if cached is not None:
            return cached
        data = await self._query(_MILITARY_QUERY, {"ids": [int(nation_id)]}, purpose="military")
        rows = _rows(data, "nations")
        if not rows:
            return {}
        military = {field: _to_int(rows[0].get(field)) for field in MILITARY_FIELDS}
        self._military_cache.set(nation_id, military)
        return military


__all__ = [
    "PnWClient",
    "alliance_url",
    "nation_url",
    "parse_nation",
    "parse_transfer",
    "parse_war",
    "war_url",
]
