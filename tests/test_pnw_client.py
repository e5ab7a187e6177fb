"""Tests for the PnW GraphQL client."""
from __future__ import annotations

import json

import httpx
import pytest

from pnw_raider.models import EntityType
from pnw_raider.pnw_client import PnWClient, parse_nation, parse_transfer, parse_war, war_url

URL = "https://example.test/graphql"


def _client(handler, **kwargs) -> PnWClient:
    return PnWClient("secret", graphql_url=URL, transport=httpx.MockTransport(handler), **kwargs)


def test_parse_nation_handles_partial_rows():
    nation = parse_nation(
        {
            "id": "42",
            "nation_name": "Target",
            "score": "1234.5",
            "alliance_id": "0",
            "alliance": None,
            "offensive_wars_count": 2,
            "beige_turns": -1,
            "soldiers": "1000",
        }
    )
    assert nation.id == 42
    assert nation.score == 1234.5
    assert nation.alliance_id is None
    assert nation.beige_turns == 0
    assert nation.open_offensive_slots == 1
    assert nation.military == {"soldiers": 1000}
    assert parse_nation({"nation_name": "No id"}) is None


def test_parse_transfer_maps_entity_types():
    transfer = parse_transfer(
        {
            "id": 9,
            "date": "2024-05-01T12:00:00Z",
            "sender_id": 3,
            "sender_type": 2,
            "receiver_id": 4,
            "receiver_type": 1,
            "money": 1500.0,
            "steel": 10,
            "food": 0,
        }
    )
    assert transfer.sender_type is EntityType.ALLIANCE
    assert transfer.receiver_type is EntityType.NATION
    assert transfer.bundle() == {"cash": 1500.0, "steel": 10.0}
    assert transfer.created_at.tzinfo is not None
    assert parse_transfer({"id": 9}) is None


def test_parse_transfer_tax_sender():
    transfer = parse_transfer({"id": 9, "sender_id": 3, "sender_type": 3, "receiver_id": 4, "receiver_type": 1})
    assert transfer.sender_type is EntityType.TAX


def test_parse_war_names():
    war = parse_war({"id": 1, "att_id": 5, "def_id": 6, "attacker": {"nation_name": "A"}})
    assert war.attacker_name == "A"
    assert war.defender_name is None


@pytest.mark.asyncio
async def test_fetch_nations_posts_query_with_key():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["api_key"] = request.url.params.get("api_key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"data": {"nations": {"data": [{"id": 1, "score": 10}, {"id": 2, "score": 20}]}}},
        )

    async with _client(handler) as client:
        nations = await client.fetch_nations([2, 1, 1, 0])

    assert set(nations) == {1, 2}
    assert seen["api_key"] == "secret"
    assert seen["body"]["variables"] == {"ids": [1, 2], "first": 2}


@pytest.mark.asyncio
async def test_fetch_recent_transfers_skips_bad_rows():
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [{"id": 5, "receiver_id": 1, "money": 10}, {"id": None}, "junk"]
        return httpx.Response(200, json={"data": {"bankrecs": {"data": rows}}})

    async with _client(handler) as client:
        transfers = await client.fetch_recent_transfers(10)
    assert [transfer.id for transfer in transfers] == [5]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status, body",
    [
        (500, {"text": "oops"}),
        (200, {"text": "not json"}),
        (200, {"json": {"errors": [{"message": "bad key"}]}}),
        (200, {"json": ["unexpected"]}),
    ],
)
async def test_failures_degrade_to_empty(status, body):
    """HTTP, decoding and GraphQL errors all read as "no data"."""

    async with _client(lambda request: httpx.Response(status, **body)) as client:
        assert await client.fetch_recent_transfers() == []
        assert await client.fetch_price_map() == {}
        assert await client.fetch_nations([1]) == {}


@pytest.mark.asyncio
async def test_transport_errors_degrade_to_empty():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("slow", request=request)

    async with _client(handler) as client:
        assert await client.fetch_active_wars(1) == []

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    async with _client(refused) as client:
        assert await client.fetch_military(1) == {}


@pytest.mark.asyncio
async def test_missing_key_skips_requests():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": {}})

    client = PnWClient(None, graphql_url=URL, transport=httpx.MockTransport(handler))
    assert not client.configured
    assert await client.fetch_recent_transfers() == []
    assert calls == []
    await client.aclose()


@pytest.mark.asyncio
async def test_price_map_drops_negative_and_missing():
    def handler(request: httpx.Request) -> httpx.Response:
        row = {"food": 120.0, "steel": "4000", "oil": -1, "coal": None}
        return httpx.Response(200, json={"data": {"tradeprices": {"data": [row]}}})

    async with _client(handler) as client:
        assert await client.fetch_price_map() == {"food": 120.0, "steel": 4000.0}


@pytest.mark.asyncio
async def test_military_is_cached_per_ttl():
    calls = []
    now = [0.0]

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"data": {"nations": {"data": [{"id": 1, "tanks": 50}]}}})

    async with _client(handler, military_ttl_seconds=120, clock=lambda: now[0]) as client:
        first = await client.fetch_military(1)
        await client.fetch_military(1)
        assert len(calls) == 1
        now[0] = 121
        await client.fetch_military(1)
        assert len(calls) == 2

    assert first["tanks"] == 50
    assert first["soldiers"] is None


@pytest.mark.asyncio
async def test_fetch_active_wars():
    def handler(request: httpx.Request) -> httpx.Response:
        rows = [{"id": 7, "att_id": 1, "def_id": 2, "war_type": "RAID", "turns_left": 40}]
        return httpx.Response(200, json={"data": {"wars": {"data": rows}}})

    async with _client(handler) as client:
        wars = await client.fetch_active_wars(1)
    assert wars[0].war_type == "RAID"
    assert wars[0].turns_left == 40


def test_parse_war_alliances_and_winner():
    war = parse_war(
        {
            "id": "12",
            "att_id": "5",
            "def_id": "6",
            "att_alliance_id": "900",
            "def_alliance_id": "0",
            "winner_id": "0",
            "turns_left": 60,
            "attacker": {"nation_name": "A", "alliance": {"name": "Raiders"}},
            "defender": {"nation_name": "B", "alliance": None},
        }
    )
    assert (war.attacker_alliance_id, war.defender_alliance_id) == (900, None)
    assert war.attacker_alliance_name == "Raiders"
    assert war.defender_alliance_name is None
    assert war.winner_id is None
    assert war.active

    finished = parse_war({"id": 13, "att_id": 5, "def_id": 6, "winner_id": "5", "turns_left": 10})
    assert not finished.active
    assert war_url(12) == "https://politicsandwar.com/nation/war/timeline/war=12"


@pytest.mark.asyncio
async def test_fetch_alliance_wars_sends_alliances_and_limit():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        rows = [{"id": 8, "att_id": 1, "def_id": 2, "att_alliance_id": 900}, {"id": None}]
        return httpx.Response(200, json={"data": {"wars": {"data": rows}}})

    async with _client(handler) as client:
        assert await client.fetch_alliance_wars([]) == []
        wars = await client.fetch_alliance_wars([900, 900, 0], limit=25)

    assert [war.id for war in wars] == [8]
    assert seen["body"]["variables"] == {"alliances": [900], "first": 25}
