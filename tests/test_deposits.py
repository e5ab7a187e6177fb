"""Tests for the bank radar orchestrator."""
from __future__ import annotations

import asyncio
import random
import sqlite3
from contextlib import closing
from datetime import datetime, timezone

import pytest
from conftest import make_transfer

from pnw_raider.models import AlertType, EntityType, Nation
from pnw_raider.services.cursor import BANK_FEED
from pnw_raider.services.deposits import DepositPoller, PollCadence, build_deposit_message
from pnw_raider.services.ledger import deposit_dm_fingerprint, deposit_fingerprint

CHANNEL = 555
PRIMED_AT = datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc)


@pytest.fixture
def primed_state(state):
    state.advance_cursor(BANK_FEED, 100, PRIMED_AT)
    state.update_guild_settings("g1", deposits_channel_id=CHANNEL)
    return state


def _poller(state, client, sink, settings, **kwargs):
    return DepositPoller(state, client, sink, settings, **kwargs)


def _rewind_cursor(db_path, last_event_id):
    """Force the stored cursor backwards, bypassing the monotonic upsert."""

    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("UPDATE event_cursor SET last_event_id = ?", (last_event_id,))
        conn.commit()


@pytest.mark.asyncio
async def test_scenario_below_floor_posts_nothing(primed_state, client, sink, settings):
    """A 9.4m deposit under a 10m floor produces no post and no ledger entry."""

    client.transfers = [make_transfer(101, cash=9_400_000)]
    result = await _poller(primed_state, client, sink, settings).run_once()

    assert result.ok
    assert sink.channel_posts == []
    assert primed_state.ledger_entries(AlertType.DEPOSIT) == []
    assert primed_state.get_cursor(BANK_FEED).last_event_id == 101


@pytest.mark.asyncio
async def test_scenario_above_floor_posts_once(primed_state, client, sink, settings):
    """A 12m deposit is posted once and recorded under its fingerprint."""

    client.transfers = [make_transfer(101, receiver_id=2002, cash=12_000_000)]
    result = await _poller(primed_state, client, sink, settings).run_once()

    assert result.posted == 1
    assert [post[0] for post in sink.channel_posts] == [CHANNEL]
    entries = primed_state.ledger_entries(AlertType.DEPOSIT)
    assert len(entries) == 1
    assert entries[0].fingerprint == deposit_fingerprint(101, 2002, 12_000_000)
    assert entries[0].subject_id == 2002


@pytest.mark.asyncio
async def test_scenario_watcher_dm(primed_state, client, sink, settings):
    """A watcher with a 5m floor gets one DM for a 6m deposit."""

    primed_state.upsert_watch("w1", 2002, bank_abs_usd=5_000_000, inrange_only=False, dm_enabled=True)
    client.transfers = [make_transfer(101, receiver_id=2002, cash=6_000_000)]
    result = await _poller(primed_state, client, sink, settings).run_once()

    assert result.dms == 1
    assert [dm[0] for dm in sink.direct_messages] == ["w1"]
    assert sink.channel_posts == []
    dm_entries = primed_state.ledger_entries(AlertType.DEPOSIT_WATCH_DM)
    assert len(dm_entries) == 1
    assert dm_entries[0].fingerprint == deposit_dm_fingerprint(
        deposit_fingerprint(101, 2002, 6_000_000), "w1"
    )
    assert primed_state.ledger_entries(AlertType.DEPOSIT) == []


@pytest.mark.asyncio
async def test_overlapping_pages_alert_once(primed_state, client, sink, settings):
    """Re-serving the same records on the next poll does not re-alert."""

    poller = _poller(primed_state, client, sink, settings)
    client.transfers = [make_transfer(102, cash=20_000_000), make_transfer(101, cash=15_000_000)]
    await poller.run_once()
    client.transfers = [
        make_transfer(103, cash=30_000_000),
        make_transfer(102, cash=20_000_000),
        make_transfer(101, cash=15_000_000),
    ]
    result = await poller.run_once()

    assert result.new == 1
    assert len(sink.channel_posts) == 3
    assert len(primed_state.ledger_entries(AlertType.DEPOSIT)) == 3
    assert primed_state.get_cursor(BANK_FEED).last_event_id == 103


@pytest.mark.asyncio
async def test_ledger_blocks_repost_after_cursor_reset(primed_state, client, sink, settings, tmp_path):
    """Even if the cursor were lost, the ledger keeps delivery at-most-once."""

    client.transfers = [make_transfer(101, cash=20_000_000)]
    await _poller(primed_state, client, sink, settings).run_once()

    primed_state.advance_cursor(BANK_FEED, 100, PRIMED_AT)  # ignored: cursor is monotonic
    assert primed_state.get_cursor(BANK_FEED).last_event_id == 101

    _rewind_cursor(tmp_path / "raider.db", 100)

    await _poller(primed_state, client, sink, settings).run_once()
    assert len(sink.channel_posts) == 1


@pytest.mark.asyncio
async def test_events_processed_in_ascending_order(primed_state, client, sink, settings):
    client.transfers = [
        make_transfer(104, cash=11_000_000),
        make_transfer(101, cash=11_000_000),
        make_transfer(103, cash=11_000_000),
    ]
    await _poller(primed_state, client, sink, settings).run_once()
    footers = [post[1].footer for post in sink.channel_posts]
    assert footers == [f"Aid ID {i} • Bank Radar" for i in (101, 103, 104)]


@pytest.mark.asyncio
async def test_first_run_primes_without_alerting(state, client, sink, settings):
    state.update_guild_settings("g1", deposits_channel_id=CHANNEL)
    client.transfers = [make_transfer(90, cash=50_000_000), make_transfer(80, cash=50_000_000)]

    result = await _poller(state, client, sink, settings).run_once()

    assert result.primed
    assert result.cursor == 90
    assert sink.channel_posts == []
    assert state.ledger_entries() == []


@pytest.mark.asyncio
async def test_empty_fetch_leaves_cursor(primed_state, client, sink, settings):
    """A failed or empty upstream read is a no-op for the cycle."""

    result = await _poller(primed_state, client, sink, settings).run_once()
    assert result.fetched == 0
    assert result.ok
    assert primed_state.get_cursor(BANK_FEED).last_event_id == 100


@pytest.mark.asyncio
async def test_alliance_receivers_skipped_but_cursor_advances(primed_state, client, sink, settings):
    client.transfers = [
        make_transfer(101, receiver_id=9, cash=50_000_000, receiver_type=EntityType.ALLIANCE)
    ]
    result = await _poller(primed_state, client, sink, settings).run_once()

    assert sink.channel_posts == []
    assert result.cursor == 101


@pytest.mark.asyncio
async def test_resources_priced_and_cached(primed_state, client, sink, settings):
    """Resource-heavy deposits are valued with market prices, falling back to the cache."""

    client.prices = {"steel": 5_000.0}
    client.transfers = [make_transfer(101, cash=1_000_000, resources={"steel": 2_000})]
    await _poller(primed_state, client, sink, settings).run_once()
    assert len(sink.channel_posts) == 1
    assert primed_state.load_prices() == {"steel": 5_000.0}

    client.prices = {}
    client.transfers = [make_transfer(102, cash=1_000_000, resources={"steel": 2_000})]
    await _poller(primed_state, client, sink, settings).run_once()
    assert len(sink.channel_posts) == 2


@pytest.mark.asyncio
async def test_delivery_failure_still_recorded(primed_state, client, sink, settings):
    """Delivery is best effort; a failed post is not retried next cycle."""

    sink.failing_channels.add(CHANNEL)
    client.transfers = [make_transfer(101, cash=20_000_000)]
    poller = _poller(primed_state, client, sink, settings)

    result = await poller.run_once()
    assert result.posted == 0
    assert len(primed_state.ledger_entries(AlertType.DEPOSIT)) == 1

    await poller.run_once()
    assert len(sink.channel_posts) == 1


@pytest.mark.asyncio
async def test_multiple_guilds_share_one_ledger_entry(primed_state, client, sink, settings):
    primed_state.update_guild_settings("g2", deposits_channel_id=666, alerts_role_id=42)
    primed_state.update_guild_settings("g3", deposits_channel_id=777, deposits_enabled=False)
    primed_state.update_guild_settings("g4", deposits_channel_id=888, bank_abs_usd=50_000_000)
    client.transfers = [make_transfer(101, cash=20_000_000)]

    await _poller(primed_state, client, sink, settings).run_once()

    posted = {post[0]: post[1] for post in sink.channel_posts}
    assert set(posted) == {CHANNEL, 666}
    assert posted[666].mention_role_id == 42
    assert posted[CHANNEL].mention_role_id is None
    assert len(primed_state.ledger_entries(AlertType.DEPOSIT)) == 1


@pytest.mark.asyncio
async def test_guild_inrange_gate(primed_state, client, sink, settings):
    primed_state.update_guild_settings("g1", inrange_only=True)
    client.transfers = [make_transfer(101, receiver_id=2002, cash=20_000_000)]
    client.nations = {2002: Nation(id=2002, score=1000), 10: Nation(id=10, score=1100)}

    await _poller(primed_state, client, sink, settings).run_once()
    assert sink.channel_posts == []

    primed_state.link_nation("u1", 10, guild_id="g1")
    client.transfers = [make_transfer(102, receiver_id=2002, cash=20_000_000)]
    await _poller(primed_state, client, sink, settings).run_once()
    assert len(sink.channel_posts) == 1


@pytest.mark.asyncio
async def test_watcher_inrange_gate_and_default_floor(primed_state, client, sink, settings):
    """Watchers without a floor inherit the global one."""

    primed_state.upsert_watch("w1", 2002)
    primed_state.upsert_watch("w2", 2002, bank_abs_usd=1_000_000, inrange_only=True)
    client.nations = {2002: Nation(id=2002, score=1000), 10: Nation(id=10, score=9000)}
    primed_state.link_nation("w2", 10)
    client.transfers = [make_transfer(101, receiver_id=2002, cash=5_000_000)]

    result = await _poller(primed_state, client, sink, settings).run_once()

    assert result.dms == 0
    assert sink.direct_messages == []


@pytest.mark.asyncio
async def test_watcher_dm_not_repeated(primed_state, client, sink, settings, tmp_path):
    primed_state.upsert_watch("w1", 2002, bank_abs_usd=1_000_000)
    client.transfers = [make_transfer(101, receiver_id=2002, cash=2_000_000)]
    poller = _poller(primed_state, client, sink, settings)
    await poller.run_once()

    _rewind_cursor(tmp_path / "raider.db", 100)
    await poller.run_once()

    assert len(sink.direct_messages) == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(primed_state, client, sink, settings):
    """A second tick while a cycle is running returns immediately."""

    release = asyncio.Event()

    class SlowClient(type(client)):
        async def fetch_recent_transfers(self, limit=50):
            await release.wait()
            return []

    poller = _poller(primed_state, SlowClient(), sink, settings)
    first = asyncio.create_task(poller.run_once())
    await asyncio.sleep(0)
    assert poller.in_flight

    second = await poller.run_once()
    assert second.skipped

    release.set()
    assert (await first).skipped is False
    assert not poller.in_flight


@pytest.mark.asyncio
async def test_cycle_error_is_contained(primed_state, sink, settings):
    class BrokenClient:
        async def fetch_recent_transfers(self, limit=50):
            raise RuntimeError("boom")

    result = await _poller(primed_state, BrokenClient(), sink, settings).run_once()
    assert result.ok is False
    assert primed_state.get_cursor(BANK_FEED).last_event_id == 100


def test_build_deposit_message():
    message = build_deposit_message(make_transfer(101, receiver_id=2002, cash=12_000_000), 12_000_000)
    assert message.kind is AlertType.DEPOSIT
    assert message.subject_id == 2002
    assert "**Amount:** $12,000,000" in message.lines
    assert any("alliance/id=77" in line for line in message.lines)


class Ticker:
    def __init__(self) -> None:
        self.value = 0.0

    def __call__(self) -> float:
        return self.value


def _cadence(ticker, **overrides):
    options = dict(
        base_sec=15,
        min_sec=10,
        max_sec=45,
        jitter_sec=0,
        quiet_backoff_sec=120,
        burst_tighten_count=10,
        burst_window_sec=60,
        clock=ticker,
        rng=random.Random(0),
    )
    options.update(overrides)
    return PollCadence(**options)


def test_cadence_backs_off_when_quiet():
    ticker = Ticker()
    cadence = _cadence(ticker)
    assert cadence.next_interval() == 15

    ticker.value = 130
    assert cadence.next_interval() == 30
    assert cadence.next_interval() == 30

    cadence.record(1)
    assert cadence.next_interval() == 15


def test_cadence_caps_at_max():
    ticker = Ticker()
    cadence = _cadence(ticker, base_sec=30)
    ticker.value = 500
    assert cadence.next_interval() == 45


def test_cadence_tightens_on_burst():
    ticker = Ticker()
    cadence = _cadence(ticker)
    for second in range(10):
        ticker.value = second
        cadence.record(2)
    assert cadence.next_interval() == pytest.approx(10.0)

    ticker.value = 90
    cadence.record(0)
    assert cadence.next_interval() == pytest.approx(15.0)



def test_cadence_counts_ticks_not_rows():
    ticker = Ticker()
    cadence = _cadence(ticker)
    cadence.record(12)
    assert cadence.next_interval() == pytest.approx(15.0)

def test_cadence_jitter_is_bounded():
    ticker = Ticker()
    cadence = _cadence(ticker, jitter_sec=3)
    for _ in range(50):
        assert 12 <= cadence.next_interval() <= 18


def test_cadence_from_settings(settings):
    cadence = PollCadence.from_settings(settings)
    assert cadence.interval == settings.deposit_poll_sec
    assert cadence.min_sec == settings.deposit_poll_min_sec


def test_build_deposit_message_tax_sender_has_no_link():
    event = make_transfer(101, receiver_id=2002, cash=12_000_000, sender_type=EntityType.TAX)
    message = build_deposit_message(event, 12_000_000)
    assert message.lines[0] == "Tax → Nation transfer"
    assert "**From:** tax collection" in message.lines
    assert not any("id=77" in line for line in message.lines)
