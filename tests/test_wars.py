"""Tests for the war declaration feed."""
from __future__ import annotations

from datetime import datetime, timezone

import pytest

from pnw_raider.adapters.discord.builders import mention_content
from pnw_raider.models import AlertType, WarRecord
from pnw_raider.services.ledger import war_fingerprint
from pnw_raider.services.wars import DEFENSE_NOTE, WarAlertPoller, build_war_message, war_status

OUR_AA = 900
ENEMY_AA = 555
OFFENSE_CHANNEL = 701
DEFENSE_CHANNEL = 702
DEFENSE_ROLE = 703


def _war(war_id, *, attacker_aa=OUR_AA, defender_aa=ENEMY_AA, **kwargs):
    values = dict(
        id=war_id,
        attacker_id=10,
        defender_id=20,
        war_type="RAID",
        started_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        turns_left=60,
        attacker_name="Ours",
        defender_name="Theirs",
        attacker_alliance_id=attacker_aa,
        defender_alliance_id=defender_aa,
        attacker_alliance_name="Home",
        defender_alliance_name="Away",
    )
    values.update(kwargs)
    return WarRecord(**values)


@pytest.fixture
def war_state(state):
    state.update_guild_settings(
        "g1",
        war_alliance_id=OUR_AA,
        war_offense_channel_id=OFFENSE_CHANNEL,
        war_defense_channel_id=DEFENSE_CHANNEL,
        war_defense_role_id=DEFENSE_ROLE,
    )
    return state


def test_war_status_labels():
    assert war_status(_war(1)) == "Active"
    assert war_status(_war(1, turns_left=0)) == "Expired"
    assert war_status(_war(1, winner_id=10)) == "Finished"


def test_build_war_message_offense_and_defense():
    military = {"soldiers": 1000, "tanks": None}
    offense = build_war_message(_war(5), True, military, {})
    assert offense.kind is AlertType.WAR_DECLARED
    assert offense.title == "⚔️ Offensive War #5"
    assert offense.color == 0xF39C12
    assert offense.subject_id == 20
    assert offense.mention_note is None
    assert "Soldiers 1,000" in "\n".join(offense.lines)
    assert "**Our side:** Attacker" in offense.lines
    assert offense.links[0] == ("Open war", "https://politicsandwar.com/nation/war/timeline/war=5")

    defense = build_war_message(_war(6, attacker_aa=ENEMY_AA, defender_aa=OUR_AA), False)
    assert defense.title == "🛡️ Defensive War #6"
    assert defense.color == 0x3498DB
    assert defense.subject_id == 10
    assert mention_content(defense.with_mention(DEFENSE_ROLE)) == f"<@&{DEFENSE_ROLE}> {DEFENSE_NOTE}"


def test_build_war_message_without_alliance():
    message = build_war_message(_war(7, defender_aa=None, defender_alliance_name=None), True)
    assert "Alliance: None" in message.lines


@pytest.mark.asyncio
async def test_no_configured_guilds_skips_fetch(state, client, sink, settings):
    result = await WarAlertPoller(state, client, sink, settings).run_once()
    assert result.wars == 0
    assert client.alliance_war_calls == []


@pytest.mark.asyncio
async def test_wars_route_by_side_and_post_once(war_state, client, sink, settings):
    client.alliance_wars = [
        _war(12, attacker_aa=ENEMY_AA, defender_aa=OUR_AA),
        _war(11),
    ]
    client.military = {10: {"soldiers": 5}, 20: {"soldiers": 6}}
    poller = WarAlertPoller(war_state, client, sink, settings)

    first = await poller.run_once()
    assert first.alerts == 2
    assert [(post[0], post[1].title) for post in sink.channel_posts] == [
        (OFFENSE_CHANNEL, "⚔️ Offensive War #11"),
        (DEFENSE_CHANNEL, "🛡️ Defensive War #12"),
    ]
    assert sink.channel_posts[0][1].mention_role_id is None
    assert sink.channel_posts[1][1].mention_role_id == DEFENSE_ROLE
    assert client.alliance_war_calls == [[OUR_AA]]
    assert war_state.ledger_has_fingerprint(war_fingerprint("g1", 11))

    second = await poller.run_once()
    assert second.alerts == 0
    assert len(sink.channel_posts) == 2
    assert len(client.military_calls) == 4


@pytest.mark.asyncio
async def test_finished_and_unrelated_wars_are_ignored(war_state, client, sink, settings):
    client.alliance_wars = [
        _war(20, winner_id=10),
        _war(21, turns_left=0),
        _war(22, attacker_aa=ENEMY_AA, defender_aa=ENEMY_AA),
    ]
    result = await WarAlertPoller(war_state, client, sink, settings).run_once()
    assert result.wars == 2
    assert result.alerts == 0
    assert sink.channel_posts == []


@pytest.mark.asyncio
async def test_missing_side_channel_skips_that_side(state, client, sink, settings):
    state.update_guild_settings("g1", war_alliance_id=OUR_AA, war_offense_channel_id=OFFENSE_CHANNEL)
    client.alliance_wars = [_war(30), _war(31, attacker_aa=ENEMY_AA, defender_aa=OUR_AA)]

    result = await WarAlertPoller(state, client, sink, settings).run_once()
    assert result.alerts == 1
    assert [post[0] for post in sink.channel_posts] == [OFFENSE_CHANNEL]
    assert not state.ledger_has_fingerprint(war_fingerprint("g1", 31))


@pytest.mark.asyncio
async def test_each_guild_gets_its_own_alert(war_state, client, sink, settings):
    war_state.update_guild_settings(
        "g2", war_alliance_id=ENEMY_AA, war_defense_channel_id=802, war_offense_channel_id=801
    )
    client.alliance_wars = [_war(40)]

    result = await WarAlertPoller(war_state, client, sink, settings).run_once()
    assert result.alerts == 2
    assert sorted(post[0] for post in sink.channel_posts) == [OFFENSE_CHANNEL, 802]
    assert client.alliance_war_calls == [[ENEMY_AA, OUR_AA]]


@pytest.mark.asyncio
async def test_failed_delivery_is_not_retried(war_state, client, sink, settings):
    sink.failing_channels.add(OFFENSE_CHANNEL)
    client.alliance_wars = [_war(50)]
    poller = WarAlertPoller(war_state, client, sink, settings)

    await poller.run_once()
    await poller.run_once()
    assert len(sink.channel_posts) == 1
    assert len(war_state.ledger_entries(AlertType.WAR_DECLARED)) == 1


@pytest.mark.asyncio
async def test_overlapping_tick_is_skipped(war_state, client, sink, settings, isolated_telemetry):
    poller = WarAlertPoller(war_state, client, sink, settings)
    poller._in_flight = True
    result = await poller.run_once()
    assert result.skipped
    assert client.alliance_war_calls == []


@pytest.mark.asyncio
async def test_fetch_error_marks_cycle_failed(war_state, client, sink, settings, isolated_telemetry):
    async def boom(*args, **kwargs):
        raise RuntimeError("upstream")

    client.fetch_alliance_wars = boom
    poller = WarAlertPoller(war_state, client, sink, settings)
    result = await poller.run_once()
    assert result.ok is False
    assert not poller.in_flight
    isolated_telemetry.flush()
    assert isolated_telemetry.get_poll_summary()["wars"]["failures"] == 1
