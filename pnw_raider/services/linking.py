"""Discord user to nation links and the range gates built on them."""
from __future__ import annotations

import logging
from typing import Dict, Iterable, Optional

from ..models import GuildSettings, Nation, NationLink
from ..pnw_client import PnWClient
from ..ranges import Anchor, DeclareWindow, classify
from ..state import RaiderState

logger = logging.getLogger(__name__)


def any_reachable(
    attacker_scores: Iterable[Optional[float]],
    target_score: Optional[float],
    near_range_pct: float,
    window: DeclareWindow,
    anchor: Anchor = Anchor.ATTACKER,
) -> bool:
    """True when at least one attacker has the target in or near range.

    With ``Anchor.TARGET`` the window is built around the target and each
    attacker score is tested against it.
    """

    return any(
        classify(score, target_score, near_range_pct, window=window, anchor=anchor).reachable
        for score in attacker_scores
    )


class NationLinker:
    """Keeps exactly one primary nation per Discord user."""

    def __init__(self, state: RaiderState) -> None:
        self._state = state

    def link(self, discord_user_id: str, nation_id: int, *, guild_id: Optional[str] = None) -> NationLink:
        link = self._state.link_nation(discord_user_id, nation_id, guild_id=guild_id)
        logger.info("Linked user %s to nation %s", discord_user_id, nation_id)
        return link

    def primary(self, discord_user_id: str) -> Optional[int]:
        return self._state.primary_nation(discord_user_id)

    def guild_primaries(self, guild_id: str) -> Dict[str, int]:
        return self._state.primary_nations_for_guild(guild_id)


class RangeGate:
    """Range checks against linked nations, with scores fetched once per cycle.

    Create a fresh gate for every polling cycle; scores are never reused
    across cycles.
    """

    def __init__(self, client: PnWClient, linker: NationLinker, window: DeclareWindow) -> None:
        self._client = client
        self._linker = linker
        self._window = window
        self._scores: Dict[int, Optional[float]] = {}

    def seed(self, nations: Dict[int, Nation]) -> None:
        for nation_id, nation in nations.items():
            self._scores[nation_id] = nation.score

    async def _load(self, nation_ids: Iterable[int]) -> None:
        missing = sorted({nation_id for nation_id in nation_ids if nation_id not in self._scores})
        if not missing:
            return
        nations = await self._client.fetch_nations(missing)
        for nation_id in missing:
            nation = nations.get(nation_id)
            self._scores[nation_id] = nation.score if nation else None

    async def user_can_hit(
        self,
        discord_user_id: str,
        target_id: int,
        near_range_pct: float,
        *,
        anchor: Anchor = Anchor.ATTACKER,
    ) -> bool:
        """The user's primary nation has ``target_id`` in or near range."""

        primary = self._linker.primary(discord_user_id)
        if primary is None:
            return False
        await self._load([primary, target_id])
        return any_reachable(
            [self._scores.get(primary)],
            self._scores.get(target_id),
            near_range_pct,
            self._window,
            anchor,
        )

    async def guild_can_hit(
        self, guild: GuildSettings, target_id: int, *, anchor: Anchor = Anchor.ATTACKER
    ) -> bool:
        """Any primary nation linked from ``guild`` has ``target_id`` in or near range."""

        primaries = list(self._linker.guild_primaries(guild.guild_id).values())
        if not primaries:
            return False
        await self._load([*primaries, target_id])
        return any_reachable(
            (self._scores.get(nation_id) for nation_id in primaries),
            self._scores.get(target_id),
            guild.near_range_pct,
            self._window,
            anchor,
        )


__all__ = ["NationLinker", "RangeGate", "any_reachable"]
