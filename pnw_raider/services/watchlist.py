"""Per-user nation watch subscriptions."""
from __future__ import annotations

import logging
from typing import List, Optional

from ..models import Watch
from ..state import RaiderState

logger = logging.getLogger(__name__)


class WatchRegistry:
    """Thin domain layer over the watchlist table.

    Omitted override fields keep whatever was stored before. Thresholds left
    unset inherit the global defaults when the pollers evaluate them.
    """

    def __init__(self, state: RaiderState) -> None:
        self._state = state

    def upsert_watch(
        self,
        discord_user_id: str,
        nation_id: int,
        *,
        dm_enabled: Optional[bool] = None,
        bank_abs_usd: Optional[float] = None,
        bank_rel_pct: Optional[float] = None,
        beige_early_min: Optional[int] = None,
        inrange_only: Optional[bool] = None,
    ) -> Watch:
        watch = self._state.upsert_watch(
            discord_user_id,
            nation_id,
            dm_enabled=dm_enabled,
            bank_abs_usd=bank_abs_usd,
            bank_rel_pct=bank_rel_pct,
            beige_early_min=beige_early_min,
            inrange_only=inrange_only,
        )
        logger.info("User %s now watching nation %s", discord_user_id, nation_id)
        return watch

    def remove_watch(self, discord_user_id: str, nation_id: int) -> bool:
        removed = self._state.remove_watch(discord_user_id, nation_id)
        if removed:
            logger.info("User %s stopped watching nation %s", discord_user_id, nation_id)
        return removed

    def list_watches(self, discord_user_id: str) -> List[Watch]:
        return self._state.list_watches(discord_user_id)

    def get_watch(self, discord_user_id: str, nation_id: int) -> Optional[Watch]:
        return self._state.get_watch(discord_user_id, nation_id)

    def watchers_of(self, nation_id: int) -> List[Watch]:
        """Watches on ``nation_id`` that want DMs."""

        return self._state.watchers_of(nation_id, dm_only=True)

    def watched_nation_ids(self) -> List[int]:
        return self._state.watched_nation_ids()

    def toggle(self, discord_user_id: str, nation_id: int, *, dm_default: bool = True) -> bool:
        """Add the watch if missing, otherwise remove it. Returns the new watching state."""

        if self._state.get_watch(discord_user_id, nation_id) is not None:
            self.remove_watch(discord_user_id, nation_id)
            return False
        self.upsert_watch(discord_user_id, nation_id, dm_enabled=dm_default)
        return True


__all__ = ["WatchRegistry"]
