"""Incremental polling over a newest-first, monotonically numbered feed.

The upstream feed only exposes a fixed window of recent records. When the
backlog since the cursor is deeper than one page the older records are
never seen; there is no pagination to go back for them.
"""
from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence, TypeVar

from ..models import EventCursor
from ..state import RaiderState

logger = logging.getLogger(__name__)

BANK_FEED = "bankrecs"


class FeedEvent(Protocol):
    id: int
    created_at: object


E = TypeVar("E", bound=FeedEvent)


def select_new_events(events: Sequence[E], cursor: EventCursor) -> List[E]:
    """Return the events newer than ``cursor`` in ascending id order.

    Events without an id fall back to the timestamp comparison; duplicates
    within one page are collapsed.
    """

    fresh: dict = {}
    for event in events:
        event_id = getattr(event, "id", None)
        if event_id:
            if cursor.last_event_id is not None and event_id <= cursor.last_event_id:
                continue
        else:
            created_at = getattr(event, "created_at", None)
            if cursor.last_seen_at is not None and (
                created_at is None or created_at <= cursor.last_seen_at
            ):
                continue
        fresh.setdefault(event_id or id(event), event)
    return sorted(fresh.values(), key=lambda event: (event.id or 0))


class EventCursorTracker:
    """Reads and advances the persisted high-water mark for one feed."""

    def __init__(self, state: RaiderState, feed: str = BANK_FEED) -> None:
        self._state = state
        self._feed = feed

    @property
    def feed(self) -> str:
        return self._feed

    def current(self) -> EventCursor:
        return self._state.get_cursor(self._feed)

    def is_primed(self, cursor: Optional[EventCursor] = None) -> bool:
        cursor = cursor or self.current()
        return cursor.last_event_id is not None or cursor.last_seen_at is not None

    def prime(self, events: Sequence[E]) -> Optional[EventCursor]:
        """Jump straight to the newest event without processing anything."""

        newest = self._newest(events)
        if newest is None:
            return None
        cursor = self._state.advance_cursor(self._feed, newest.id, newest.created_at)
        logger.info("Cursor %s primed at id=%s", self._feed, cursor.last_event_id)
        return cursor

    def advance(self, processed: Sequence[E]) -> EventCursor:
        """Move past every processed event; only called once a cycle is done."""

        newest = self._newest(processed)
        if newest is None:
            return self.current()
        return self._state.advance_cursor(self._feed, newest.id, newest.created_at)

    @staticmethod
    def _newest(events: Sequence[E]) -> Optional[E]:
        numbered = [event for event in events if getattr(event, "id", None)]
        if not numbered:
            return None
        return max(numbered, key=lambda event: event.id)


__all__ = ["BANK_FEED", "EventCursorTracker", "select_new_events"]
