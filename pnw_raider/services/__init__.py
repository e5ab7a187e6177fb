"""Decision components and polling orchestrators."""

from .cursor import EventCursorTracker, select_new_events
from .deposits import DepositPoller, PollCadence
from .ledger import AlertLedger
from .linking import NationLinker
from .radar import RadarPoller
from .watchlist import WatchRegistry

__all__ = [
    "AlertLedger",
    "DepositPoller",
    "EventCursorTracker",
    "NationLinker",
    "PollCadence",
    "RadarPoller",
    "WatchRegistry",
    "select_new_events",
]
