"""Declare-range math for Politics and War.

A nation may declare on targets whose score sits inside a window expressed
as multipliers of its own score. Targets just outside that window, within
a configurable percentage, are reported as "near range" so raiders can see
who is about to drift in.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

DECLARE_MIN_RATIO = 0.75
# Some in-game help pages still quote 1.75x; 2.5x matches the live dossier.
DECLARE_MAX_RATIO = 2.5


class RangeKind(str, Enum):
    IN_RANGE = "in"
    NEAR_RANGE = "near"
    OUT_OF_RANGE = "out"


class Anchor(str, Enum):
    """Which side of the comparison the declare window is built around."""

    ATTACKER = "attacker"
    TARGET = "target"


@dataclass(frozen=True)
class DeclareWindow:
    min_ratio: float = DECLARE_MIN_RATIO
    max_ratio: float = DECLARE_MAX_RATIO

    def bounds(self, score: float) -> tuple[float, float]:
        return self.min_ratio * score, self.max_ratio * score


DEFAULT_WINDOW = DeclareWindow()


@dataclass(frozen=True)
class RangeResult:
    kind: RangeKind
    delta_pct: Optional[float] = None
    side: Optional[str] = None
    gap_pct: Optional[float] = None

    @property
    def in_range(self) -> bool:
        return self.kind is RangeKind.IN_RANGE

    @property
    def near_range(self) -> bool:
        return self.kind is RangeKind.NEAR_RANGE

    @property
    def reachable(self) -> bool:
        """True when in range or close enough to be worth an alert."""

        return self.kind is not RangeKind.OUT_OF_RANGE


OUT_OF_RANGE = RangeResult(RangeKind.OUT_OF_RANGE)


def score_window(score: float, window: DeclareWindow = DEFAULT_WINDOW) -> tuple[float, float]:
    return window.bounds(score)


def classify(
    attacker_score: Optional[float],
    target_score: Optional[float],
    near_range_pct: float,
    *,
    window: DeclareWindow = DEFAULT_WINDOW,
    anchor: Anchor = Anchor.ATTACKER,
) -> RangeResult:
    """Classify ``target_score`` against the declare window of ``attacker_score``.

    With ``anchor=Anchor.TARGET`` the window is built around the target's
    score instead and the attacker's score is measured against it, which is
    what radar alerts need when the watched nation is the reference point.

    Missing, zero or negative scores classify as out of range; upstream
    scores are sometimes unavailable and that must never raise.
    """

    if anchor is Anchor.TARGET:
        reference, candidate = target_score, attacker_score
    else:
        reference, candidate = attacker_score, target_score

    if reference is None or candidate is None:
        return OUT_OF_RANGE
    if reference <= 0 or candidate < 0:
        return OUT_OF_RANGE

    low, high = window.bounds(reference)
    if low <= candidate <= high:
        delta_pct = (candidate - reference) / reference * 100
        return RangeResult(RangeKind.IN_RANGE, delta_pct=delta_pct)

    near = max(near_range_pct, 0.0) / 100
    below_band = low * (1 - near)
    above_band = high * (1 + near)

    if below_band <= candidate < low:
        gap_pct = (low - candidate) / low * 100
        return RangeResult(RangeKind.NEAR_RANGE, side="below", gap_pct=gap_pct)
    if high < candidate <= above_band:
        gap_pct = (candidate - high) / high * 100
        return RangeResult(RangeKind.NEAR_RANGE, side="above", gap_pct=gap_pct)
    return OUT_OF_RANGE


def describe(result: RangeResult) -> str:
    """Short human label used in dossiers and alert lines."""

    if result.in_range:
        delta = result.delta_pct or 0.0
        return f"In range ({delta:+.1f}% vs your score)"
    if result.near_range:
        return f"Near range ({result.side}, {result.gap_pct:.1f}% outside)"
    return "Out of range"


__all__ = [
    "Anchor",
    "DECLARE_MAX_RATIO",
    "DECLARE_MIN_RATIO",
    "DEFAULT_WINDOW",
    "DeclareWindow",
    "OUT_OF_RANGE",
    "RangeKind",
    "RangeResult",
    "classify",
    "describe",
    "score_window",
]
