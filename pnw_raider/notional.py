"""USD valuation of mixed cash + resource bundles."""
from __future__ import annotations

import math
from typing import Dict, Mapping, Optional

from .models import RESOURCE_KEYS

PriceMap = Dict[str, float]


def compute_notional_usd(bundle: Mapping[str, float], prices: Mapping[str, float]) -> float:
    """Return the cash value of ``bundle`` priced with ``prices``.

    Unknown or unpriced resources contribute nothing. The result is left
    unrounded; callers round only when comparing or displaying.
    """

    total = _as_number(bundle.get("cash"))
    for resource in RESOURCE_KEYS:
        quantity = _as_number(bundle.get(resource))
        if quantity <= 0:
            continue
        total += quantity * _as_number(prices.get(resource))
    return max(total, 0.0)


def rounded_usd(value: float) -> int:
    return int(round(value))


def passes_floor(
    notional_usd: float,
    abs_usd: float,
    *,
    rel_pct: Optional[float] = None,
    loot_p50_usd: float = 0.0,
) -> bool:
    """Check a deposit against the absolute floor and the optional relative floor.

    The relative floor only applies once a loot median is known.
    """

    amount = rounded_usd(notional_usd)
    if amount >= abs_usd:
        return True
    if loot_p50_usd > 0 and rel_pct and rel_pct > 0:
        return amount >= loot_p50_usd * rel_pct / 100
    return False


def format_usd(value: float) -> str:
    return f"${rounded_usd(value):,}"


def _short(value: float) -> str:
    for threshold, suffix in ((1e9, "b"), (1e6, "m"), (1e3, "k")):
        if abs(value) >= threshold:
            return f"{value / threshold:.1f}".rstrip("0").rstrip(".") + suffix
    return f"{value:.0f}"


def breakdown(bundle: Mapping[str, float], limit: int = 4) -> str:
    """Compact description such as ``$7.2m cash • 20k food • 3k munitions``."""

    parts = []
    cash = _as_number(bundle.get("cash"))
    if cash > 0:
        parts.append(f"${_short(cash)} cash")
    resources = sorted(
        ((key, _as_number(bundle.get(key))) for key in RESOURCE_KEYS),
        key=lambda item: item[1],
        reverse=True,
    )
    for key, quantity in resources:
        if quantity <= 0 or len(parts) >= limit:
            continue
        parts.append(f"{_short(quantity)} {key}")
    return " • ".join(parts) if parts else "nothing of value"


def _as_number(value: object) -> float:
    if value is None:
        return 0.0
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(number) or math.isinf(number):
        return 0.0
    return number


__all__ = [
    "PriceMap",
    "breakdown",
    "compute_notional_usd",
    "format_usd",
    "passes_floor",
    "rounded_usd",
]
