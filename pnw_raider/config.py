"""Configuration loading utilities for the PnW raider bot."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

DEFAULT_SETTINGS_PATH = Path(__file__).parent / "data" / "settings.yaml"

_API_KEY_ENV_VARS = (
    "PNW_API_KEY",
    "PNW_GRAPH_KEY",
    "PNW_SERVICE_API_KEY",
    "PNW_DEFAULT_API_KEY",
)


def _env_float(env_key: str, default: float) -> float:
    value = os.getenv(env_key)
    if value is None or not value.strip():
        return float(default)
    try:
        return float(value)
    except ValueError:
        logger.warning("Invalid value %s for %s; using %s", value, env_key, default)
        return float(default)


@dataclass(frozen=True)
class Settings:
    """Typed view over the settings YAML file."""

    near_range_pct: float
    declare_min_ratio: float
    declare_max_ratio: float
    bank_abs_usd: float
    bank_rel_pct: float
    loot_p50_usd: float
    bank_page_size: int
    deposit_poll_sec: float
    deposit_poll_min_sec: float
    deposit_poll_max_sec: float
    deposit_poll_jitter_sec: float
    deposit_quiet_backoff_sec: float
    deposit_burst_tighten_count: int
    deposit_burst_window_sec: float
    radar_poll_ms: int
    radar_jitter_pct: float
    minutes_per_turn: int
    beige_lead_minutes: int
    radar_cooldown_minutes: int
    dedupe_beige_dms: bool
    dm_default: bool
    inrange_only: bool
    graphql_url: str
    api_timeout_sec: float
    military_cache_ttl_sec: float
    war_poll_ms: int
    war_page_size: int

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Settings":
        range_cfg = data.get("range", {})
        deposits_cfg = data.get("deposits", {})
        poll_cfg = deposits_cfg.get("poll", {})
        radar_cfg = data.get("radar", {})
        alerts_cfg = data.get("alerts", {})
        api_cfg = data.get("api", {})
        wars_cfg = data.get("wars", {})
        declare_min = float(range_cfg.get("declare_min_ratio", 0.75))
        declare_max = float(range_cfg.get("declare_max_ratio", 2.5))
        if declare_min <= 0 or declare_max <= declare_min:
            raise ValueError(
                f"Invalid declare window {declare_min}..{declare_max}; expected 0 < min < max"
            )
        return Settings(
            near_range_pct=float(range_cfg.get("near_pct", 5)),
            declare_min_ratio=declare_min,
            declare_max_ratio=declare_max,
            bank_abs_usd=float(deposits_cfg.get("abs_usd", 10_000_000)),
            bank_rel_pct=float(deposits_cfg.get("rel_pct", 20)),
            loot_p50_usd=float(deposits_cfg.get("loot_p50_usd", 0)),
            bank_page_size=int(deposits_cfg.get("page_size", 50)),
            deposit_poll_sec=float(poll_cfg.get("base_sec", 15)),
            deposit_poll_min_sec=float(poll_cfg.get("min_sec", 10)),
            deposit_poll_max_sec=float(poll_cfg.get("max_sec", 45)),
            deposit_poll_jitter_sec=float(poll_cfg.get("jitter_sec", 3)),
            deposit_quiet_backoff_sec=float(poll_cfg.get("quiet_backoff_sec", 120)),
            deposit_burst_tighten_count=int(poll_cfg.get("burst_tighten_count", 10)),
            deposit_burst_window_sec=float(poll_cfg.get("burst_window_sec", 60)),
            radar_poll_ms=int(radar_cfg.get("poll_ms", 90_000)),
            radar_jitter_pct=float(radar_cfg.get("jitter_pct", 30)),
            minutes_per_turn=int(radar_cfg.get("minutes_per_turn", 120)),
            beige_lead_minutes=int(radar_cfg.get("beige_lead_minutes", 60)),
            radar_cooldown_minutes=int(radar_cfg.get("cooldown_minutes", 30)),
            dedupe_beige_dms=bool(radar_cfg.get("dedupe_beige_dms", True)),
            dm_default=bool(alerts_cfg.get("dm_default", True)),
            inrange_only=bool(alerts_cfg.get("inrange_only", False)),
            graphql_url=str(api_cfg.get("graphql_url", "https://api.politicsandwar.com/graphql")),
            api_timeout_sec=float(api_cfg.get("timeout_sec", 10)),
            military_cache_ttl_sec=float(api_cfg.get("military_cache_ttl_sec", 120)),
            war_poll_ms=max(int(wars_cfg.get("poll_ms", 60_000)), 10_000),
            war_page_size=int(wars_cfg.get("page_size", 50)),
        )

    def with_env_overrides(self) -> "Settings":
        """Apply the operator-facing environment knobs on top of the YAML values."""

        values: Dict[str, Any] = {}
        values["near_range_pct"] = _env_float("NEAR_RANGE_PCT", self.near_range_pct)
        values["bank_abs_usd"] = _env_float("BANK_ABS_USD", self.bank_abs_usd)
        values["bank_rel_pct"] = _env_float("BANK_REL_PCT", self.bank_rel_pct)
        values["loot_p50_usd"] = _env_float("LOOT_P50_USD", self.loot_p50_usd)
        values["radar_poll_ms"] = int(_env_float("RADAR_POLL_MS", self.radar_poll_ms))
        values["deposit_poll_sec"] = _env_float("DEPOSITS_POLL_SEC", self.deposit_poll_sec)
        values["war_poll_ms"] = int(_env_float("WAR_POLL_MS", self.war_poll_ms))
        graphql_url = os.getenv("PNW_API_BASE_GRAPHQL", "").strip()
        if graphql_url:
            values["graphql_url"] = graphql_url
        return replace(self, **values)


class SettingsLoader:
    """Loads and caches settings from YAML configuration files."""

    def __init__(self, path: Path | None = None) -> None:
        env_path = os.getenv("PNW_RAIDER_SETTINGS")
        self._path = path or (Path(env_path) if env_path else DEFAULT_SETTINGS_PATH)
        self._cache: Settings | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self, force: bool = False) -> Settings:
        if self._cache is not None and not force:
            return self._cache
        with self._path.open("r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        settings = Settings.from_dict(data).with_env_overrides()
        if settings.beige_lead_minutes < settings.minutes_per_turn:
            logger.info(
                "Default beige lead (%s min) is shorter than one turn (%s min); "
                "only watches with beige_early_min set will get beige DMs",
                settings.beige_lead_minutes,
                settings.minutes_per_turn,
            )
        self._cache = settings
        return self._cache


def get_settings() -> Settings:
    """Convenience accessor for default settings."""

    return SettingsLoader().load()


def resolve_api_key() -> Optional[str]:
    """Return the first configured PnW API key, if any."""

    for env_key in _API_KEY_ENV_VARS:
        value = (os.getenv(env_key) or "").strip()
        if value:
            return value
    return None


__all__ = ["Settings", "SettingsLoader", "get_settings", "resolve_api_key"]
