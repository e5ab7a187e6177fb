"""Persistent bot state backed by sqlite."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import closing
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .config import Settings
from .models import AlertType, EventCursor, GuildSettings, LedgerEntry, NationLink, Watch

logger = logging.getLogger(__name__)

_DB_SCHEMA = """
CREATE TABLE IF NOT EXISTS user_nation (
    discord_user_id TEXT NOT NULL,
    nation_id INTEGER NOT NULL,
    guild_id TEXT,
    is_primary INTEGER NOT NULL DEFAULT 0,
    linked_at TEXT NOT NULL,
    PRIMARY KEY (discord_user_id, nation_id)
);
CREATE UNIQUE INDEX IF NOT EXISTS idx_user_nation_primary
    ON user_nation (discord_user_id) WHERE is_primary = 1;
CREATE TABLE IF NOT EXISTS guild_settings (
    guild_id TEXT PRIMARY KEY,
    near_range_pct REAL,
    bank_abs_usd REAL,
    bank_rel_pct REAL,
    radar_poll_ms INTEGER,
    dm_default INTEGER,
    inrange_only INTEGER,
    deposits_channel_id INTEGER,
    radar_channel_id INTEGER,
    deposits_enabled INTEGER NOT NULL DEFAULT 1,
    radar_enabled INTEGER NOT NULL DEFAULT 1,
    alerts_role_id INTEGER,
    war_alliance_id INTEGER,
    war_offense_channel_id INTEGER,
    war_defense_channel_id INTEGER,
    war_defense_role_id INTEGER,
    war_alerts_enabled INTEGER NOT NULL DEFAULT 1,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS alert_ledger (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    subject_id INTEGER NOT NULL,
    value REAL NOT NULL,
    fingerprint TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_alert_ledger_fingerprint
    ON alert_ledger (fingerprint);
CREATE INDEX IF NOT EXISTS idx_alert_ledger_subject
    ON alert_ledger (event_type, subject_id, created_at);
CREATE TABLE IF NOT EXISTS event_cursor (
    feed TEXT PRIMARY KEY,
    last_event_id INTEGER,
    last_seen_at TEXT,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS watchlist (
    discord_user_id TEXT NOT NULL,
    nation_id INTEGER NOT NULL,
    dm_enabled INTEGER NOT NULL DEFAULT 1,
    bank_abs_usd REAL,
    bank_rel_pct REAL,
    beige_early_min INTEGER,
    inrange_only INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (discord_user_id, nation_id)
);
CREATE INDEX IF NOT EXISTS idx_watchlist_nation
    ON watchlist (nation_id);
CREATE TABLE IF NOT EXISTS price_cache (
    resource TEXT PRIMARY KEY,
    price REAL NOT NULL,
    updated_at TEXT NOT NULL
);
"""

_GUILD_COLUMNS = (
    "near_range_pct",
    "bank_abs_usd",
    "bank_rel_pct",
    "radar_poll_ms",
    "dm_default",
    "inrange_only",
    "deposits_channel_id",
    "radar_channel_id",
    "deposits_enabled",
    "radar_enabled",
    "alerts_role_id",
    "war_alliance_id",
    "war_offense_channel_id",
    "war_defense_channel_id",
    "war_defense_role_id",
    "war_alerts_enabled",
)

# Columns added after the first release; older databases gain them on open.
_GUILD_MIGRATIONS = (
    ("war_alliance_id", "INTEGER"),
    ("war_offense_channel_id", "INTEGER"),
    ("war_defense_channel_id", "INTEGER"),
    ("war_defense_role_id", "INTEGER"),
    ("war_alerts_enabled", "INTEGER NOT NULL DEFAULT 1"),
)

_WATCH_COLUMNS = (
    "discord_user_id, nation_id, dm_enabled, bank_abs_usd, bank_rel_pct, "
    "beige_early_min, inrange_only"
)


def _now(now: Optional[datetime] = None) -> datetime:
    return now or datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _check_nation_id(nation_id: int) -> int:
    if not isinstance(nation_id, int) or isinstance(nation_id, bool) or nation_id <= 0:
        raise ValueError(f"Nation id must be a positive integer, got {nation_id!r}")
    return nation_id


def _check_non_negative(name: str, value: Optional[float]) -> None:
    if value is not None and value < 0:
        raise ValueError(f"{name} must not be negative")


def _opt_bool(value: Optional[bool]) -> Optional[int]:
    return None if value is None else int(bool(value))


class RaiderState:
    """High level interface over the bot's sqlite database.

    Every method opens its own short-lived connection so each write is
    atomic on its own; nothing here spans a whole polling cycle.
    """

    def __init__(self, db_path: Path, settings: Settings) -> None:
        self._db_path = db_path
        self._settings = settings
        self._ensure_schema()

    @property
    def settings(self) -> Settings:
        return self._settings

    def _ensure_schema(self) -> None:
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executescript(_DB_SCHEMA)
            columns = {row[1] for row in conn.execute("PRAGMA table_info(guild_settings)")}
            for name, ddl in _GUILD_MIGRATIONS:
                if name not in columns:
                    conn.execute(f"ALTER TABLE guild_settings ADD COLUMN {name} {ddl}")
                    logger.info("Added guild_settings.%s", name)
            conn.commit()

    # Nation links ------------------------------------------------------
    def link_nation(
        self,
        discord_user_id: str,
        nation_id: int,
        *,
        guild_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> NationLink:
        """Make ``nation_id`` the user's primary nation, demoting any previous one."""

        _check_nation_id(nation_id)
        linked_at = _now(now)
        with closing(sqlite3.connect(self._db_path)) as conn:
            with conn:
                conn.execute(
                    "UPDATE user_nation SET is_primary = 0 WHERE discord_user_id = ?",
                    (discord_user_id,),
                )
                conn.execute(
                    """INSERT INTO user_nation (discord_user_id, nation_id, guild_id, is_primary, linked_at)
                       VALUES (?, ?, ?, 1, ?)
                       ON CONFLICT (discord_user_id, nation_id) DO UPDATE SET
                           is_primary = 1,
                           guild_id = COALESCE(excluded.guild_id, user_nation.guild_id),
                           linked_at = excluded.linked_at""",
                    (discord_user_id, nation_id, guild_id, linked_at.isoformat()),
                )
        return NationLink(discord_user_id, nation_id, True, linked_at)

    def primary_nation(self, discord_user_id: str) -> Optional[int]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT nation_id FROM user_nation WHERE discord_user_id = ? AND is_primary = 1",
                (discord_user_id,),
            ).fetchone()
        return int(row[0]) if row else None

    def list_links(self, discord_user_id: str) -> List[NationLink]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                """SELECT discord_user_id, nation_id, is_primary, linked_at FROM user_nation
                   WHERE discord_user_id = ? ORDER BY is_primary DESC, linked_at DESC""",
                (discord_user_id,),
            ).fetchall()
        return [
            NationLink(row[0], int(row[1]), bool(row[2]), datetime.fromisoformat(row[3]))
            for row in rows
        ]

    def primary_nations_for_guild(self, guild_id: str) -> Dict[str, int]:
        """Map user id to primary nation for users who linked from ``guild_id``."""

        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT discord_user_id, nation_id FROM user_nation WHERE guild_id = ? AND is_primary = 1",
                (guild_id,),
            ).fetchall()
        return {row[0]: int(row[1]) for row in rows}

    # Guild settings ----------------------------------------------------
    def get_guild_settings(self, guild_id: str) -> GuildSettings:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT guild_id, {', '.join(_GUILD_COLUMNS)} FROM guild_settings WHERE guild_id = ?",
                (guild_id,),
            ).fetchone()
        if row is None:
            return self._default_guild_settings(guild_id)
        return self._guild_from_row(row)

    def war_guilds(self) -> List[GuildSettings]:
        """Guilds with war alerts on and an alliance to follow."""

        return [
            guild
            for guild in self.all_guild_settings()
            if guild.war_alerts_enabled and guild.war_alliance_id
        ]

    def all_guild_settings(self) -> List[GuildSettings]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                f"SELECT guild_id, {', '.join(_GUILD_COLUMNS)} FROM guild_settings ORDER BY guild_id"
            ).fetchall()
        return [self._guild_from_row(row) for row in rows]

    def update_guild_settings(
        self,
        guild_id: str,
        *,
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> GuildSettings:
        """Upsert the supplied columns for ``guild_id``; other columns keep their value."""

        unknown = set(fields) - set(_GUILD_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown guild setting(s): {', '.join(sorted(unknown))}")
        for name in ("near_range_pct", "bank_abs_usd", "bank_rel_pct"):
            _check_non_negative(name, fields.get(name))
        if "radar_poll_ms" in fields and fields["radar_poll_ms"] is not None:
            if int(fields["radar_poll_ms"]) < 10_000:
                raise ValueError("radar_poll_ms must be at least 10000")
        if "war_alliance_id" in fields and fields["war_alliance_id"] is not None:
            if int(fields["war_alliance_id"]) <= 0:
                raise ValueError("Alliance id must be a positive integer")
        values = {
            key: int(value) if isinstance(value, bool) else value
            for key, value in fields.items()
        }
        timestamp = _now(now).isoformat()
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                "INSERT OR IGNORE INTO guild_settings (guild_id, updated_at) VALUES (?, ?)",
                (guild_id, timestamp),
            )
            if values:
                assignments = ", ".join(f"{key} = ?" for key in values)
                conn.execute(
                    f"UPDATE guild_settings SET {assignments}, updated_at = ? WHERE guild_id = ?",
                    (*values.values(), timestamp, guild_id),
                )
            conn.commit()
        return self.get_guild_settings(guild_id)

    def _default_guild_settings(self, guild_id: str) -> GuildSettings:
        settings = self._settings
        return GuildSettings(
            guild_id=guild_id,
            near_range_pct=settings.near_range_pct,
            bank_abs_usd=settings.bank_abs_usd,
            bank_rel_pct=settings.bank_rel_pct,
            radar_poll_ms=settings.radar_poll_ms,
            dm_default=settings.dm_default,
            inrange_only=settings.inrange_only,
        )

    def _guild_from_row(self, row: Iterable[Any]) -> GuildSettings:
        guild_id, *columns = row
        data = dict(zip(_GUILD_COLUMNS, columns))
        defaults = self._default_guild_settings(guild_id)

        def pick(name: str, fallback: Any) -> Any:
            value = data.get(name)
            return fallback if value is None else value

        return GuildSettings(
            guild_id=guild_id,
            near_range_pct=float(pick("near_range_pct", defaults.near_range_pct)),
            bank_abs_usd=float(pick("bank_abs_usd", defaults.bank_abs_usd)),
            bank_rel_pct=float(pick("bank_rel_pct", defaults.bank_rel_pct)),
            radar_poll_ms=int(pick("radar_poll_ms", defaults.radar_poll_ms)),
            dm_default=bool(pick("dm_default", defaults.dm_default)),
            inrange_only=bool(pick("inrange_only", defaults.inrange_only)),
            deposits_channel_id=data.get("deposits_channel_id"),
            radar_channel_id=data.get("radar_channel_id"),
            deposits_enabled=bool(pick("deposits_enabled", True)),
            radar_enabled=bool(pick("radar_enabled", True)),
            alerts_role_id=data.get("alerts_role_id"),
            war_alliance_id=data.get("war_alliance_id"),
            war_offense_channel_id=data.get("war_offense_channel_id"),
            war_defense_channel_id=data.get("war_defense_channel_id"),
            war_defense_role_id=data.get("war_defense_role_id"),
            war_alerts_enabled=bool(pick("war_alerts_enabled", True)),
        )

    # Alert ledger ------------------------------------------------------
    def append_ledger(
        self,
        event_type: AlertType,
        subject_id: int,
        value: float,
        fingerprint: str,
        *,
        now: Optional[datetime] = None,
    ) -> int:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                """INSERT INTO alert_ledger (event_type, subject_id, value, fingerprint, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    AlertType(event_type).value,
                    int(subject_id),
                    float(round(value)),
                    fingerprint,
                    _now(now).isoformat(),
                ),
            )
            conn.commit()
            return int(cursor.lastrowid)

    def ledger_has_fingerprint(self, fingerprint: str) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT 1 FROM alert_ledger WHERE fingerprint = ? LIMIT 1",
                (fingerprint,),
            ).fetchone()
        return row is not None

    def ledger_fired_since(self, event_type: AlertType, subject_id: int, since: datetime) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                """SELECT 1 FROM alert_ledger
                   WHERE event_type = ? AND subject_id = ? AND created_at >= ? LIMIT 1""",
                (AlertType(event_type).value, int(subject_id), since.isoformat()),
            ).fetchone()
        return row is not None

    def ledger_entries(
        self,
        event_type: Optional[AlertType] = None,
        subject_id: Optional[int] = None,
    ) -> List[LedgerEntry]:
        query = "SELECT id, event_type, subject_id, value, fingerprint, created_at FROM alert_ledger"
        clauses: List[str] = []
        params: List[Any] = []
        if event_type is not None:
            clauses.append("event_type = ?")
            params.append(AlertType(event_type).value)
        if subject_id is not None:
            clauses.append("subject_id = ?")
            params.append(int(subject_id))
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY id"
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query, params).fetchall()
        return [
            LedgerEntry(
                id=int(row[0]),
                event_type=AlertType(row[1]),
                subject_id=int(row[2]),
                value=float(row[3]),
                fingerprint=row[4],
                created_at=datetime.fromisoformat(row[5]),
            )
            for row in rows
        ]

    # Event cursors -----------------------------------------------------
    def get_cursor(self, feed: str) -> EventCursor:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                "SELECT last_event_id, last_seen_at FROM event_cursor WHERE feed = ?",
                (feed,),
            ).fetchone()
        if row is None:
            return EventCursor(feed=feed)
        last_id = int(row[0]) if row[0] is not None else None
        return EventCursor(feed=feed, last_event_id=last_id, last_seen_at=_parse_ts(row[1]))

    def advance_cursor(
        self,
        feed: str,
        last_event_id: int,
        last_seen_at: Optional[datetime],
        *,
        now: Optional[datetime] = None,
    ) -> EventCursor:
        """Move the cursor forward; a lower id than the stored one is ignored."""

        seen = last_seen_at.isoformat() if last_seen_at else None
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                """INSERT INTO event_cursor (feed, last_event_id, last_seen_at, updated_at)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT (feed) DO UPDATE SET
                       last_seen_at = CASE
                           WHEN event_cursor.last_event_id IS NULL
                                OR excluded.last_event_id > event_cursor.last_event_id
                           THEN COALESCE(excluded.last_seen_at, event_cursor.last_seen_at)
                           ELSE event_cursor.last_seen_at END,
                       last_event_id = MAX(COALESCE(event_cursor.last_event_id, 0), excluded.last_event_id),
                       updated_at = excluded.updated_at""",
                (feed, int(last_event_id), seen, _now(now).isoformat()),
            )
            conn.commit()
        return self.get_cursor(feed)

    # Watchlist ---------------------------------------------------------
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
        now: Optional[datetime] = None,
    ) -> Watch:
        _check_nation_id(nation_id)
        _check_non_negative("bank_abs_usd", bank_abs_usd)
        _check_non_negative("bank_rel_pct", bank_rel_pct)
        _check_non_negative("beige_early_min", beige_early_min)
        timestamp = _now(now).isoformat()
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.execute(
                """INSERT INTO watchlist
                       (discord_user_id, nation_id, dm_enabled, bank_abs_usd, bank_rel_pct,
                        beige_early_min, inrange_only, created_at, updated_at)
                   VALUES (?, ?, COALESCE(?, 1), ?, ?, ?, COALESCE(?, 0), ?, ?)
                   ON CONFLICT (discord_user_id, nation_id) DO UPDATE SET
                       dm_enabled = COALESCE(?, watchlist.dm_enabled),
                       bank_abs_usd = COALESCE(excluded.bank_abs_usd, watchlist.bank_abs_usd),
                       bank_rel_pct = COALESCE(excluded.bank_rel_pct, watchlist.bank_rel_pct),
                       beige_early_min = COALESCE(excluded.beige_early_min, watchlist.beige_early_min),
                       inrange_only = COALESCE(?, watchlist.inrange_only),
                       updated_at = excluded.updated_at""",
                (
                    discord_user_id,
                    nation_id,
                    _opt_bool(dm_enabled),
                    bank_abs_usd,
                    bank_rel_pct,
                    beige_early_min,
                    _opt_bool(inrange_only),
                    timestamp,
                    timestamp,
                    _opt_bool(dm_enabled),
                    _opt_bool(inrange_only),
                ),
            )
            conn.commit()
        watch = self.get_watch(discord_user_id, nation_id)
        assert watch is not None
        return watch

    def remove_watch(self, discord_user_id: str, nation_id: int) -> bool:
        with closing(sqlite3.connect(self._db_path)) as conn:
            cursor = conn.execute(
                "DELETE FROM watchlist WHERE discord_user_id = ? AND nation_id = ?",
                (discord_user_id, nation_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    def get_watch(self, discord_user_id: str, nation_id: int) -> Optional[Watch]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            row = conn.execute(
                f"SELECT {_WATCH_COLUMNS} FROM watchlist WHERE discord_user_id = ? AND nation_id = ?",
                (discord_user_id, nation_id),
            ).fetchone()
        return self._watch_from_row(row) if row else None

    def list_watches(self, discord_user_id: str) -> List[Watch]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                f"SELECT {_WATCH_COLUMNS} FROM watchlist WHERE discord_user_id = ? ORDER BY nation_id",
                (discord_user_id,),
            ).fetchall()
        return [self._watch_from_row(row) for row in rows]

    def watchers_of(self, nation_id: int, *, dm_only: bool = True) -> List[Watch]:
        query = f"SELECT {_WATCH_COLUMNS} FROM watchlist WHERE nation_id = ?"
        if dm_only:
            query += " AND dm_enabled = 1"
        query += " ORDER BY discord_user_id"
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(query, (nation_id,)).fetchall()
        return [self._watch_from_row(row) for row in rows]

    def watched_nation_ids(self) -> List[int]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute(
                "SELECT DISTINCT nation_id FROM watchlist ORDER BY nation_id"
            ).fetchall()
        return [int(row[0]) for row in rows]

    @staticmethod
    def _watch_from_row(row: Iterable[Any]) -> Watch:
        user_id, nation_id, dm_enabled, bank_abs, bank_rel, beige_min, inrange_only = row
        return Watch(
            discord_user_id=user_id,
            nation_id=int(nation_id),
            dm_enabled=bool(dm_enabled),
            bank_abs_usd=float(bank_abs) if bank_abs is not None else None,
            bank_rel_pct=float(bank_rel) if bank_rel is not None else None,
            beige_early_min=int(beige_min) if beige_min is not None else None,
            inrange_only=bool(inrange_only),
        )

    # Price cache -------------------------------------------------------
    def save_prices(self, prices: Dict[str, float], *, now: Optional[datetime] = None) -> None:
        if not prices:
            return
        timestamp = _now(now).isoformat()
        with closing(sqlite3.connect(self._db_path)) as conn:
            conn.executemany(
                "REPLACE INTO price_cache (resource, price, updated_at) VALUES (?, ?, ?)",
                [(resource, float(price), timestamp) for resource, price in prices.items()],
            )
            conn.commit()

    def load_prices(self) -> Dict[str, float]:
        with closing(sqlite3.connect(self._db_path)) as conn:
            rows = conn.execute("SELECT resource, price FROM price_cache").fetchall()
        return {row[0]: float(row[1]) for row in rows}


__all__ = ["RaiderState"]
