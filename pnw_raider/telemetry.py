"""Operational metrics for the raider bot, buffered into a sqlite file."""
from __future__ import annotations

import json
import logging
import os
import sqlite3
import time
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_TELEMETRY_DB = "pnw_raider_telemetry.db"
BUFFER_LIMIT = 100

_SCHEMA = """
CREATE TABLE IF NOT EXISTS raider_metrics (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    recorded_at REAL NOT NULL,
    kind TEXT NOT NULL,
    name TEXT NOT NULL,
    value REAL NOT NULL,
    tags TEXT NOT NULL DEFAULT '{}',
    metadata TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_raider_metrics_kind_time
    ON raider_metrics(kind, recorded_at);
"""


class MetricType(Enum):
    COMMAND_USAGE = "command_usage"
    ERROR_RATE = "error_rate"
    PERFORMANCE = "performance"
    SYSTEM_EVENT = "system_event"
    POLL_CYCLE = "poll_cycle"
    ALERT_SENT = "alert_sent"
    DELIVERY_FAILURE = "delivery_failure"


@dataclass
class MetricEvent:
    """One buffered measurement."""

    timestamp: float
    metric_type: MetricType
    name: str
    value: float
    tags: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def as_row(self) -> tuple:
        return (
            self.timestamp,
            self.metric_type.value,
            self.name,
            self.value,
            json.dumps(self.tags),
            json.dumps(self.metadata),
        )


class TelemetryCollector:
    """Buffers metric events and answers the summaries behind ``/raider_status``.

    Events are written in batches: when the buffer reaches ``BUFFER_LIMIT``
    entries, when ``flush_interval`` seconds have passed since the last write,
    or when a report is generated.
    """

    def __init__(self, db_path: Optional[Path] = None, *, flush_interval: float = 60):
        self.db_path = Path(db_path) if db_path else Path(DEFAULT_TELEMETRY_DB)
        self._metrics_buffer: List[MetricEvent] = []
        self._flush_interval = flush_interval
        self._last_flush = time.time()
        with closing(sqlite3.connect(self.db_path)) as conn:
            conn.executescript(_SCHEMA)

    # Recording -----------------------------------------------------------

    def record(
        self,
        metric_type: MetricType,
        name: str,
        value: float,
        tags: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._metrics_buffer.append(
            MetricEvent(time.time(), metric_type, name, value, tags or {}, metadata or {})
        )
        overdue = time.time() - self._last_flush > self._flush_interval
        if overdue or len(self._metrics_buffer) >= BUFFER_LIMIT:
            self.flush()

    def track_command(
        self,
        command_name: str,
        user_id: str,
        guild_id: str,
        success: bool = True,
        duration_ms: Optional[float] = None,
    ) -> None:
        self.record(
            MetricType.COMMAND_USAGE,
            command_name,
            1.0,
            tags={"user_id": user_id, "guild_id": guild_id, "success": "true" if success else "false"},
            metadata={} if duration_ms is None else {"duration_ms": duration_ms},
        )

    def track_error(
        self,
        error_type: str,
        command: Optional[str] = None,
        user_id: Optional[str] = None,
        error_details: Optional[str] = None,
    ) -> None:
        tags = {key: value for key, value in (("command", command), ("user_id", user_id)) if value}
        self.record(
            MetricType.ERROR_RATE,
            error_type,
            1.0,
            tags=tags,
            metadata={"error_details": error_details} if error_details else None,
        )

    def track_performance(
        self, operation: str, duration_ms: float, tags: Optional[Dict[str, str]] = None
    ) -> None:
        self.record(MetricType.PERFORMANCE, operation, duration_ms, tags=tags)

    def track_system_event(
        self,
        event: str,
        *,
        source: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> None:
        """Scheduler lifecycle and skipped ticks."""

        self.record(
            MetricType.SYSTEM_EVENT,
            event,
            1.0,
            tags={"source": source} if source else None,
            metadata={"reason": reason} if reason else None,
        )

    def track_poll_cycle(
        self,
        poller: str,
        *,
        duration_ms: float,
        fetched: int = 0,
        alerts: int = 0,
        ok: bool = True,
    ) -> None:
        self.record(
            MetricType.POLL_CYCLE,
            poller,
            duration_ms,
            tags={"ok": "true" if ok else "false"},
            metadata={"fetched": fetched, "alerts": alerts},
        )

    def track_alert(self, alert_type: str, *, audience: str) -> None:
        """One delivery attempt; ``audience`` is ``channel`` or ``dm``."""

        self.record(MetricType.ALERT_SENT, alert_type, 1.0, tags={"audience": audience})

    def track_delivery_failure(self, purpose: str, error_details: Optional[str] = None) -> None:
        self.record(
            MetricType.DELIVERY_FAILURE,
            purpose,
            1.0,
            metadata={"error_details": error_details} if error_details else None,
        )

    def flush(self) -> None:
        if not self._metrics_buffer:
            return
        pending = [event.as_row() for event in self._metrics_buffer]
        try:
            with closing(sqlite3.connect(self.db_path)) as conn:
                with conn:
                    conn.executemany(
                        "INSERT INTO raider_metrics (recorded_at, kind, name, value, tags, metadata)"
                        " VALUES (?, ?, ?, ?, ?, ?)",
                        pending,
                    )
        except sqlite3.Error:
            logger.exception("Failed to flush %d metric events", len(pending))
            return
        logger.debug("Flushed %d metric events", len(pending))
        self._metrics_buffer.clear()
        self._last_flush = time.time()

    # Queries -------------------------------------------------------------

    def _rows(self, sql: str, params: Sequence[Any]) -> List[tuple]:
        with closing(sqlite3.connect(self.db_path)) as conn:
            return conn.execute(sql, params).fetchall()

    def _count_by_name(self, metric_type: MetricType, hours: int) -> Dict[str, int]:
        rows = self._rows(
            "SELECT name, COUNT(*) FROM raider_metrics"
            " WHERE kind = ? AND recorded_at >= ? GROUP BY name ORDER BY COUNT(*) DESC",
            (metric_type.value, _since(hours)),
        )
        return {name: count for name, count in rows}

    def get_command_stats(self, hours: int = 24) -> Dict[str, Dict[str, Any]]:
        rows = self._rows(
            """
            SELECT name,
                   COUNT(*),
                   AVG(CASE WHEN json_extract(tags, '$.success') = 'true' THEN 1.0 ELSE 0.0 END),
                   COUNT(DISTINCT json_extract(tags, '$.user_id')),
                   AVG(json_extract(metadata, '$.duration_ms'))
            FROM raider_metrics
            WHERE kind = ? AND recorded_at >= ?
            GROUP BY name
            """,
            (MetricType.COMMAND_USAGE.value, _since(hours)),
        )
        return {
            name: {
                "usage_count": count,
                "success_rate": success_rate,
                "unique_users": users,
                "avg_duration_ms": avg_duration,
            }
            for name, count, success_rate, users, avg_duration in rows
        }

    def get_error_summary(self, hours: int = 24) -> Dict[str, int]:
        return self._count_by_name(MetricType.ERROR_RATE, hours)

    def get_alert_summary(self, hours: int = 24) -> Dict[str, int]:
        return self._count_by_name(MetricType.ALERT_SENT, hours)

    def get_delivery_failures(self, hours: int = 24) -> Dict[str, int]:
        return self._count_by_name(MetricType.DELIVERY_FAILURE, hours)

    def get_poll_summary(self, hours: int = 1) -> Dict[str, Dict[str, float]]:
        rows = self._rows(
            """
            SELECT name,
                   COUNT(*),
                   SUM(CASE WHEN json_extract(tags, '$.ok') = 'false' THEN 1 ELSE 0 END),
                   AVG(value),
                   MAX(value)
            FROM raider_metrics
            WHERE kind = ? AND recorded_at >= ?
            GROUP BY name
            """,
            (MetricType.POLL_CYCLE.value, _since(hours)),
        )
        return {
            name: {
                "cycles": cycles,
                "failures": failures,
                "avg_duration_ms": avg_ms,
                "max_duration_ms": max_ms,
            }
            for name, cycles, failures, avg_ms, max_ms in rows
        }

    def get_performance_summary(
        self, operation: Optional[str] = None, hours: int = 1
    ) -> Dict[str, Dict[str, float]]:
        sql = (
            "SELECT name, AVG(value), MIN(value), MAX(value), COUNT(*) FROM raider_metrics"
            " WHERE kind = ? AND recorded_at >= ?"
        )
        params: List[Any] = [MetricType.PERFORMANCE.value, _since(hours)]
        if operation:
            sql += " AND name = ?"
            params.append(operation)
        rows = self._rows(sql + " GROUP BY name", params)
        return {
            name: {
                "avg_duration_ms": avg_ms,
                "min_duration_ms": min_ms,
                "max_duration_ms": max_ms,
                "sample_count": samples,
            }
            for name, avg_ms, min_ms, max_ms, samples in rows
        }

    def generate_report(self) -> Dict[str, Any]:
        """Everything recorded over the last day, flushed first."""

        self.flush()
        return {
            "commands": self.get_command_stats(),
            "errors": self.get_error_summary(),
            "alerts": self.get_alert_summary(),
            "delivery_failures": self.get_delivery_failures(),
            "polls": self.get_poll_summary(hours=24),
            "performance": self.get_performance_summary(hours=24),
        }

    def cleanup_old_data(self, days_to_keep: int = 30) -> int:
        cutoff = time.time() - days_to_keep * 86400
        with closing(sqlite3.connect(self.db_path)) as conn:
            with conn:
                deleted = conn.execute(
                    "DELETE FROM raider_metrics WHERE recorded_at < ?", (cutoff,)
                ).rowcount
        logger.info("Removed %d metric events older than %d days", deleted, days_to_keep)
        return deleted


def _since(hours: int) -> float:
    return time.time() - hours * 3600


_telemetry: Optional[TelemetryCollector] = None


def get_telemetry() -> TelemetryCollector:
    """Return the process-wide collector, creating it on first use."""

    global _telemetry
    if _telemetry is None:
        override = os.getenv("PNW_RAIDER_TELEMETRY_DB")
        _telemetry = TelemetryCollector(Path(override) if override else None)
    return _telemetry


def set_telemetry(collector: Optional[TelemetryCollector]) -> None:
    global _telemetry
    _telemetry = collector


class track_duration:
    """Time a block as a performance sample; an escaping exception is also counted."""

    def __init__(self, operation: str, tags: Optional[Dict[str, str]] = None):
        self.operation = operation
        self.tags = tags or {}
        self._started = 0.0

    def __enter__(self) -> "track_duration":
        self._started = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        telemetry = get_telemetry()
        telemetry.track_performance(
            self.operation, (time.perf_counter() - self._started) * 1000, self.tags
        )
        if exc_type is not None:
            telemetry.track_error(exc_type.__name__, command=self.operation, error_details=str(exc_val))
