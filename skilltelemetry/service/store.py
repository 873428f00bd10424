from __future__ import annotations

import logging
import sqlite3
import threading
import time
import uuid
from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from skilltelemetry.errors import SchemaError, StorageError
from skilltelemetry.models import (
    Alert,
    CallerDependency,
    CostSummaryEntry,
    DailyStat,
    EventRow,
    Overview,
    TopSkillEntry,
    UserRetentionPair,
)
from skilltelemetry.service.migrations import migrate
from skilltelemetry.stats import nearest_rank

logger = logging.getLogger(__name__)

DAY_SECONDS = 86400

_EVENT_COLUMNS = (
    "id",
    "event_type",
    "skill_id",
    "timestamp",
    "user_id",
    "session_id",
    "input_hash",
    "success",
    "duration_ms",
    "error",
    "feedback_score",
    "token_input",
    "token_output",
    "api_cost_usd",
    "caller_agent",
    "caller_workflow",
    "caller_tool",
    "metadata_json",
)

_DAILY_COLUMNS = (
    "skill_id",
    "date",
    "total_calls",
    "success_count",
    "fail_count",
    "p50_ms",
    "p95_ms",
    "p99_ms",
    "avg_ms",
    "unique_users",
    "total_cost_usd",
    "thumbs_up",
    "thumbs_down",
)

# Retention pairs reported per query.
RETENTION_PAIR_LIMIT = 20


def _now() -> int:
    return int(time.time())


class EventStore:
    """SQLite-backed store for skill events, daily rollups and alerts.

    A single connection is shared by every caller and guarded by one lock, so
    reads and writes are fully serialized.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        try:
            self._conn = sqlite3.connect(self._db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute("PRAGMA busy_timeout=5000")
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open analytics database {self._db_path}: {exc}") from exc
        self._init_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _init_schema(self) -> None:
        with self._lock:
            try:
                version = migrate(self._conn)
            except SchemaError:
                self._conn.close()
                raise
            except sqlite3.Error as exc:
                self._conn.close()
                raise StorageError(f"Schema migration failed: {exc}") from exc
        logger.debug("Analytics store ready at %s (schema v%d)", self._db_path, version)

    @contextmanager
    def _locked(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except (sqlite3.Error, OverflowError) as exc:
                # sqlite3 raises OverflowError for integers outside the 64-bit range.
                raise StorageError(str(exc)) from exc

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Events

    def insert_events(self, events: Sequence[EventRow]) -> int:
        """Insert a batch atomically and return the number of rows processed.

        Duplicate ids are ignored but still counted.
        """
        placeholders = ", ".join("?" for _ in _EVENT_COLUMNS)
        sql = f"INSERT OR IGNORE INTO skill_events({', '.join(_EVENT_COLUMNS)}) VALUES({placeholders})"
        count = 0
        with self._locked() as conn:
            with conn:
                for event in events:
                    conn.execute(
                        sql,
                        (
                            event.id,
                            event.event_type,
                            event.skill_id,
                            int(event.timestamp),
                            event.user_id,
                            event.session_id,
                            event.input_hash,
                            1 if event.success else 0,
                            event.duration_ms,
                            event.error,
                            event.feedback_score,
                            event.token_input,
                            event.token_output,
                            event.api_cost_usd,
                            event.caller_agent,
                            event.caller_workflow,
                            event.caller_tool,
                            event.metadata_json,
                        ),
                    )
                    count += 1
        return count

    def get_event(self, event_id: str) -> EventRow | None:
        with self._locked() as conn:
            row = conn.execute(
                f"SELECT {', '.join(_EVENT_COLUMNS)} FROM skill_events WHERE id = ?",
                (event_id,),
            ).fetchone()
        if row is None:
            return None
        return self._event_from_row(row)

    def events_for_day(self, day: str) -> list[EventRow]:
        """Return every event whose UTC calendar date is ``day`` (YYYY-MM-DD)."""
        with self._locked() as conn:
            rows = conn.execute(
                f"""
                SELECT {', '.join(_EVENT_COLUMNS)} FROM skill_events
                WHERE date(timestamp, 'unixepoch') = ?
                ORDER BY skill_id ASC, duration_ms ASC, id ASC
                """,
                (day,),
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> EventRow:
        data = {key: row[key] for key in _EVENT_COLUMNS}
        data["success"] = bool(data["success"])
        return EventRow(**data)

    # ------------------------------------------------------------------
    # Windows used by the alert detector

    @staticmethod
    def _latency_samples(conn: sqlite3.Connection, where: str, params: Sequence[Any]) -> list[int]:
        rows = conn.execute(
            f"""
            SELECT duration_ms FROM skill_events
            WHERE {where} AND duration_ms IS NOT NULL
            ORDER BY duration_ms ASC
            """,
            tuple(params),
        ).fetchall()
        return [int(row[0]) for row in rows]

    def window_counts(self, *, skill_id: str, start: int, end: int | None = None) -> tuple[int, int]:
        """Return ``(total, failures)`` for a skill over ``[start, end)``."""
        where, params = self._window_clause(skill_id, start, end)
        with self._locked() as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN success = 0 THEN 1 ELSE 0 END), 0) AS failures
                FROM skill_events WHERE {where}
                """,
                params,
            ).fetchone()
        return int(row["total"]), int(row["failures"])

    def window_p95(self, *, skill_id: str, start: int, end: int | None = None) -> int | None:
        where, params = self._window_clause(skill_id, start, end)
        with self._locked() as conn:
            samples = self._latency_samples(conn, where, params)
        return nearest_rank(samples, 0.95)

    @staticmethod
    def _window_clause(skill_id: str, start: int, end: int | None) -> tuple[str, tuple[Any, ...]]:
        if end is None:
            return "skill_id = ? AND timestamp >= ?", (skill_id, start)
        return "skill_id = ? AND timestamp >= ? AND timestamp < ?", (skill_id, start, end)

    # ------------------------------------------------------------------
    # Aggregate queries

    def get_overview(self, days: int, *, now: int | None = None) -> Overview:
        now = _now() if now is None else now
        period_start = now - days * DAY_SECONDS
        prev_start = period_start - days * DAY_SECONDS

        with self._locked() as conn:
            current = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END), 0) AS successes,
                       COUNT(DISTINCT user_id) AS users
                FROM skill_events WHERE timestamp >= ?
                """,
                (period_start,),
            ).fetchone()
            current_samples = self._latency_samples(conn, "timestamp >= ?", (period_start,))

            previous = conn.execute(
                """
                SELECT COUNT(*) AS total,
                       COALESCE(SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END), 0) AS successes,
                       COUNT(DISTINCT user_id) AS users
                FROM skill_events WHERE timestamp >= ? AND timestamp < ?
                """,
                (prev_start, period_start),
            ).fetchone()
            previous_samples = self._latency_samples(
                conn, "timestamp >= ? AND timestamp < ?", (prev_start, period_start)
            )

        total_calls = int(current["total"])
        active_users = int(current["users"])
        success_rate = int(current["successes"]) / total_calls if total_calls > 0 else 1.0
        p95 = nearest_rank(current_samples, 0.95)

        prev_total = int(previous["total"])
        prev_success_rate = int(previous["successes"]) / prev_total if prev_total > 0 else 1.0
        prev_p95 = nearest_rank(previous_samples, 0.95)

        return Overview(
            total_calls=total_calls,
            success_rate=success_rate,
            p95_latency_ms=p95,
            active_users=active_users,
            total_calls_delta_pct=(
                (total_calls - prev_total) / prev_total * 100.0 if prev_total > 0 else None
            ),
            success_rate_delta=success_rate - prev_success_rate,
            p95_latency_delta_ms=(p95 - prev_p95) if p95 is not None and prev_p95 is not None else None,
            active_users_delta=active_users - int(previous["users"]),
        )

    def get_daily_trend(self, days: int, *, now: int | None = None) -> list[DailyStat]:
        since = (_now() if now is None else now) - days * DAY_SECONDS
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT date, SUM(total_calls) AS total_calls, SUM(success_count) AS success_count,
                       SUM(fail_count) AS fail_count, AVG(avg_ms) AS avg_ms,
                       SUM(unique_users) AS unique_users, SUM(total_cost_usd) AS total_cost_usd,
                       SUM(thumbs_up) AS thumbs_up, SUM(thumbs_down) AS thumbs_down
                FROM skill_daily_stats
                WHERE date >= date(?, 'unixepoch')
                GROUP BY date ORDER BY date ASC
                """,
                (since,),
            ).fetchall()
        return [self._summed_daily_stat(row) for row in rows]

    def get_top_skills(self, days: int, limit: int, *, now: int | None = None) -> list[TopSkillEntry]:
        since = (_now() if now is None else now) - days * DAY_SECONDS
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT skill_id, COUNT(*) AS cnt,
                       SUM(CASE WHEN success = 1 THEN 1 ELSE 0 END) * 1.0 / COUNT(*) AS sr,
                       AVG(duration_ms) AS avg_lat
                FROM skill_events WHERE timestamp >= ?
                GROUP BY skill_id ORDER BY cnt DESC, skill_id ASC LIMIT ?
                """,
                (since, limit),
            ).fetchall()
        return [
            TopSkillEntry(
                skill_id=row["skill_id"],
                call_count=int(row["cnt"]),
                success_rate=float(row["sr"]),
                avg_latency_ms=row["avg_lat"],
            )
            for row in rows
        ]

    def get_success_rate_trend(
        self,
        skill_id: str | None,
        days: int,
        *,
        now: int | None = None,
    ) -> list[DailyStat]:
        since = (_now() if now is None else now) - days * DAY_SECONDS
        with self._locked() as conn:
            if skill_id is None:
                rows = conn.execute(
                    """
                    SELECT date, SUM(total_calls) AS total_calls, SUM(success_count) AS success_count,
                           SUM(fail_count) AS fail_count, AVG(avg_ms) AS avg_ms,
                           SUM(unique_users) AS unique_users, SUM(total_cost_usd) AS total_cost_usd,
                           SUM(thumbs_up) AS thumbs_up, SUM(thumbs_down) AS thumbs_down
                    FROM skill_daily_stats
                    WHERE date >= date(?, 'unixepoch')
                    GROUP BY date ORDER BY date ASC
                    """,
                    (since,),
                ).fetchall()
                return [self._summed_daily_stat(row) for row in rows]

            rows = conn.execute(
                f"""
                SELECT {', '.join(_DAILY_COLUMNS)} FROM skill_daily_stats
                WHERE skill_id = ? AND date >= date(?, 'unixepoch')
                ORDER BY date ASC
                """,
                (skill_id, since),
            ).fetchall()
        return [self._daily_stat_from_row(row) for row in rows]

    def get_cost_summary(self, days: int, *, now: int | None = None) -> list[CostSummaryEntry]:
        since = (_now() if now is None else now) - days * DAY_SECONDS
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT skill_id, SUM(total_calls) AS calls,
                       SUM(success_count) * 1.0 / NULLIF(SUM(total_calls), 0) AS sr,
                       COALESCE(SUM(total_cost_usd), 0) AS cost
                FROM skill_daily_stats WHERE date >= date(?, 'unixepoch')
                GROUP BY skill_id ORDER BY cost DESC, skill_id ASC
                """,
                (since,),
            ).fetchall()
        return [
            CostSummaryEntry(
                skill_id=row["skill_id"],
                call_count=int(row["calls"] or 0),
                success_rate=float(row["sr"]) if row["sr"] is not None else 1.0,
                total_cost_usd=float(row["cost"]),
            )
            for row in rows
        ]

    def get_caller_analysis(self, days: int, *, now: int | None = None) -> list[CallerDependency]:
        since = (_now() if now is None else now) - days * DAY_SECONDS
        with self._locked() as conn:
            rows = conn.execute(
                """
                SELECT caller_agent, caller_tool, skill_id, COUNT(*) AS cnt
                FROM skill_events
                WHERE timestamp >= ? AND caller_agent IS NOT NULL
                GROUP BY caller_agent, caller_tool, skill_id
                ORDER BY cnt DESC, caller_agent ASC, skill_id ASC
                """,
                (since,),
            ).fetchall()
        return [
            CallerDependency(
                caller_agent=row["caller_agent"],
                caller_tool=row["caller_tool"],
                skill_id=row["skill_id"],
                call_count=int(row["cnt"]),
            )
            for row in rows
        ]

    def get_user_retention(self, days: int, *, now: int | None = None) -> list[UserRetentionPair]:
        """Of the users of ``skill_a``, how many also used ``skill_b`` in the window."""
        since = (_now() if now is None else now) - days * DAY_SECONDS
        with self._locked() as conn:
            pairs = conn.execute(
                """
                SELECT a.skill_id AS skill_a, b.skill_id AS skill_b,
                       COUNT(DISTINCT a.user_id) AS both_users
                FROM (SELECT DISTINCT skill_id, user_id FROM skill_events WHERE timestamp >= ?) a
                JOIN (SELECT DISTINCT skill_id, user_id FROM skill_events WHERE timestamp >= ?) b
                  ON a.user_id = b.user_id AND a.skill_id < b.skill_id
                GROUP BY a.skill_id, b.skill_id
                ORDER BY both_users DESC, skill_a ASC, skill_b ASC
                LIMIT ?
                """,
                (since, since, RETENTION_PAIR_LIMIT),
            ).fetchall()

            result: list[UserRetentionPair] = []
            for pair in pairs:
                users_a = int(
                    conn.execute(
                        """
                        SELECT COUNT(DISTINCT user_id) FROM skill_events
                        WHERE skill_id = ? AND timestamp >= ?
                        """,
                        (pair["skill_a"], since),
                    ).fetchone()[0]
                )
                both = int(pair["both_users"])
                result.append(
                    UserRetentionPair(
                        skill_a=pair["skill_a"],
                        skill_b=pair["skill_b"],
                        users_both=both,
                        users_a_only=users_a - both,
                        retention_rate=(both / users_a) if users_a > 0 else 0.0,
                    )
                )
        return result

    # ------------------------------------------------------------------
    # Daily rollups

    def upsert_daily_stats(self, stats: Sequence[DailyStat]) -> int:
        placeholders = ", ".join("?" for _ in _DAILY_COLUMNS)
        sql = f"INSERT OR REPLACE INTO skill_daily_stats({', '.join(_DAILY_COLUMNS)}) VALUES({placeholders})"
        with self._locked() as conn:
            with conn:
                for stat in stats:
                    conn.execute(sql, tuple(getattr(stat, column) for column in _DAILY_COLUMNS))
        return len(stats)

    @staticmethod
    def _daily_stat_from_row(row: sqlite3.Row) -> DailyStat:
        return DailyStat(
            skill_id=row["skill_id"],
            date=row["date"],
            total_calls=int(row["total_calls"]),
            success_count=int(row["success_count"]),
            fail_count=int(row["fail_count"]),
            p50_ms=row["p50_ms"],
            p95_ms=row["p95_ms"],
            p99_ms=row["p99_ms"],
            avg_ms=row["avg_ms"],
            unique_users=int(row["unique_users"]),
            total_cost_usd=float(row["total_cost_usd"] or 0.0),
            thumbs_up=int(row["thumbs_up"] or 0),
            thumbs_down=int(row["thumbs_down"] or 0),
        )

    @staticmethod
    def _summed_daily_stat(row: sqlite3.Row) -> DailyStat:
        # Percentiles do not sum across skills, so they stay empty here.
        return DailyStat(
            skill_id="all",
            date=row["date"],
            total_calls=int(row["total_calls"] or 0),
            success_count=int(row["success_count"] or 0),
            fail_count=int(row["fail_count"] or 0),
            avg_ms=row["avg_ms"],
            unique_users=int(row["unique_users"] or 0),
            total_cost_usd=float(row["total_cost_usd"] or 0.0),
            thumbs_up=int(row["thumbs_up"] or 0),
            thumbs_down=int(row["thumbs_down"] or 0),
        )

    # ------------------------------------------------------------------
    # Alerts

    def raise_alert(
        self,
        *,
        skill_id: str,
        alert_type: str,
        severity: str,
        message: str,
        now: int | None = None,
    ) -> Alert | None:
        """Insert an alert unless an unresolved one of the same type exists for the skill.

        Returns the new alert, or ``None`` when the insert was suppressed.
        """
        detected_at = _now() if now is None else now
        alert_id = str(uuid.uuid4())
        with self._locked() as conn:
            existing = conn.execute(
                """
                SELECT COUNT(*) FROM analytics_alerts
                WHERE skill_id = ? AND alert_type = ? AND resolved_at IS NULL
                """,
                (skill_id, alert_type),
            ).fetchone()[0]
            if existing:
                return None
            with conn:
                cur = conn.execute(
                    """
                    INSERT OR IGNORE INTO analytics_alerts(
                      id, skill_id, alert_type, severity, message, detected_at
                    ) VALUES(?, ?, ?, ?, ?, ?)
                    """,
                    (alert_id, skill_id, alert_type, severity, message, detected_at),
                )
            if cur.rowcount == 0:
                return None
        return Alert(
            id=alert_id,
            skill_id=skill_id,
            alert_type=alert_type,
            severity=severity,
            message=message,
            detected_at=detected_at,
        )

    def resolve_alerts(self, *, skill_id: str, alert_type: str, now: int | None = None) -> int:
        resolved_at = _now() if now is None else now
        with self._locked() as conn:
            with conn:
                cur = conn.execute(
                    """
                    UPDATE analytics_alerts SET resolved_at = ?
                    WHERE skill_id = ? AND alert_type = ? AND resolved_at IS NULL
                    """,
                    (resolved_at, skill_id, alert_type),
                )
        return cur.rowcount

    def get_active_alerts(self) -> list[Alert]:
        return self.list_alerts(include_resolved=False)

    def list_alerts(self, *, include_resolved: bool = False, limit: int = 500) -> list[Alert]:
        where = "" if include_resolved else "WHERE resolved_at IS NULL"
        with self._locked() as conn:
            rows = conn.execute(
                f"""
                SELECT id, skill_id, alert_type, severity, message, detected_at, resolved_at, acknowledged
                FROM analytics_alerts
                {where}
                ORDER BY detected_at DESC, rowid DESC
                LIMIT ?
                """,
                (limit,),
            ).fetchall()
        return [
            Alert(
                id=row["id"],
                skill_id=row["skill_id"],
                alert_type=row["alert_type"],
                severity=row["severity"],
                message=row["message"],
                detected_at=int(row["detected_at"]),
                resolved_at=row["resolved_at"],
                acknowledged=bool(row["acknowledged"]),
            )
            for row in rows
        ]

    def acknowledge_alert(self, alert_id: str) -> bool:
        with self._locked() as conn:
            with conn:
                cur = conn.execute(
                    "UPDATE analytics_alerts SET acknowledged = 1 WHERE id = ?",
                    (alert_id,),
                )
        return cur.rowcount > 0
