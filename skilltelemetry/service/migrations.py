from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable

from skilltelemetry.errors import UnsupportedSchemaVersion

logger = logging.getLogger(__name__)


def _create_base_tables(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE TABLE IF NOT EXISTS skill_events (
          id TEXT PRIMARY KEY,
          event_type TEXT NOT NULL,
          skill_id TEXT NOT NULL,
          timestamp INTEGER NOT NULL,
          user_id TEXT NOT NULL,
          session_id TEXT NOT NULL,
          input_hash TEXT,
          success INTEGER NOT NULL DEFAULT 1,
          duration_ms INTEGER,
          error TEXT,
          feedback_score INTEGER,
          token_input INTEGER,
          token_output INTEGER,
          api_cost_usd REAL,
          caller_agent TEXT,
          caller_workflow TEXT,
          caller_tool TEXT,
          metadata_json TEXT,
          created_at INTEGER NOT NULL DEFAULT (strftime('%s', 'now'))
        );

        CREATE INDEX IF NOT EXISTS idx_events_skill_ts ON skill_events(skill_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_user ON skill_events(user_id, timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_session ON skill_events(session_id);

        CREATE TABLE IF NOT EXISTS skill_daily_stats (
          skill_id TEXT NOT NULL,
          date TEXT NOT NULL,
          total_calls INTEGER NOT NULL DEFAULT 0,
          success_count INTEGER NOT NULL DEFAULT 0,
          fail_count INTEGER NOT NULL DEFAULT 0,
          p50_ms INTEGER,
          p95_ms INTEGER,
          p99_ms INTEGER,
          avg_ms REAL,
          unique_users INTEGER NOT NULL DEFAULT 0,
          total_cost_usd REAL DEFAULT 0,
          thumbs_up INTEGER DEFAULT 0,
          thumbs_down INTEGER DEFAULT 0,
          PRIMARY KEY (skill_id, date)
        );

        CREATE TABLE IF NOT EXISTS analytics_alerts (
          id TEXT PRIMARY KEY,
          skill_id TEXT NOT NULL,
          alert_type TEXT NOT NULL,
          severity TEXT NOT NULL,
          message TEXT NOT NULL,
          detected_at INTEGER NOT NULL,
          resolved_at INTEGER,
          acknowledged INTEGER NOT NULL DEFAULT 0
        );

        CREATE INDEX IF NOT EXISTS idx_alerts_skill ON analytics_alerts(skill_id, detected_at);
        """
    )


def _add_window_indexes(conn: sqlite3.Connection) -> None:
    conn.executescript(
        """
        CREATE INDEX IF NOT EXISTS idx_events_ts ON skill_events(timestamp);
        CREATE INDEX IF NOT EXISTS idx_events_caller ON skill_events(caller_agent, timestamp);
        CREATE INDEX IF NOT EXISTS idx_daily_stats_date ON skill_daily_stats(date);
        """
    )


def _add_unresolved_alert_index(conn: sqlite3.Connection) -> None:
    # Rows written before this index existed may hold duplicates; keep the oldest.
    conn.execute(
        """
        UPDATE analytics_alerts
        SET resolved_at = detected_at
        WHERE resolved_at IS NULL
          AND rowid NOT IN (
            SELECT MIN(rowid) FROM analytics_alerts
            WHERE resolved_at IS NULL
            GROUP BY skill_id, alert_type
          )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_unresolved
        ON analytics_alerts(skill_id, alert_type) WHERE resolved_at IS NULL
        """
    )


# Index i holds the step that moves the schema from version i to i + 1.
MIGRATIONS: list[Callable[[sqlite3.Connection], None]] = [
    _create_base_tables,
    _add_window_indexes,
    _add_unresolved_alert_index,
]

SCHEMA_VERSION = len(MIGRATIONS)


def get_schema_version(conn: sqlite3.Connection) -> int:
    return int(conn.execute("PRAGMA user_version").fetchone()[0])


def _set_schema_version(conn: sqlite3.Connection, version: int) -> None:
    conn.execute(f"PRAGMA user_version = {int(version)}")


def apply_migration(conn: sqlite3.Connection, target: int) -> None:
    """Apply the single step that produces schema version ``target``."""
    step = MIGRATIONS[target - 1]
    with conn:
        step(conn)
        _set_schema_version(conn, target)
    logger.info("Applied analytics schema migration %d (%s)", target, step.__name__)


def migrate(conn: sqlite3.Connection) -> int:
    """Bring the database up to ``SCHEMA_VERSION`` one step at a time."""
    version = get_schema_version(conn)
    if version > SCHEMA_VERSION:
        raise UnsupportedSchemaVersion(version, SCHEMA_VERSION)
    while version < SCHEMA_VERSION:
        version += 1
        apply_migration(conn, version)
    return version
