"""
SQLite bootstrap for trips, their display entities, meta rows and the event log.

SCHEMA NOTES:
- trips is the canonical table, one row per PNR
- trip_posts is the addressable display entity a trip points at (post_id)
- trip_meta holds the flattened extracted mirror and the manual-field map,
  keyed by (post_id, meta_key)
- event_log is append-only and never read by the pipeline itself
- timestamps are ISO-8601 UTC text
"""

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Union

logger = logging.getLogger(__name__)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def connect(db_path: Union[str, Path]) -> sqlite3.Connection:
    """Open the database and make sure every table exists."""
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    _create_schema(conn)
    logger.debug("Opened trip database %s", db_path)
    return conn


def _create_schema(conn: sqlite3.Connection) -> None:
    conn.executescript("""
        CREATE TABLE IF NOT EXISTS trip_posts (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            post_type       TEXT    NOT NULL DEFAULT 'trips',
            title           TEXT    NOT NULL,
            created_at      TEXT    NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trips (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            pnr             TEXT    NOT NULL UNIQUE,
            status          TEXT    NOT NULL DEFAULT 'pending',
            trip_data       TEXT,
            post_id         INTEGER REFERENCES trip_posts(id),
            last_imported   TEXT,
            created_at      TEXT    NOT NULL,
            updated_at      TEXT    NOT NULL
        );

        CREATE TABLE IF NOT EXISTS trip_meta (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            post_id         INTEGER NOT NULL REFERENCES trip_posts(id),
            meta_key        TEXT    NOT NULL,
            meta_value      TEXT,
            UNIQUE(post_id, meta_key)
        );

        CREATE TABLE IF NOT EXISTS event_log (
            id              INTEGER PRIMARY KEY AUTOINCREMENT,
            context         TEXT    NOT NULL,
            pnr             TEXT,
            severity        TEXT    NOT NULL DEFAULT 'info',
            message         TEXT    NOT NULL,
            message_id      TEXT,
            created_at      TEXT    NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_trips_post_id     ON trips(post_id);
        CREATE INDEX IF NOT EXISTS idx_event_log_pnr      ON event_log(pnr);
        CREATE INDEX IF NOT EXISTS idx_event_log_severity ON event_log(severity);
    """)
