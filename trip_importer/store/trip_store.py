"""
Trip persistence: canonical trip rows keyed by PNR, plus the meta mirror.

Re-imports replace ``trip_data`` and the flattened extracted-field mirror but
only ever merge into the manual-field map, so hand-entered values such as seat
numbers survive every import. Replacing manual fields is a separate, explicit
operation.
"""

import json
import logging
import sqlite3
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional

from trip_importer.errors import PersistenceError, TripNotFoundError, ValidationError
from trip_importer.extract.validator import validate
from trip_importer.models import Trip, TripStatus
from trip_importer.store.database import utc_now
from trip_importer.store.flatten import (
    flatten_fields,
    normalize_key,
    sanitize_key,
    sanitize_text,
)

logger = logging.getLogger(__name__)

EXTRACTED_PREFIX = "_trip_field_"
MANUAL_META_KEY = "_trip_manual_fields"
SHARED_LINK_META = "_trip_shared_link"
SHARED_JSON_META = "_trip_shared_json"
POST_TYPE = "trips"


def build_meta_key(path: str) -> str:
    """``passengers.0.name`` → ``_trip_field_passengers_0_name``."""
    return EXTRACTED_PREFIX + normalize_key(path)


class TripStore:
    def __init__(self, conn: sqlite3.Connection, clock: Callable[[], str] = utc_now):
        self.conn = conn
        self.clock = clock

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        try:
            if not self.conn.in_transaction:
                self.conn.execute("BEGIN IMMEDIATE")
            yield self.conn
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.error("Trip store write failed: %s", e)
            raise PersistenceError(f"Trip store write failed: {e}") from e
        except Exception:
            self.conn.rollback()
            raise
        else:
            self.conn.commit()

    # ── writes ───────────────────────────────────────────────

    def upsert(
        self,
        pnr: str,
        status: TripStatus = TripStatus.PARSED,
        trip_data: Optional[Dict[str, Any]] = None,
        extracted_fields: Optional[Dict[str, Any]] = None,
        manual_fields: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Create or update the trip for ``pnr`` and return its record (post) id."""
        pnr = (pnr or "").strip()
        if not pnr:
            raise ValidationError("PNR is required for upsert.", field="pnr")
        status = TripStatus(status)
        encoded = json.dumps(trip_data or {}, ensure_ascii=False)
        timestamp = self.clock()

        with self._transaction() as conn:
            row = self._get_row(pnr)
            post_id = self._ensure_post(pnr, row["post_id"] if row else None, timestamp)
            conn.execute(
                """INSERT INTO trips (pnr, status, trip_data, post_id, last_imported, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)
                   ON CONFLICT(pnr) DO UPDATE SET
                       status        = excluded.status,
                       trip_data     = excluded.trip_data,
                       post_id       = excluded.post_id,
                       last_imported = excluded.last_imported,
                       updated_at    = excluded.updated_at""",
                (pnr, status.value, encoded, post_id, timestamp, timestamp, timestamp),
            )
            conn.execute("UPDATE trip_posts SET title = ? WHERE id = ?", (pnr, post_id))
            self._mirror_extracted_fields(post_id, extracted_fields or {})
            self._merge_manual_fields(post_id, manual_fields or {})

        logger.debug("Upserted trip %s (post %d)", pnr, post_id)
        return post_id

    def replace_manual_fields(self, record_id: int, fields: Dict[str, Any]) -> None:
        """Overwrite the manual-field map; keys missing from ``fields`` are dropped."""
        sanitized = {}
        for key, value in fields.items():
            clean = sanitize_key(key)
            if clean == "":
                continue
            sanitized[clean] = sanitize_text(value)
        with self._transaction():
            self._require_post(record_id)
            self._set_meta(record_id, MANUAL_META_KEY, json.dumps(sanitized, ensure_ascii=False))

    def update_trip_data(self, pnr: str, payload: Dict[str, Any]) -> None:
        """Persist hand-edited itinerary data and rebuild its mirror."""
        validate(payload)
        with self._transaction() as conn:
            row = self._get_row(pnr)
            if row is None:
                raise TripNotFoundError(f"Trip not found: {pnr}")
            conn.execute(
                "UPDATE trips SET trip_data = ?, updated_at = ? WHERE pnr = ?",
                (json.dumps(payload, ensure_ascii=False), self.clock(), pnr),
            )
            self._mirror_extracted_fields(row["post_id"], payload)

    def resync_mirrors(self) -> int:
        """Rebuild every trip's extracted mirror from its stored trip_data."""
        rows = self.conn.execute("SELECT post_id, trip_data FROM trips").fetchall()
        synced = 0
        with self._transaction():
            for row in rows:
                if not row["post_id"]:
                    continue
                trip_data = _decode_json(row["trip_data"])
                if not trip_data:
                    continue
                self._mirror_extracted_fields(row["post_id"], trip_data)
                synced += 1
        return synced

    def store_shared_payload(self, record_id: int, link: str, payload: Dict[str, Any]) -> None:
        with self._transaction():
            self._require_post(record_id)
            self._set_meta(record_id, SHARED_LINK_META, link.strip())
            self._set_meta(record_id, SHARED_JSON_META, json.dumps(payload, ensure_ascii=False))

    # ── reads ────────────────────────────────────────────────

    def get_by_pnr(self, pnr: str) -> Optional[Trip]:
        row = self._get_row(pnr)
        return self._to_trip(row) if row else None

    def get_latest(self) -> Optional[Trip]:
        row = self.conn.execute(
            "SELECT * FROM trips ORDER BY last_imported DESC, id DESC LIMIT 1"
        ).fetchone()
        return self._to_trip(row) if row else None

    def get_recent(self, limit: int = 20) -> List[Trip]:
        rows = self.conn.execute(
            "SELECT * FROM trips ORDER BY last_imported DESC, id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._to_trip(row) for row in rows]

    def get_manual_fields(self, record_id: int) -> Dict[str, str]:
        stored = _decode_json(self._get_meta(record_id, MANUAL_META_KEY))
        return stored if isinstance(stored, dict) else {}

    def get_extracted_fields(self, record_id: int) -> Dict[str, str]:
        rows = self.conn.execute(
            """SELECT meta_key, meta_value FROM trip_meta
               WHERE post_id = ? AND substr(meta_key, 1, ?) = ? ORDER BY id""",
            (record_id, len(EXTRACTED_PREFIX), EXTRACTED_PREFIX),
        ).fetchall()
        return {row["meta_key"]: row["meta_value"] for row in rows}

    def get_shared_link(self, record_id: int) -> str:
        return self._get_meta(record_id, SHARED_LINK_META) or ""

    def get_shared_payload(self, record_id: int) -> Dict[str, Any]:
        stored = _decode_json(self._get_meta(record_id, SHARED_JSON_META))
        return stored if isinstance(stored, dict) else {}

    def count(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM trips").fetchone()[0]

    # ── helpers ──────────────────────────────────────────────

    def _get_row(self, pnr: str) -> Optional[sqlite3.Row]:
        return self.conn.execute("SELECT * FROM trips WHERE pnr = ?", (pnr,)).fetchone()

    def _to_trip(self, row: sqlite3.Row) -> Trip:
        post_id = row["post_id"] or 0
        trip_data = _decode_json(row["trip_data"])
        return Trip(
            pnr=row["pnr"],
            status=TripStatus(row["status"]),
            trip_data=trip_data if isinstance(trip_data, dict) else {},
            post_id=post_id,
            last_imported=row["last_imported"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            manual_fields=self.get_manual_fields(post_id) if post_id else {},
            extracted_fields=self.get_extracted_fields(post_id) if post_id else {},
        )

    def _ensure_post(self, pnr: str, post_id: Optional[int], timestamp: str) -> int:
        if post_id:
            post = self.conn.execute(
                "SELECT post_type FROM trip_posts WHERE id = ?", (post_id,)
            ).fetchone()
            if post and post["post_type"] == POST_TYPE:
                return post_id
        cursor = self.conn.execute(
            "INSERT INTO trip_posts (post_type, title, created_at) VALUES (?, ?, ?)",
            (POST_TYPE, pnr, timestamp),
        )
        return cursor.lastrowid

    def _require_post(self, record_id: int) -> None:
        found = self.conn.execute("SELECT 1 FROM trip_posts WHERE id = ?", (record_id,)).fetchone()
        if not found:
            raise TripNotFoundError(f"No trip record with id {record_id}")

    def _mirror_extracted_fields(self, post_id: int, extracted: Dict[str, Any]) -> None:
        self.conn.execute(
            "DELETE FROM trip_meta WHERE post_id = ? AND substr(meta_key, 1, ?) = ?",
            (post_id, len(EXTRACTED_PREFIX), EXTRACTED_PREFIX),
        )
        for path, value in flatten_fields(extracted).items():
            self._set_meta(post_id, build_meta_key(path), value)

    def _merge_manual_fields(self, post_id: int, manual: Dict[str, Any]) -> None:
        if not manual:
            return
        merged = dict(self.get_manual_fields(post_id))
        merged.update(manual)
        sanitized = {sanitize_key(k): sanitize_text(v) for k, v in merged.items()}
        sanitized.pop("", None)
        self._set_meta(post_id, MANUAL_META_KEY, json.dumps(sanitized, ensure_ascii=False))

    def _get_meta(self, post_id: int, key: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT meta_value FROM trip_meta WHERE post_id = ? AND meta_key = ?", (post_id, key)
        ).fetchone()
        return row["meta_value"] if row else None

    def _set_meta(self, post_id: int, key: str, value: str) -> None:
        self.conn.execute(
            """INSERT INTO trip_meta (post_id, meta_key, meta_value) VALUES (?, ?, ?)
               ON CONFLICT(post_id, meta_key) DO UPDATE SET meta_value = excluded.meta_value""",
            (post_id, key, value),
        )


def _decode_json(raw: Optional[str]) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None
