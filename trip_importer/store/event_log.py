"""Append-only operational event log (imap / extraction / import)."""

import logging
import re
import sqlite3
from typing import List, Optional

from trip_importer.models import LogEntry, Severity
from trip_importer.store.database import utc_now

logger = logging.getLogger(__name__)


def _clean_context(context: str) -> str:
    return re.sub(r"[^a-z0-9_-]", "", context.lower())


class EventLog:
    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def log(
        self,
        context: str,
        message: str,
        severity: Severity = Severity.INFO,
        pnr: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> LogEntry:
        """Write one entry. Callers keep credentials out of ``message``."""
        entry = LogEntry(
            context=_clean_context(context),
            severity=Severity(severity),
            message=message.strip(),
            pnr=pnr or None,
            message_id=message_id or None,
            created_at=utc_now(),
        )
        with self.conn:
            self.conn.execute(
                """INSERT INTO event_log (context, pnr, severity, message, message_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (entry.context, entry.pnr, entry.severity.value, entry.message,
                 entry.message_id, entry.created_at),
            )

        level = logging.ERROR if entry.severity == Severity.ERROR else logging.INFO
        logger.log(level, "[%s] %s", entry.context, entry.message)
        return entry

    def recent(self, limit: int = 25) -> List[LogEntry]:
        rows = self.conn.execute(
            """SELECT context, pnr, severity, message, message_id, created_at
               FROM event_log ORDER BY created_at DESC, id DESC LIMIT ?""",
            (limit,),
        ).fetchall()
        return [
            LogEntry(
                context=row["context"],
                severity=Severity(row["severity"]),
                message=row["message"],
                pnr=row["pnr"],
                message_id=row["message_id"],
                created_at=row["created_at"],
            )
            for row in rows
        ]
