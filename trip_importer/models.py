"""Data models for the trip import pipeline."""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

# Any JSON value an extraction can contain.
JsonValue = Union[str, int, float, bool, None, List["JsonValue"], Dict[str, "JsonValue"]]


class TripStatus(str, Enum):
    PENDING = "pending"
    PARSED = "parsed"
    ERROR = "error"


class Severity(str, Enum):
    INFO = "info"
    ERROR = "error"


class ImportStage(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    FETCHING = "fetching"
    PARSING = "parsing"
    RECONCILING = "reconciling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MailboxMessage:
    uid: str
    message_id: str = ""
    subject: str = ""
    sender: str = ""  # the From header
    date: str = ""
    body: str = ""


@dataclass
class MessagePreview:
    uid: str
    message_id: str = ""
    subject: str = ""
    sender: str = ""
    date: str = ""
    snippet: str = ""


@dataclass
class MarkSeenResult:
    """Outcome of the best-effort mark-seen step. Callers choose whether to care."""
    ok: bool
    count: int = 0
    error: str = ""


@dataclass
class Trip:
    pnr: str
    status: TripStatus = TripStatus.PENDING
    trip_data: Dict[str, Any] = field(default_factory=dict)
    post_id: int = 0
    last_imported: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""
    manual_fields: Dict[str, str] = field(default_factory=dict)
    extracted_fields: Dict[str, str] = field(default_factory=dict)  # flattened mirror


@dataclass
class LogEntry:
    context: str
    severity: Severity
    message: str
    pnr: Optional[str] = None
    message_id: Optional[str] = None
    created_at: str = ""


@dataclass
class ImportSummary:
    succeeded: int = 0
    failed: int = 0
    stage: ImportStage = ImportStage.IDLE
    error: str = ""
    imported_pnrs: List[str] = field(default_factory=list)
    seen_uids: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.stage == ImportStage.DONE

    @property
    def notice(self) -> str:
        if self.stage == ImportStage.FAILED:
            return f"Manual fetch failed: {self.error}"
        if not self.succeeded and not self.failed:
            return "No new airline emails found."
        return f"Manual fetch completed. {self.succeeded} imported, {self.failed} failed."
