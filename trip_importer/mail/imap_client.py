"""IMAP access: connectivity checks, unseen-message retrieval, mark-seen."""

import imaplib
import logging
import ssl
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, List, Optional, Tuple

from trip_importer.config import DEFAULT_FETCH_LIMIT, Settings
from trip_importer.errors import ConfigurationError, ServiceConnectionError
from trip_importer.extract.email_parser import make_snippet, parse_raw_message
from trip_importer.models import MailboxMessage, MarkSeenResult, MessagePreview, Severity
from trip_importer.store.event_log import EventLog

logger = logging.getLogger(__name__)

# tls and starttls are one mode: STARTTLS upgrade of a plain connection
_TRANSPORT_FLAGS = {
    "none": "/imap",
    "ssl": "/imap/ssl",
    "tls": "/imap/tls",
    "starttls": "/imap/tls",
}

Connector = Callable[[Settings], imaplib.IMAP4]


def build_mailbox_string(settings: Settings) -> str:
    """``{imap.example.com:993/imap/ssl}INBOX`` style address for the mailbox."""
    flags = _TRANSPORT_FLAGS.get(settings.encryption)
    if flags is None:
        raise ConfigurationError(f"Unsupported IMAP encryption {settings.imap_encryption!r}")
    return f"{{{settings.imap_host}:{int(settings.imap_port)}{flags}}}{settings.imap_mailbox}"


def open_connection(settings: Settings) -> imaplib.IMAP4:
    """Open a socket to the server using the configured transport security."""
    mode = settings.encryption
    host, port, timeout = settings.imap_host, int(settings.imap_port), settings.request_timeout

    if mode == "ssl":
        return imaplib.IMAP4_SSL(host, port, ssl_context=ssl.create_default_context(), timeout=timeout)
    if mode in ("tls", "starttls"):
        conn = imaplib.IMAP4(host, port, timeout=timeout)
        conn.starttls(ssl_context=ssl.create_default_context())
        return conn
    if mode == "none":
        return imaplib.IMAP4(host, port, timeout=timeout)
    raise ConfigurationError(f"Unsupported IMAP encryption {settings.imap_encryption!r}")


def _quote_mailbox(name: str) -> str:
    if name.startswith('"') or not any(c in name for c in ' "\\()'):
        return name
    return '"' + name.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _raw_from_fetch(data: Iterable) -> Optional[bytes]:
    for item in data or []:
        if isinstance(item, tuple) and len(item) > 1 and isinstance(item[1], bytes):
            return item[1]
    return None


class MailClient:
    """Each public call opens its own connection and closes it before returning."""

    def __init__(self, event_log: EventLog, connector: Optional[Connector] = None):
        self.event_log = event_log
        self._connect = connector or open_connection

    def test_connection(self, settings: Settings) -> None:
        """Authenticate without selecting a mailbox, then disconnect."""
        settings.require_mailbox()
        try:
            with self._session(settings):
                pass
        except (imaplib.IMAP4.error, OSError) as e:
            raise self._connection_failed(settings, e) from e

    def fetch_unseen(self, settings: Settings, limit: int = DEFAULT_FETCH_LIMIT) -> List[MailboxMessage]:
        """Return up to ``limit`` unseen messages without setting their \\Seen flag."""
        settings.require_mailbox()
        try:
            with self._session(settings, select=True) as conn:
                return [
                    MailboxMessage(
                        uid=uid,
                        message_id=content["message_id"],
                        subject=content["subject"],
                        sender=content["from"],
                        date=content["date"],
                        body=content["body"],
                    )
                    for uid, content in self._peek_unseen(conn, limit)
                ]
        except (imaplib.IMAP4.error, OSError) as e:
            raise self._connection_failed(settings, e) from e

    def preview_unseen(self, settings: Settings, limit: int = DEFAULT_FETCH_LIMIT) -> List[MessagePreview]:
        """Header metadata and a short snippet for each unseen message. Read-only."""
        settings.require_mailbox()
        try:
            with self._session(settings, select=True) as conn:
                return [
                    MessagePreview(
                        uid=uid,
                        message_id=content["message_id"],
                        subject=content["subject"],
                        sender=content["from"],
                        date=content["date"],
                        snippet=make_snippet(content["body"]),
                    )
                    for uid, content in self._peek_unseen(conn, limit)
                ]
        except (imaplib.IMAP4.error, OSError) as e:
            raise self._connection_failed(settings, e) from e

    def mark_seen(self, settings: Settings, uids: Iterable[str]) -> MarkSeenResult:
        """Flag ``uids`` as seen in one UID STORE. Failures are logged and returned."""
        uids = [str(uid) for uid in uids]
        if not uids:
            return MarkSeenResult(ok=True, count=0)

        try:
            settings.require_mailbox()
            with self._session(settings, select=True, readonly=False) as conn:
                typ, data = conn.uid("store", ",".join(uids), "+FLAGS", "(\\Seen)")
                if typ != "OK":
                    raise imaplib.IMAP4.error(f"UID STORE failed: {data!r}")
        except (ConfigurationError, imaplib.IMAP4.error, OSError) as e:
            self.event_log.log("imap", f"Failed to mark messages seen: {e}", Severity.ERROR)
            return MarkSeenResult(ok=False, error=str(e))

        logger.info("Marked %d message(s) seen", len(uids))
        return MarkSeenResult(ok=True, count=len(uids))

    # ── internals ────────────────────────────────────────────

    @contextmanager
    def _session(self, settings: Settings, select: bool = False, readonly: bool = True) -> Iterator[imaplib.IMAP4]:
        conn = None
        try:
            logger.debug("Connecting to %s", build_mailbox_string(settings))
            conn = self._connect(settings)
            conn.login(settings.imap_username, settings.imap_password)
            if select:
                typ, data = conn.select(_quote_mailbox(settings.imap_mailbox), readonly=readonly)
                if typ != "OK":
                    raise imaplib.IMAP4.error(f"Cannot open mailbox {settings.imap_mailbox}: {data!r}")
            yield conn
        finally:
            if conn is not None:
                _close(conn)

    def _peek_unseen(self, conn: imaplib.IMAP4, limit: int) -> Iterator[Tuple[str, dict]]:
        typ, data = conn.uid("search", None, "UNSEEN")
        if typ != "OK":
            raise imaplib.IMAP4.error(f"UID SEARCH failed: {data!r}")
        uids = data[0].split() if data and data[0] else []

        for uid in uids[: max(limit, 0)]:
            uid = uid.decode() if isinstance(uid, bytes) else str(uid)
            typ, msg_data = conn.uid("fetch", uid, "(BODY.PEEK[])")
            raw = _raw_from_fetch(msg_data) if typ == "OK" else None
            if raw is None:
                # expunged since SEARCH, or the server choked on this one; it stays unseen
                self.event_log.log("imap", f"UID FETCH {uid} returned no message body; skipped", Severity.ERROR)
                continue
            yield uid, parse_raw_message(raw)

    def _connection_failed(self, settings: Settings, error: Exception) -> ServiceConnectionError:
        self.event_log.log(
            "imap",
            f"IMAP connection to {settings.imap_host}:{settings.imap_port} failed: {error}",
            Severity.ERROR,
        )
        failure = ServiceConnectionError("Unable to connect to IMAP server.")
        failure.logged = True
        return failure


def _close(conn: imaplib.IMAP4) -> None:
    try:
        if conn.state == "SELECTED":
            conn.close()
    except (imaplib.IMAP4.error, OSError) as e:
        logger.debug("IMAP close failed: %s", e)
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError) as e:
        logger.debug("IMAP logout failed: %s", e)
