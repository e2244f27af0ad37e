"""
tests/test_event_log.py
Event log writes, ordering and logger mirroring.
"""

import logging

from trip_importer.models import Severity


class TestEventLog:

    def test_write_and_read_back(self, event_log):
        entry = event_log.log("import", "  Imported trip ABC123 from <abc@klm.com>  ",
                              Severity.INFO, pnr="ABC123", message_id="<abc@klm.com>")
        assert entry.message == "Imported trip ABC123 from <abc@klm.com>"

        [stored] = event_log.recent()
        assert stored == entry

    def test_context_cleaned(self, event_log):
        assert event_log.log("IMAP Server!", "x").context == "imapserver"

    def test_empty_pnr_stored_as_null(self, event_log, conn):
        event_log.log("imap", "connected", pnr="", message_id="")
        row = conn.execute("SELECT pnr, message_id FROM event_log").fetchone()
        assert row["pnr"] is None
        assert row["message_id"] is None

    def test_recent_newest_first_and_limited(self, event_log):
        for i in range(5):
            event_log.log("import", f"entry {i}")
        entries = event_log.recent(limit=3)
        assert [e.message for e in entries] == ["entry 4", "entry 3", "entry 2"]

    def test_mirrored_to_logger(self, event_log, caplog):
        with caplog.at_level(logging.INFO, logger="trip_importer.store.event_log"):
            event_log.log("extraction", "OpenAI request failed", Severity.ERROR)
        assert any(r.levelno == logging.ERROR and "[extraction]" in r.getMessage() for r in caplog.records)
