"""
tests/test_pipeline.py
End-to-end import runs: fake mailbox → scripted model → real SQLite store.
"""

import dataclasses
import json
import re

import httpx
import openai
import pytest

from trip_importer.extract.llm_extractor import ItineraryExtractor
from trip_importer.mail.imap_client import MailClient
from trip_importer.models import ImportStage
from trip_importer.pipeline import ImportOrchestrator

from conftest import FakeOpenAI, log_rows, make_email, make_itinerary


def responder_by_pnr(replies):
    """Answer with ``replies[pnr]`` for the PNR quoted in the email body."""
    def respond(prompt):
        pnr = re.search(r"Booking reference (\w+)", prompt).group(1)
        reply = replies[pnr]
        return reply(pnr) if callable(reply) else reply
    return respond


def valid(pnr):
    return json.dumps(make_itinerary(pnr))


@pytest.fixture
def build(settings, event_log, store, mailbox):
    def _build(replies, run_settings=None):
        run_settings = run_settings or settings
        client = FakeOpenAI(responder_by_pnr(replies))
        orchestrator = ImportOrchestrator(
            settings=run_settings,
            mail_client=MailClient(event_log, connector=mailbox.connector),
            extractor=ItineraryExtractor(run_settings, event_log, client=client),
            trip_store=store,
            event_log=event_log,
        )
        return orchestrator, client
    return _build


def deliver(mailbox, *pnrs):
    return [
        mailbox.add(make_email(body=f"Booking reference {pnr}\nPassenger name: JANE DOE",
                               message_id=f"<{pnr.lower()}@airline.example>"))
        for pnr in pnrs
    ]


# ── SCENARIOS ────────────────────────────────────────────────

class TestBatch:

    def test_two_succeed_one_fails_validation(self, build, mailbox, store, conn):
        uids = deliver(mailbox, "AAA111", "BBB222", "CCC333")
        orchestrator, _ = build({
            "AAA111": valid,
            "BBB222": json.dumps(make_itinerary("BBB222", passengers=[{"name": ""}])),
            "CCC333": valid,
        })

        summary = orchestrator.run()

        assert (summary.succeeded, summary.failed) == (2, 1)
        assert summary.stage == ImportStage.DONE
        assert summary.notice == "Manual fetch completed. 2 imported, 1 failed."
        assert mailbox.seen == {uids[0], uids[2]}
        assert mailbox.unseen == [uids[1]]
        assert mailbox.store_calls == [(f"{uids[0]},{uids[2]}", "+FLAGS", "(\\Seen)")]

        assert store.count() == 2
        assert store.get_by_pnr("BBB222") is None

        severities = [r["severity"] for r in log_rows(conn)]
        assert severities.count("error") == 1
        assert severities.count("info") == 2

    def test_unreachable_mailbox(self, build, mailbox, store, conn):
        deliver(mailbox, "AAA111")
        mailbox.unreachable = True
        orchestrator, client = build({"AAA111": valid})

        summary = orchestrator.run()

        assert summary.stage == ImportStage.FAILED
        assert not summary.ok
        assert (summary.succeeded, summary.failed) == (0, 0)
        assert mailbox.searches == 0
        assert client.calls == []
        assert store.count() == 0

        rows = log_rows(conn)
        assert [(r["context"], r["severity"]) for r in rows] == [("imap", "error")]

    def test_non_json_reply(self, build, mailbox, store, conn):
        uids = deliver(mailbox, "AAA111")
        orchestrator, _ = build({"AAA111": '{"pnr": "AAA111", "airline": "KL'})

        summary = orchestrator.run()

        assert (summary.succeeded, summary.failed) == (0, 1)
        assert mailbox.unseen == uids
        assert mailbox.store_calls == []
        assert store.count() == 0

    def test_non_json_reply_leaves_existing_trip_alone(self, build, mailbox, store):
        store.upsert("AAA111", trip_data=make_itinerary("AAA111"), manual_fields={"seat": "1A"})
        before = store.get_by_pnr("AAA111")
        deliver(mailbox, "AAA111")
        orchestrator, _ = build({"AAA111": "PNR AAA111, sorry no JSON"})

        orchestrator.run()

        assert store.get_by_pnr("AAA111") == before

    def test_empty_mailbox(self, build, conn):
        orchestrator, client = build({})
        summary = orchestrator.run()

        assert summary.stage == ImportStage.DONE
        assert (summary.succeeded, summary.failed) == (0, 0)
        assert summary.notice == "No new airline emails found."
        assert client.calls == []
        assert [(r["context"], r["severity"]) for r in log_rows(conn)] == [("imap", "info")]


class TestFailureIsolation:

    def test_transport_failure_does_not_stop_batch(self, build, mailbox, store):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        uids = deliver(mailbox, "AAA111", "BBB222")
        orchestrator, _ = build({
            "AAA111": openai.APITimeoutError(request=request),
            "BBB222": valid,
        })

        summary = orchestrator.run()

        assert (summary.succeeded, summary.failed) == (1, 1)
        assert mailbox.unseen == [uids[0]]
        assert store.get_by_pnr("BBB222") is not None

    def test_vanished_message_does_not_stop_batch(self, build, mailbox, store, conn):
        uids = deliver(mailbox, "AAA111", "BBB222")
        mailbox.vanished.add(uids[1])
        orchestrator, _ = build({"AAA111": valid, "BBB222": valid})

        summary = orchestrator.run()

        assert summary.stage == ImportStage.DONE
        assert summary.succeeded == 1
        assert mailbox.seen == {uids[0]}
        assert mailbox.unseen == [uids[1]]
        assert store.get_by_pnr("AAA111") is not None
        errors = [r for r in log_rows(conn) if r["severity"] == "error"]
        assert [r["context"] for r in errors] == ["imap"]

    def test_persistence_failure_keeps_message_unseen(self, build, mailbox, store, conn):
        conn.execute("""
            CREATE TRIGGER refuse_bbb BEFORE INSERT ON trips WHEN NEW.pnr = 'BBB222'
            BEGIN SELECT RAISE(ABORT, 'disk full'); END;
        """)
        uids = deliver(mailbox, "AAA111", "BBB222")
        orchestrator, _ = build({"AAA111": valid, "BBB222": valid})

        summary = orchestrator.run()

        assert (summary.succeeded, summary.failed) == (1, 1)
        assert mailbox.unseen == [uids[1]]
        errors = [r for r in log_rows(conn) if r["severity"] == "error"]
        assert len(errors) == 1
        assert errors[0]["context"] == "import"
        assert errors[0]["pnr"] == "BBB222"

    def test_mark_seen_failure_still_reports(self, build, mailbox, store):
        deliver(mailbox, "AAA111")
        mailbox.fail_store = True
        orchestrator, _ = build({"AAA111": valid})

        summary = orchestrator.run()

        assert summary.stage == ImportStage.DONE
        assert summary.succeeded == 1
        assert summary.seen_uids == []
        assert store.get_by_pnr("AAA111") is not None


class TestReimport:

    def test_manual_fields_survive_next_run(self, build, mailbox, store):
        deliver(mailbox, "AAA111")
        orchestrator, _ = build({"AAA111": valid})
        orchestrator.run()

        trip = store.get_by_pnr("AAA111")
        store.replace_manual_fields(trip.post_id, {"passenger_1_seat": "12A"})

        deliver(mailbox, "AAA111")
        summary = orchestrator.run()

        again = store.get_by_pnr("AAA111")
        assert summary.succeeded == 1
        assert store.count() == 1
        assert again.post_id == trip.post_id
        assert again.manual_fields == {"passenger_1_seat": "12A"}
        assert again.last_imported > trip.last_imported


class TestConfiguration:

    def test_missing_api_key_fails_before_connecting(self, build, settings, mailbox, conn):
        deliver(mailbox, "AAA111")
        orchestrator, _ = build({"AAA111": valid}, dataclasses.replace(settings, openai_api_key=""))

        summary = orchestrator.run()

        assert summary.stage == ImportStage.FAILED
        assert "API key" in summary.error
        assert mailbox.connections == 0
        assert [(r["context"], r["severity"]) for r in log_rows(conn)] == [("import", "error")]

    def test_limit_caps_batch(self, build, settings, mailbox):
        deliver(mailbox, "AAA111", "BBB222", "CCC333")
        orchestrator, _ = build({p: valid for p in ("AAA111", "BBB222", "CCC333")},
                                dataclasses.replace(settings, fetch_limit=2))
        summary = orchestrator.run()
        assert summary.succeeded == 2
        assert len(mailbox.unseen) == 1
