"""
tests/conftest.py
Shared fixtures: temp SQLite database, an in-memory IMAP server double and a
scripted chat-completion client. No network access needed.
"""

import copy
import imaplib
from email.message import EmailMessage
from types import SimpleNamespace

import pytest

from trip_importer.config import Settings
from trip_importer.store import database
from trip_importer.store.event_log import EventLog
from trip_importer.store.trip_store import TripStore


# ── ITINERARY FIXTURES ───────────────────────────────────────

SAMPLE_ITINERARY = {
    "pnr": "ABC123",
    "airline": "KLM",
    "passengers": [{"name": "Jane Doe"}, {"name": "John Doe"}],
    "journeys": [
        {
            "segments": [
                {
                    "flight_number": "KL1290",
                    "departure": "Billund Airport (BLL)",
                    "arrival": "Amsterdam Schiphol (AMS)",
                    "departure_time": "2025-12-27T06:00:00",
                    "arrival_time": "2025-12-27T07:15:00",
                    "aircraft": "Boeing 737",
                    "class": "Economy",
                }
            ]
        }
    ],
}


def make_itinerary(pnr="ABC123", **overrides):
    data = copy.deepcopy(SAMPLE_ITINERARY)
    data["pnr"] = pnr
    data.update(overrides)
    return data


def make_email(subject="Your booking confirmation", body="Booking reference ABC123",
               message_id="<abc123@mail.klm.com>", html=None, sender="KLM <noreply@klm.com>"):
    msg = EmailMessage()
    msg["Subject"] = subject
    msg["From"] = sender
    msg["To"] = "trips@example.com"
    msg["Date"] = "Mon, 01 Dec 2025 10:00:00 +0000"
    if message_id:
        msg["Message-ID"] = message_id
    if body is not None:
        msg.set_content(body)
        if html:
            msg.add_alternative(html, subtype="html")
    else:
        msg.set_content(html, subtype="html")
    return msg.as_bytes()


# ── SETTINGS / STORAGE ───────────────────────────────────────

@pytest.fixture
def settings(tmp_path):
    return Settings(
        imap_host="imap.example.com",
        imap_port=993,
        imap_encryption="ssl",
        imap_username="trips@example.com",
        imap_password="s3cret-imap-pass",
        imap_mailbox="INBOX",
        openai_api_key="sk-test-secret-key",
        db_path=tmp_path / "trips.db",
    )


@pytest.fixture
def conn(settings):
    c = database.connect(settings.db_path)
    yield c
    c.close()


@pytest.fixture
def event_log(conn):
    return EventLog(conn)


class StepClock:
    """Deterministic, strictly increasing timestamps."""

    def __init__(self):
        self.ticks = 0

    def __call__(self):
        self.ticks += 1
        return f"2025-12-01T10:00:{self.ticks:02d}.000000+00:00"


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store(conn, clock):
    return TripStore(conn, clock=clock)


def log_rows(conn):
    return conn.execute(
        "SELECT context, severity, message, pnr, message_id FROM event_log ORDER BY id"
    ).fetchall()


# ── IMAP DOUBLE ──────────────────────────────────────────────

class FakeMailbox:
    """Server-side state shared by every FakeIMAP connection."""

    def __init__(self, messages=None):
        self.messages = {}          # uid -> raw bytes, insertion = mailbox order
        self.seen = set()
        self.unreachable = False
        self.fail_login = False
        self.fail_store = False
        self.connections = 0
        self.open_connections = 0
        self.selected = []
        self.fetch_specs = []
        self.store_calls = []
        self.searches = 0
        self.vanished = set()      # uids listed by SEARCH whose FETCH returns nothing
        for raw in messages or []:
            self.add(raw)

    def add(self, raw):
        uid = str(len(self.messages) + 1)
        self.messages[uid] = raw
        return uid

    @property
    def unseen(self):
        return [uid for uid in self.messages if uid not in self.seen]

    def connector(self, settings):
        if self.unreachable:
            raise ConnectionRefusedError(111, "Connection refused")
        self.connections += 1
        self.open_connections += 1
        return FakeIMAP(self)


class FakeIMAP:
    def __init__(self, box):
        self.box = box
        self.state = "NONAUTH"

    def login(self, user, password):
        if self.box.fail_login:
            raise imaplib.IMAP4.error("[AUTHENTICATIONFAILED] Invalid credentials (Failure)")
        self.state = "AUTH"
        return "OK", [b"LOGIN completed"]

    def select(self, mailbox="INBOX", readonly=False):
        self.box.selected.append((mailbox, readonly))
        self.state = "SELECTED"
        return "OK", [str(len(self.box.messages)).encode()]

    def uid(self, command, *args):
        command = command.lower()
        if command == "search":
            self.box.searches += 1
            return "OK", [" ".join(self.box.unseen).encode()]
        if command == "fetch":
            uid, spec = args
            self.box.fetch_specs.append(spec)
            if uid in self.box.vanished:
                return "OK", [None]
            raw = self.box.messages[uid]
            header = f"{uid} (UID {uid} BODY[] {{{len(raw)}}}".encode()
            return "OK", [(header, raw), b")"]
        if command == "store":
            uid_set, op, flags = args
            self.box.store_calls.append((uid_set, op, flags))
            if self.box.fail_store:
                raise imaplib.IMAP4.error("STORE failed: mailbox is read-only")
            self.box.seen.update(uid_set.split(","))
            return "OK", [b"STORE completed"]
        raise AssertionError(f"unexpected UID command {command}")

    def close(self):
        self.state = "AUTH"
        return "OK", [b"CLOSE completed"]

    def logout(self):
        self.state = "LOGOUT"
        self.box.open_connections -= 1
        return "BYE", [b"LOGOUT"]


@pytest.fixture
def mailbox():
    return FakeMailbox()


# ── CHAT COMPLETION DOUBLE ───────────────────────────────────

def completion(content):
    return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content=content))])


class FakeCompletions:
    def __init__(self, responder):
        self.responder = responder
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        prompt = kwargs["messages"][-1]["content"]
        result = self.responder(prompt)
        if isinstance(result, Exception):
            raise result
        if isinstance(result, str):
            return completion(result)
        return result


class FakeOpenAI:
    """Quacks like ``OpenAI`` for ``client.chat.completions.create``."""

    def __init__(self, responder):
        self.completions = FakeCompletions(responder)
        self.chat = SimpleNamespace(completions=self.completions)

    @property
    def calls(self):
        return self.completions.calls
