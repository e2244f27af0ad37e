"""Email content extraction: headers, bodies and preview snippets."""

import email
import re
from email.header import decode_header
from email.message import Message
from typing import Any, Dict, Tuple

from bs4 import BeautifulSoup

from trip_importer.config import SNIPPET_MAX_CHARS

_CHARSET_FALLBACKS = ("utf-8", "iso-8859-1", "cp1252")


def decode_str(s: str) -> str:
    if not s:
        return ""
    decoded = decode_header(s)
    parts = []
    for part, encoding in decoded:
        if isinstance(part, bytes):
            try:
                parts.append(part.decode(encoding or "utf-8", errors="ignore"))
            except LookupError:
                parts.append(part.decode("utf-8", errors="ignore"))
        else:
            parts.append(str(part))
    return "".join(parts)


def _decode_payload(part: Message) -> str:
    """Decode a MIME part, trying its declared charset before common fallbacks."""
    payload = part.get_payload(decode=True)
    if not payload:
        return ""

    charsets = []
    declared = part.get_content_charset()
    if declared:
        charsets.append(declared.lower())
    charsets.extend(c for c in _CHARSET_FALLBACKS if c not in charsets)

    for charset in charsets:
        try:
            return payload.decode(charset)
        except (UnicodeDecodeError, LookupError):
            continue
    return payload.decode("utf-8", errors="replace")


def html_to_text(html_content: str) -> str:
    soup = BeautifulSoup(html_content, "html.parser")
    for s in soup(["script", "style"]):
        s.decompose()
    return soup.get_text(separator=" ", strip=True)


def get_bodies(msg: Message) -> Tuple[str, str]:
    """Return (plain_text, html) for a message, skipping attachments."""
    body_text = ""
    html_content = ""

    if msg.is_multipart():
        for part in msg.walk():
            if part.get_content_maintype() == "multipart":
                continue
            if "attachment" in str(part.get("Content-Disposition", "")):
                continue
            ct = part.get_content_type()
            if ct == "text/plain":
                body_text += _decode_payload(part)
            elif ct == "text/html":
                html_content += _decode_payload(part)
    else:
        text = _decode_payload(msg)
        if msg.get_content_type() == "text/html":
            html_content = text
        else:
            body_text = text

    return body_text, html_content


def extract_content(msg: Message) -> Dict[str, Any]:
    """Extract subject, from, body, date, and message_id from a parsed message."""
    body_text, html_content = get_bodies(msg)
    if html_content and not body_text.strip():
        body_text = html_to_text(html_content)

    return {
        "subject": decode_str(msg.get("subject", "")),
        "from": decode_str(msg.get("from", "")),
        "body": body_text,
        "date": msg.get("date", "") or "",
        "message_id": (msg.get("Message-ID", "") or "").strip(),
    }


def parse_raw_message(raw: bytes) -> Dict[str, Any]:
    return extract_content(email.message_from_bytes(raw))


def make_snippet(text: str, max_chars: int = SNIPPET_MAX_CHARS) -> str:
    """Collapse whitespace, drop any markup, and cap the length for previews."""
    if "<" in text and ">" in text:
        text = html_to_text(text)
    text = re.sub(r"\s+", " ", text).strip()
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3].rstrip() + "..."
