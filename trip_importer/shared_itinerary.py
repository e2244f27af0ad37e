"""Best-effort reader for publicly shared itinerary pages.

Looks for an embedded JSON blob in the page markup. Tied to the sharing site's
current HTML, so a miss raises SharedItineraryError rather than guessing.
"""

import html
import json
import logging
import re
from typing import Any, Dict, Optional

import requests
from bs4 import BeautifulSoup

from trip_importer.config import REQUEST_TIMEOUT_SECONDS
from trip_importer.errors import SharedItineraryError

logger = logging.getLogger(__name__)

CONSENT_URL = "https://consent.trustarc.com/v2/notice/accept"
CONSENT_BODY = {
    "publisher": "tripit.com",
    "noticeId": "aWwfbXl2",
    "siteId": "tripit.com",
    "consentType": "accept",
    "country": "DK",
    "language": "da",
    "cookieVersion": "1.0.0",
}

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
    ),
    "Accept-Language": "en-US,en;q=0.8",
    "Referer": "https://www.google.com/",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}

_SCRIPT_VARIABLES = [
    re.compile(r"window\.__PRELOADED_STATE__\s*=\s*(\{.+?\})\s*;?\s*$", re.S | re.M),
    re.compile(r"var\s+tripJSON\s*=\s*(\{.+?\});", re.S),
]


def _try_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    if not text:
        return None
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return None
    return decoded if isinstance(decoded, dict) else None


def extract_json_payload(body: str) -> Dict[str, Any]:
    """Return the first embedded JSON object found in ``body``.

    Checked in order: the ``__NEXT_DATA__`` script tag, a
    ``window.__PRELOADED_STATE__`` or ``var tripJSON`` assignment, and a
    ``data-state`` attribute.
    """
    soup = BeautifulSoup(body, "html.parser")

    next_data = soup.find("script", id="__NEXT_DATA__")
    found = _try_json(next_data.string if next_data else None)
    if found is not None:
        return found

    for pattern in _SCRIPT_VARIABLES:
        m = pattern.search(body)
        found = _try_json(m.group(1) if m else None)
        if found is not None:
            return found

    for tag in soup.find_all(attrs={"data-state": True}):
        found = _try_json(html.unescape(tag["data-state"]))
        if found is not None:
            return found

    logger.debug("Shared itinerary excerpt: %s", body[:2000])
    raise SharedItineraryError("Unable to locate itinerary JSON payload.")


class SharedItineraryClient:
    def __init__(self, session: Optional[requests.Session] = None, timeout: float = REQUEST_TIMEOUT_SECONDS):
        self.session = session or requests.Session()
        self.timeout = timeout

    def fetch_trip(self, url: str, accept_consent: bool = True) -> Dict[str, Any]:
        if accept_consent:
            self._accept_consent()

        try:
            resp = self.session.get(url, headers=BROWSER_HEADERS, timeout=self.timeout, allow_redirects=True)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise SharedItineraryError(f"Shared itinerary request failed: {e}") from e

        if not resp.text:
            raise SharedItineraryError("Shared itinerary response was empty.")
        return extract_json_payload(resp.text)

    def _accept_consent(self) -> None:
        """Post the consent notice so region-gated pages render their content."""
        try:
            self.session.post(
                CONSENT_URL,
                json=CONSENT_BODY,
                headers={"User-Agent": BROWSER_HEADERS["User-Agent"]},
                timeout=min(self.timeout, 15),
            )
        except requests.RequestException as e:
            logger.warning("Consent request failed, continuing without it: %s", e)
        self.session.cookies.set("notice_welcome", "true", domain=".tripit.com")
