"""LLM extraction of structured flight itineraries from email bodies."""

import json
import logging
import re
from typing import Any, Dict, Optional

import openai
from openai import OpenAI

from trip_importer.config import PAYLOAD_EXCERPT_CHARS, Settings
from trip_importer.errors import ExtractionFormatError, ServiceConnectionError, ValidationError
from trip_importer.extract.validator import validate
from trip_importer.models import Severity
from trip_importer.store.event_log import EventLog

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a flight itinerary parser. "
    "Respond with strict JSON that matches the provided schema."
)

SAMPLE_ITINERARY = {
    "pnr": "ABC123",
    "airline": "KLM",
    "passengers": [
        {"name": "Jane Doe"},
    ],
    "journeys": [
        {
            "segments": [
                {
                    "departure": "Billund Airport (BLL)",
                    "arrival": "Amsterdam Schiphol (AMS)",
                    "departure_time": "2025-12-27T06:00:00",
                    "arrival_time": "2025-12-27T07:15:00",
                    "flight_number": "KL1290",
                    "aircraft": "Boeing 737",
                    "class": "Economy",
                }
            ]
        }
    ],
}

EXTRACTION_PROMPT = """\
Extract the itinerary from the following airline email.
Rules:
- Always return valid JSON only.
- `passengers` must be a non-empty array. Each passenger must include a `name` exactly as written in the email (e.g., the 'Passenger name' line). No empty objects.
- All datetime values must be ISO8601 (e.g., 2025-12-27T06:00:00).
- Include baggage or status details only if explicitly provided.
Use this JSON as your structural guide (values are illustrative):
{sample}
Email:
{body}"""


def build_client(settings: Settings) -> OpenAI:
    """OpenAI client with the run's timeout and no SDK-level retries."""
    settings.require_extraction()
    return OpenAI(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        timeout=settings.request_timeout,
        max_retries=0,
    )


def build_prompt(email_body: str) -> str:
    sample = json.dumps(SAMPLE_ITINERARY, indent=4)
    return EXTRACTION_PROMPT.format(sample=sample, body=email_body)


def truncate_payload(payload: str, limit: int = PAYLOAD_EXCERPT_CHARS) -> str:
    """Newline-free excerpt of a raw response, for log entries."""
    return payload.replace("\r", " ").replace("\n", " ")[:limit]


def _strip_fences(text: str) -> str:
    text = text.strip()
    if text.startswith("```"):
        text = re.sub(r"^```(?:json)?\s*", "", text)
        text = re.sub(r"\s*```$", "", text)
    return text


class ItineraryExtractor:
    def __init__(
        self,
        settings: Settings,
        event_log: EventLog,
        client: Optional[OpenAI] = None,
    ):
        self.settings = settings
        self.event_log = event_log
        self._client = client

    @property
    def client(self) -> OpenAI:
        if self._client is None:
            self._client = build_client(self.settings)
        return self._client

    def extract(self, email_body: str, context: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send ``email_body`` to the model and return the validated itinerary.

        ``context`` carries identifiers used for logging only (message_id, date, from).
        Raises ServiceConnectionError, ExtractionFormatError or ValidationError.
        """
        context = context or {}
        message_id = context.get("message_id") or None
        self.settings.require_extraction()

        try:
            resp = self.client.chat.completions.create(
                model=self.settings.openai_model,
                messages=[
                    {"role": "system", "content": SYSTEM_PROMPT},
                    {"role": "user", "content": build_prompt(email_body)},
                ],
                response_format={"type": "json_object"},
                timeout=self.settings.request_timeout,
            )
        except openai.APIError as e:
            # class and HTTP status only, never the SDK message text
            status = getattr(e, "status_code", "")
            self.event_log.log(
                "extraction",
                f"OpenAI request failed: {type(e).__name__} {status}".rstrip(),
                Severity.ERROR,
                message_id=message_id,
            )
            failure = ServiceConnectionError("OpenAI request failed.")
            failure.logged = True
            raise failure from e

        content = _completion_text(resp)
        if content is None:
            self.event_log.log(
                "extraction", "Unexpected OpenAI response shape.", Severity.ERROR, message_id=message_id
            )
            failure = ExtractionFormatError("Unexpected OpenAI response shape.")
            failure.logged = True
            raise failure

        payload = self._decode_json(content, message_id)

        try:
            return validate(payload)
        except ValidationError as e:
            self.event_log.log(
                "extraction",
                f"Validation failed: {e} | Payload: {truncate_payload(content)}",
                Severity.ERROR,
                message_id=message_id,
            )
            e.logged = True
            raise

    def _decode_json(self, content: str, message_id: Optional[str]) -> Dict[str, Any]:
        try:
            payload = json.loads(_strip_fences(content))
        except json.JSONDecodeError:
            payload = None

        if not isinstance(payload, dict):
            self.event_log.log(
                "extraction",
                f"OpenAI returned invalid JSON. | Payload: {truncate_payload(content)}",
                Severity.ERROR,
                message_id=message_id,
            )
            failure = ExtractionFormatError("OpenAI response was not valid JSON.")
            failure.logged = True
            raise failure
        return payload


def _completion_text(resp: Any) -> Optional[str]:
    """``choices[0].message.content`` or None if the envelope is not as expected."""
    choices = getattr(resp, "choices", None)
    if not choices:
        return None
    message = getattr(choices[0], "message", None)
    content = getattr(message, "content", None)
    return content if isinstance(content, str) else None
