"""Schema rules for parsed itineraries. Rejects, never repairs."""

from typing import Any, Dict

from trip_importer.errors import ValidationError

REQUIRED_TOP_LEVEL = ("pnr", "airline", "passengers", "journeys")
REQUIRED_SEGMENT_FIELDS = ("flight_number", "departure", "arrival", "departure_time", "arrival_time")


def _is_empty(value: Any) -> bool:
    if isinstance(value, str):
        return value == ""
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return value is None


def validate(payload: Dict[str, Any]) -> Dict[str, Any]:
    """Return ``payload`` unchanged if it is a well-formed itinerary.

    Rules are checked in order and the first violation raises ValidationError:
      1. pnr, airline, passengers, journeys present and non-empty
      2. passengers is a list and every passenger has a name
      3. journeys is a list and every journey has a segments list
      4. every segment has flight_number, departure, arrival and both times
    """
    if not isinstance(payload, dict):
        raise ValidationError("Itinerary payload must be a JSON object.")

    for key in REQUIRED_TOP_LEVEL:
        if _is_empty(payload.get(key)):
            raise ValidationError(f"Missing required field: {key}", field=key)

    for key in ("pnr", "airline"):
        if not isinstance(payload[key], str):
            raise ValidationError(f"Field {key} must be a string.", field=key)

    passengers = payload["passengers"]
    if not isinstance(passengers, list):
        raise ValidationError("Passengers list must be a non-empty array.", field="passengers")
    for i, passenger in enumerate(passengers):
        name = passenger.get("name") if isinstance(passenger, dict) else None
        if not isinstance(name, str) or name == "":
            raise ValidationError("Passenger name is required.", field=f"passengers.{i}.name")

    journeys = payload["journeys"]
    if not isinstance(journeys, list):
        raise ValidationError("Journeys list must be a non-empty array.", field="journeys")
    for i, journey in enumerate(journeys):
        segments = journey.get("segments") if isinstance(journey, dict) else None
        if not isinstance(segments, list) or not segments:
            raise ValidationError(
                "Journey segments missing or invalid.", field=f"journeys.{i}.segments"
            )
        for j, segment in enumerate(segments):
            _validate_segment(segment, f"journeys.{i}.segments.{j}")

    return payload


def _validate_segment(segment: Any, path: str) -> None:
    if not isinstance(segment, dict):
        raise ValidationError("Journey segment must be an object.", field=path)
    for name in REQUIRED_SEGMENT_FIELDS:
        value = segment.get(name)
        if not isinstance(value, str) or value == "":
            raise ValidationError(f"Segment missing field: {name}", field=f"{path}.{name}")
