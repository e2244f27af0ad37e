"""Output formatters: trip tables, trip detail, inbox previews, event log, JSON."""

import json
import re
from typing import Any, Dict, List, Optional

from dateutil import parser as dateutil_parser

from trip_importer.models import LogEntry, MessagePreview, Trip


def extract_airport_code(value: str) -> str:
    """Three-letter code from ``"Amsterdam Schiphol (AMS)"`` or ``"... AMS"``."""
    m = re.search(r"([A-Z]{3})\)", value or "")
    if m:
        return m.group(1)
    m = re.search(r"([A-Z]{3})$", value or "")
    return m.group(1) if m else ""


def _short_time(raw: str) -> str:
    if not raw:
        return "?"
    try:
        return dateutil_parser.isoparse(raw).strftime("%Y-%m-%d %H:%M")
    except (ValueError, OverflowError):
        return raw


def _first_segment(trip_data: Dict[str, Any]) -> Dict[str, Any]:
    journeys = trip_data.get("journeys") or []
    if journeys and isinstance(journeys[0], dict):
        segments = journeys[0].get("segments") or []
        if segments and isinstance(segments[0], dict):
            return segments[0]
    return {}


def display_fields(trip: Trip) -> Dict[str, str]:
    """Flat, display-ready view of a trip: first segment plus manual seats."""
    data = trip.trip_data
    passengers = data.get("passengers") or []
    segment = _first_segment(data)

    def passenger(i: int) -> str:
        if i < len(passengers) and isinstance(passengers[i], dict):
            return str(passengers[i].get("name", ""))
        return ""

    dep_code = extract_airport_code(segment.get("departure", ""))
    arr_code = extract_airport_code(segment.get("arrival", ""))

    return {
        "pnr": str(data.get("pnr", trip.pnr)),
        "airline": str(data.get("airline", "")),
        "passenger_1": passenger(0),
        "passenger_2": passenger(1),
        "segment_1_departure_airport": segment.get("departure", ""),
        "segment_1_arrival_airport": segment.get("arrival", ""),
        "segment_1_departure_time": segment.get("departure_time", ""),
        "segment_1_arrival_time": segment.get("arrival_time", ""),
        "segment_1_flight_number": segment.get("flight_number", ""),
        "segment_1_class": segment.get("class", ""),
        "segment_1_passenger_1_seat": trip.manual_fields.get("passenger_1_seat", ""),
        "segment_1_passenger_2_seat": trip.manual_fields.get("passenger_2_seat", ""),
        "segment_1_from_to": f"{dep_code}-{arr_code}" if dep_code and arr_code else "",
    }


def format_trip_table(trips: List[Trip]) -> str:
    if not trips:
        return "No trips imported yet."
    lines = [f"{'PNR':<10} {'STATUS':<8} {'ROUTE':<9} {'DEPARTS':<17} LAST IMPORTED"]
    for trip in trips:
        fields = display_fields(trip)
        lines.append(
            f"{trip.pnr:<10} {trip.status.value:<8} {fields['segment_1_from_to'] or '-':<9} "
            f"{_short_time(fields['segment_1_departure_time']):<17} {trip.last_imported or '-'}"
        )
    return "\n".join(lines)


def format_trip_detail(trip: Trip) -> str:
    data = trip.trip_data
    lines = [
        f"{trip.pnr}  ({data.get('airline', '?')})  status={trip.status.value}",
        f"  Last imported: {trip.last_imported or '-'}",
    ]
    for p in data.get("passengers") or []:
        lines.append(f"  Passenger: {p.get('name', '?')}")

    for j, journey in enumerate(data.get("journeys") or [], start=1):
        lines.append(f"  Journey {j}")
        for seg in journey.get("segments") or []:
            lines.append(
                f"    {seg.get('flight_number', '?'):<8} "
                f"{seg.get('departure', '?')} {_short_time(seg.get('departure_time', ''))} → "
                f"{seg.get('arrival', '?')} {_short_time(seg.get('arrival_time', ''))}"
            )
            extras = [seg[k] for k in ("aircraft", "class") if seg.get(k)]
            if extras:
                lines.append(f"             {' · '.join(extras)}")

    if trip.manual_fields:
        lines.append("  Manual fields:")
        for key, value in sorted(trip.manual_fields.items()):
            lines.append(f"    {key}: {value}")
    return "\n".join(lines)


def format_previews(previews: List[MessagePreview]) -> str:
    if not previews:
        return "No unseen emails found."
    blocks = []
    for p in previews:
        blocks.append(
            f"[{p.uid}] {p.date}\n"
            f"  From:    {p.sender}\n"
            f"  Subject: {p.subject}\n"
            f"  ID:      {p.message_id or '-'}\n"
            f"  {p.snippet}"
        )
    return "\n\n".join(blocks)


def format_log_entries(entries: List[LogEntry]) -> str:
    if not entries:
        return "No log entries."
    return "\n".join(
        f"{e.created_at}  {e.severity.value:<5} {e.context:<10} "
        f"{e.pnr or '-':<8} {e.message}"
        for e in entries
    )


def to_json(trip: Optional[Trip]) -> str:
    """Latest-trip JSON view: the stored row plus its decoded trip_data."""
    if trip is None:
        return json.dumps(None)
    return json.dumps(
        {
            "pnr": trip.pnr,
            "status": trip.status.value,
            "trip_data": trip.trip_data,
            "post_id": trip.post_id,
            "last_imported": trip.last_imported,
        },
        indent=2,
        ensure_ascii=False,
    )
