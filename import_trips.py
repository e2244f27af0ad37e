#!/usr/bin/env python3
"""CLI entry point for the airline email trip importer.

Usage:
    python import_trips.py [--limit N]          run one import pass
    python import_trips.py --test-connection    check mailbox credentials
    python import_trips.py --preview            list unseen emails without consuming them
    python import_trips.py --trips | --latest | --logs
    python import_trips.py --resync             rebuild extracted-field mirrors
    python import_trips.py --shared-link PNR URL
    python import_trips.py --set-manual PNR KEY=VALUE [KEY=VALUE ...]   (empty VALUE removes KEY)
    python import_trips.py --edit-data PNR FILE  replace trip_data from a JSON file

Options:
    --env-file PATH   Read settings from this .env file instead of the project one
    --db PATH         Trip database (default: TRIP_DB_PATH or trips.db)
    -v, --verbose     Debug logging
"""

import argparse
import dataclasses
import json
import logging
import sys
from contextlib import closing
from pathlib import Path

from trip_importer.config import load_settings
from trip_importer.errors import TripImportError
from trip_importer.mail.imap_client import MailClient
from trip_importer.output import (
    format_log_entries,
    format_previews,
    format_trip_detail,
    format_trip_table,
    to_json,
)
from trip_importer.pipeline import build_orchestrator
from trip_importer.shared_itinerary import SharedItineraryClient
from trip_importer.store import database
from trip_importer.store.event_log import EventLog
from trip_importer.store.flatten import sanitize_key
from trip_importer.store.trip_store import TripStore


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Import airline confirmation emails into trip records.",
    )
    action = parser.add_mutually_exclusive_group()
    action.add_argument("--test-connection", action="store_true", help="Verify mailbox credentials only")
    action.add_argument("--preview", action="store_true", help="Show unseen emails without marking them")
    action.add_argument("--trips", action="store_true", help="List recently imported trips")
    action.add_argument("--latest", action="store_true", help="Print the latest trip as JSON")
    action.add_argument("--show", metavar="PNR", help="Show one trip in detail")
    action.add_argument("--logs", action="store_true", help="Show recent event log entries")
    action.add_argument("--resync", action="store_true", help="Rebuild extracted-field mirrors")
    action.add_argument(
        "--shared-link",
        nargs=2,
        metavar=("PNR", "URL"),
        help="Attach a publicly shared itinerary page to a trip",
    )
    action.add_argument(
        "--set-manual",
        nargs="+",
        metavar="ARG",
        help="PNR followed by KEY=VALUE pairs; an empty VALUE removes KEY",
    )
    action.add_argument(
        "--edit-data",
        nargs=2,
        metavar=("PNR", "FILE"),
        help="Replace a trip's itinerary data with the JSON in FILE",
    )
    parser.add_argument("--limit", type=int, default=None, help="Max messages / rows to handle")
    parser.add_argument("--env-file", type=Path, default=None, help="Path to a .env file")
    parser.add_argument("--db", type=Path, default=None, help="Trip database path")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    args = parser.parse_args(argv)

    manual_updates = {}
    if args.set_manual:
        if len(args.set_manual) < 2:
            parser.error("--set-manual needs a PNR and at least one KEY=VALUE")
        for pair in args.set_manual[1:]:
            key, sep, value = pair.partition("=")
            if not sep or not sanitize_key(key):
                parser.error(f"expected KEY=VALUE, got {pair!r}")
            manual_updates[sanitize_key(key)] = value

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    try:
        settings = load_settings(args.env_file)
        if args.db:
            settings = dataclasses.replace(settings, db_path=args.db)

        with closing(database.connect(settings.db_path)) as conn:
            event_log = EventLog(conn)
            store = TripStore(conn)

            if args.test_connection:
                MailClient(event_log).test_connection(settings)
                print("IMAP connection OK.")
            elif args.preview:
                previews = MailClient(event_log).preview_unseen(settings, args.limit or settings.fetch_limit)
                print(format_previews(previews))
            elif args.trips:
                print(format_trip_table(store.get_recent(args.limit or 20)))
            elif args.latest:
                print(to_json(store.get_latest()))
            elif args.show:
                trip = store.get_by_pnr(args.show)
                if trip is None:
                    print(f"No trip with PNR {args.show}", file=sys.stderr)
                    return 1
                print(format_trip_detail(trip))
            elif args.logs:
                print(format_log_entries(event_log.recent(args.limit or 25)))
            elif args.resync:
                print(f"Resynced {store.resync_mirrors()} trip(s).")
            elif args.shared_link:
                pnr, url = args.shared_link
                trip = store.get_by_pnr(pnr)
                if trip is None:
                    print(f"No trip with PNR {pnr}", file=sys.stderr)
                    return 1
                payload = SharedItineraryClient(timeout=settings.request_timeout).fetch_trip(url)
                store.store_shared_payload(trip.post_id, url, payload)
                print(f"Stored shared itinerary for {pnr} ({len(payload)} top-level keys).")
            elif args.set_manual:
                pnr = args.set_manual[0]
                trip = store.get_by_pnr(pnr)
                if trip is None:
                    print(f"No trip with PNR {pnr}", file=sys.stderr)
                    return 1
                fields = dict(trip.manual_fields)
                for key, value in manual_updates.items():
                    if value:
                        fields[key] = value
                    else:
                        fields.pop(key, None)
                store.replace_manual_fields(trip.post_id, fields)
                print(f"Manual fields for {pnr}: {len(fields)} set.")
            elif args.edit_data:
                pnr, path = args.edit_data
                try:
                    payload = json.loads(Path(path).read_text(encoding="utf-8"))
                except (OSError, json.JSONDecodeError) as e:
                    print(f"Error: cannot read itinerary JSON from {path}: {e}", file=sys.stderr)
                    return 1
                store.update_trip_data(pnr, payload)
                print(f"Updated trip data for {pnr}.")
            else:
                summary = build_orchestrator(settings, conn).run(args.limit)
                print(summary.notice)
                return 0 if summary.ok and not summary.failed else 1

    except TripImportError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
