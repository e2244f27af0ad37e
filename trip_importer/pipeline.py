"""Orchestrates one manual import: connect → fetch → extract → store → mark seen."""

import logging
from contextlib import closing
from typing import Optional

from trip_importer.config import Settings
from trip_importer.errors import ConfigurationError, ServiceConnectionError
from trip_importer.extract.llm_extractor import ItineraryExtractor
from trip_importer.mail.imap_client import MailClient
from trip_importer.models import ImportStage, ImportSummary, Severity, TripStatus
from trip_importer.store import database
from trip_importer.store.event_log import EventLog
from trip_importer.store.trip_store import TripStore

logger = logging.getLogger(__name__)


class ImportOrchestrator:
    """Runs a single pass over the unseen messages in the configured mailbox.

    Mailbox-level failures end the run; anything that goes wrong with one
    message is counted against that message and the batch carries on. Only
    messages whose trip was stored are marked seen, so failures stay in the
    inbox for the next run.
    """

    def __init__(
        self,
        settings: Settings,
        mail_client: MailClient,
        extractor: ItineraryExtractor,
        trip_store: TripStore,
        event_log: EventLog,
    ):
        self.settings = settings
        self.mail_client = mail_client
        self.extractor = extractor
        self.trip_store = trip_store
        self.event_log = event_log
        self.stage = ImportStage.IDLE

    def run(self, limit: Optional[int] = None) -> ImportSummary:
        summary = ImportSummary()
        limit = self.settings.fetch_limit if limit is None else limit

        try:
            self.settings.require_mailbox()
            self.settings.require_extraction()

            self._enter(ImportStage.CONNECTING, summary)
            self.mail_client.test_connection(self.settings)

            self._enter(ImportStage.FETCHING, summary)
            messages = self.mail_client.fetch_unseen(self.settings, limit)
        except (ConfigurationError, ServiceConnectionError) as e:
            return self._fail(summary, e)

        if not messages:
            self.event_log.log("imap", "Manual fetch completed. No new messages.", Severity.INFO)
            self._enter(ImportStage.DONE, summary)
            return summary

        self._enter(ImportStage.PARSING, summary)
        processed_uids = []
        for message in messages:
            pnr = None
            try:
                parsed = self.extractor.extract(
                    message.body,
                    {"message_id": message.message_id, "date": message.date, "from": message.sender},
                )
                pnr = parsed["pnr"]
                self.trip_store.upsert(
                    pnr,
                    status=TripStatus.PARSED,
                    trip_data=parsed,
                    extracted_fields=parsed,
                    manual_fields={},
                )
            except Exception as e:
                summary.failed += 1
                logger.warning("Message %s failed: %s", message.uid, e)
                if not getattr(e, "logged", False):
                    self.event_log.log(
                        "import",
                        f"Failed to import email: {e}",
                        Severity.ERROR,
                        pnr=pnr,
                        message_id=message.message_id,
                    )
                continue

            self.event_log.log(
                "import",
                f"Imported trip {pnr} from {message.message_id or 'unknown message'}",
                Severity.INFO,
                pnr=pnr,
                message_id=message.message_id,
            )
            processed_uids.append(message.uid)
            summary.succeeded += 1
            summary.imported_pnrs.append(pnr)

        self._enter(ImportStage.RECONCILING, summary)
        result = self.mail_client.mark_seen(self.settings, processed_uids)
        if result.ok:
            summary.seen_uids = processed_uids
        else:
            # Not fatal: the trips are stored and the next run re-imports the same PNRs.
            logger.warning("Could not mark %d message(s) seen: %s", len(processed_uids), result.error)

        self._enter(ImportStage.DONE, summary)
        logger.info(summary.notice)
        return summary

    def _enter(self, stage: ImportStage, summary: ImportSummary) -> None:
        logger.debug("Import stage: %s", stage.value)
        self.stage = stage
        summary.stage = stage

    def _fail(self, summary: ImportSummary, error: Exception) -> ImportSummary:
        if not getattr(error, "logged", False):
            context = "imap" if isinstance(error, ServiceConnectionError) else "import"
            self.event_log.log(context, f"Manual fetch failed: {error}", Severity.ERROR)
        summary.error = str(error)
        self._enter(ImportStage.FAILED, summary)
        logger.error(summary.notice)
        return summary


def build_orchestrator(settings: Settings, conn) -> ImportOrchestrator:
    event_log = EventLog(conn)
    return ImportOrchestrator(
        settings=settings,
        mail_client=MailClient(event_log),
        extractor=ItineraryExtractor(settings, event_log),
        trip_store=TripStore(conn),
        event_log=event_log,
    )


def run_import(settings: Settings) -> ImportSummary:
    """Single synchronous entry point for any trigger (CLI, web hook, scheduler)."""
    with closing(database.connect(settings.db_path)) as conn:
        return build_orchestrator(settings, conn).run()
