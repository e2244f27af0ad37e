"""Exception taxonomy for the import pipeline."""

from typing import Optional


class TripImportError(Exception):
    """Base class. ``logged`` is set once the failure is in the event log."""

    logged = False


class ConfigurationError(TripImportError):
    """Required settings are missing or invalid. Never retried."""


class ServiceConnectionError(TripImportError, ConnectionError):
    """Mailbox or extraction endpoint unreachable, or authentication failed."""


class ExtractionFormatError(TripImportError):
    """The extraction endpoint answered with something that is not a JSON object."""


class ValidationError(TripImportError, ValueError):
    """A parsed itinerary broke a schema rule."""

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.field = field


class PersistenceError(TripImportError):
    """A trip store write failed."""


class TripNotFoundError(PersistenceError, LookupError):
    pass


class SharedItineraryError(TripImportError):
    """A shared itinerary page could not be fetched or held no JSON payload."""
