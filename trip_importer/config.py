"""Configuration: .env loading, paths, constants, per-run settings."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from trip_importer.errors import ConfigurationError

# Project root = parent of trip_importer/
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# --- LLM API ---
DEFAULT_MODEL = "gpt-4.1-mini"
REQUEST_TIMEOUT_SECONDS = 30

# --- Mailbox ---
DEFAULT_MAILBOX = "INBOX"
DEFAULT_IMAP_PORT = 993
DEFAULT_FETCH_LIMIT = 10
SNIPPET_MAX_CHARS = 140
ENCRYPTION_MODES = ("none", "ssl", "tls", "starttls")

# --- Storage ---
DEFAULT_DB_PATH = PROJECT_ROOT / "trips.db"

# --- Logging ---
PAYLOAD_EXCERPT_CHARS = 500


@dataclass(frozen=True)
class Settings:
    """Everything one import run needs, built once and handed to each component."""

    imap_host: str = ""
    imap_port: int = DEFAULT_IMAP_PORT
    imap_encryption: str = "ssl"
    imap_username: str = ""
    imap_password: str = field(default="", repr=False)
    imap_mailbox: str = DEFAULT_MAILBOX
    openai_api_key: str = field(default="", repr=False)
    openai_model: str = DEFAULT_MODEL
    openai_base_url: Optional[str] = None
    request_timeout: float = REQUEST_TIMEOUT_SECONDS
    fetch_limit: int = DEFAULT_FETCH_LIMIT
    db_path: Path = DEFAULT_DB_PATH

    def require_mailbox(self) -> None:
        """Raise ConfigurationError if any mailbox credential is missing."""
        required = {
            "imap_host": self.imap_host,
            "imap_port": self.imap_port,
            "imap_username": self.imap_username,
            "imap_password": self.imap_password,
            "imap_mailbox": self.imap_mailbox,
        }
        for name, value in required.items():
            if not value:
                raise ConfigurationError(f"Missing IMAP setting: {name}")
        if self.encryption not in ENCRYPTION_MODES:
            raise ConfigurationError(
                f"Unsupported IMAP encryption {self.imap_encryption!r}; "
                f"expected one of {', '.join(ENCRYPTION_MODES)}"
            )

    def require_extraction(self) -> None:
        if not self.openai_api_key:
            raise ConfigurationError("OpenAI API key missing in settings.")

    @property
    def encryption(self) -> str:
        # An empty value means "no transport security", as in the settings form.
        return (self.imap_encryption or "none").strip().lower()


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    if not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None


def load_settings(env_file: Optional[Path] = None) -> Settings:
    """Read .env (if present) plus the process environment into a Settings."""
    load_dotenv(env_file or PROJECT_ROOT / ".env")

    return Settings(
        imap_host=os.getenv("IMAP_HOST", ""),
        imap_port=_int_env("IMAP_PORT", DEFAULT_IMAP_PORT),
        imap_encryption=os.getenv("IMAP_ENCRYPTION", "ssl"),
        imap_username=os.getenv("IMAP_USERNAME", ""),
        imap_password=os.getenv("IMAP_PASSWORD", ""),
        imap_mailbox=os.getenv("IMAP_MAILBOX", DEFAULT_MAILBOX),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_model=os.getenv("OPENAI_MODEL", DEFAULT_MODEL),
        openai_base_url=os.getenv("OPENAI_BASE_URL") or None,
        request_timeout=_int_env("REQUEST_TIMEOUT", REQUEST_TIMEOUT_SECONDS),
        fetch_limit=_int_env("FETCH_LIMIT", DEFAULT_FETCH_LIMIT),
        db_path=Path(os.getenv("TRIP_DB_PATH", str(DEFAULT_DB_PATH))),
    )
