"""Flatten nested itinerary JSON into path → string maps, and back."""

import re
from typing import Dict

from trip_importer.models import JsonValue

PATH_SEPARATOR = "."


def _leaf_to_str(value: JsonValue) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if value is None:
        return ""
    return str(value)


def _flatten_value(path: str, value: JsonValue, flat: Dict[str, str]) -> None:
    if isinstance(value, dict):
        children = value.items()
    elif isinstance(value, list):
        children = enumerate(value)
    else:
        flat[path] = _leaf_to_str(value)
        return

    for key, child in children:
        child_path = str(key) if path == "" else f"{path}{PATH_SEPARATOR}{key}"
        _flatten_value(child_path, child, flat)


def flatten_fields(data: Dict[str, JsonValue]) -> Dict[str, str]:
    """Walk ``data`` and return ``{"passengers.0.name": "Jane Doe", ...}``.

    Empty lists and dicts produce no entries.
    """
    flat: Dict[str, str] = {}
    for key, value in data.items():
        _flatten_value(str(key), value, flat)
    return flat


def rebuild_fields(flat: Dict[str, str]) -> Dict[str, JsonValue]:
    """Inverse of flatten_fields.

    Numeric segments cannot be told apart from object keys, so every segment
    becomes a dict key: ``passengers.0.name`` rebuilds as
    ``{"passengers": {"0": {"name": ...}}}``.
    """
    root: Dict[str, JsonValue] = {}
    for path, value in flat.items():
        parts = path.split(PATH_SEPARATOR)
        node = root
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = value
    return root


def normalize_key(path: str) -> str:
    """Lowercase a path and collapse every non-alphanumeric run into ``_``."""
    normalized = re.sub(r"[^a-z0-9]+", "_", path, flags=re.I).lower().strip("_")
    return normalized or "value"


def sanitize_key(key: str) -> str:
    """Keys for manual fields: lowercase letters, digits, ``_`` and ``-`` only."""
    return re.sub(r"[^a-z0-9_-]", "", str(key).lower())


def sanitize_text(value: object) -> str:
    """Single-line text with tags removed and whitespace collapsed."""
    text = re.sub(r"<[^>]*>", "", str(value))
    return re.sub(r"\s+", " ", text).strip()
