"""SPARQL Gateway - Shared utility functions."""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import PurePath

__all__ = ["base_name", "extension", "now_iso", "abbreviate"]


def base_name(file_name: str) -> str:
    """Return the file name without directories and without its last extension.

    ``"dir/people.ttl"`` -> ``"people"``; ``"people.graph"`` -> ``"people"``.
    """
    return PurePath(file_name).stem


def extension(file_name: str) -> str:
    """Return the last extension of *file_name*, lowercased, without the dot."""
    return PurePath(file_name).suffix.lower().lstrip(".")


def now_iso() -> str:
    return datetime.now(UTC).isoformat()


def abbreviate(text: str, limit: int = 200) -> str:
    """Shorten *text* for log lines."""
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit] + "..."
