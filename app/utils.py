"""Utility helpers for the PlexRoute service."""

from __future__ import annotations

import re
from datetime import date
from typing import Any


TMDB_GUID_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"com\.plexapp\.agents\.themoviedb://(?P<tmdb>\d+)", re.I),
    re.compile(r"(?:themoviedb|tmdb)://(?:(?:movie|show|tv)/)?(?P<tmdb>\d+)", re.I),
)


def normalize_name(value: str) -> str:
    """Return the comparison form of an account or user name."""

    return value.strip().lower()


def extract_tmdb_id(guid: str | None) -> int | None:
    """Return the TMDB id embedded in a Plex guid, if any.

    Both the modern ``tmdb://550`` form and the legacy agent form
    ``com.plexapp.agents.themoviedb://550?lang=en`` are accepted.
    """

    if not guid:
        return None
    text = guid.strip()
    for pattern in TMDB_GUID_PATTERNS:
        match = pattern.search(text)
        if match:
            return int(match.group("tmdb"))
    return None


def parse_int(value: Any) -> int | None:
    """Coerce JSON/XML attribute values into integers."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def parse_index(value: Any) -> int | None:
    """Like :func:`parse_int` but rejects negative season and episode indexes."""

    number = parse_int(value)
    if number is None or number < 0:
        return None
    return number


def parse_date(value: Any) -> date | None:
    """Parse ``YYYY-MM-DD`` values as returned by Plex."""

    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def parse_bool(value: Any) -> bool:
    """Interpret Plex's mix of bool, ``0/1`` and ``"true"`` flags."""

    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value == 1
    if isinstance(value, str):
        return value.strip() == "1" or value.strip().lower() == "true"
    return False
