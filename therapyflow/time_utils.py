"""Utilities for working with timestamps in UTC and the practice timezone.

All practice operations (scheduling, "today" calculations, day filters)
happen in a single practice timezone which defaults to
``America/New_York``.  Values are stored in UTC; the helpers below convert
between calendar days in the practice timezone and UTC instants.
"""

from __future__ import annotations

import os
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Optional, Tuple
from zoneinfo import ZoneInfo

PRACTICE_TIMEZONE = os.getenv("PRACTICE_TIMEZONE", "America/New_York")


def practice_zone() -> ZoneInfo:
    return ZoneInfo(PRACTICE_TIMEZONE)


def utc_now() -> datetime:
    """Return the current time as a timezone-aware ``datetime`` in UTC."""

    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime) -> datetime:
    """Normalise ``dt`` to a timezone-aware UTC ``datetime``."""

    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_utc(dt: Optional[datetime]) -> Optional[str]:
    """Return ``dt`` as ISO 8601 text with a trailing ``Z``."""

    if dt is None:
        return None
    text = ensure_utc(dt).replace(microsecond=0).isoformat()
    if text.endswith("+00:00"):
        return text[:-6] + "Z"
    return text


def parse_datetime(value: Any) -> Optional[datetime]:
    """Coerce *value* into a UTC ``datetime`` when possible."""

    if value in (None, "", b""):
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime.combine(value, time.min, tzinfo=timezone.utc)
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8", errors="ignore")
    if not isinstance(value, str):
        return None
    text = value.strip()
    if not text:
        return None
    normalised = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return ensure_utc(datetime.fromisoformat(normalised))
    except ValueError:
        return None


def _parse_local_date(date_string: str) -> date:
    try:
        return datetime.strptime(date_string.strip(), "%Y-%m-%d").date()
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Expected a YYYY-MM-DD date, got {date_string!r}") from exc


def local_date_to_utc_bounds(date_string: str) -> Tuple[datetime, datetime]:
    """Return the UTC start and end of the practice-local day ``date_string``."""

    day = _parse_local_date(date_string)
    zone = practice_zone()
    start_local = datetime.combine(day, time(0, 0, 0), tzinfo=zone)
    end_local = datetime.combine(day, time(23, 59, 59, 999000), tzinfo=zone)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def local_time_to_utc(date_string: str, hour: int, minute: int) -> datetime:
    """Convert a practice-local date plus ``hour``:``minute`` to UTC."""

    day = _parse_local_date(date_string)
    local = datetime.combine(day, time(hour, minute), tzinfo=practice_zone())
    return local.astimezone(timezone.utc)


def utc_to_local_date_string(utc_dt: datetime) -> str:
    """Return the practice-local ``YYYY-MM-DD`` for ``utc_dt``."""

    return ensure_utc(utc_dt).astimezone(practice_zone()).strftime("%Y-%m-%d")


def utc_date_matches_local_date(utc_dt: datetime, date_string: str) -> bool:
    """Return ``True`` when ``utc_dt`` falls on ``date_string`` in the practice timezone."""

    return utc_to_local_date_string(utc_dt) == date_string


def add_minutes(dt: datetime, minutes: int) -> datetime:
    return dt + timedelta(minutes=minutes)


__all__ = [
    "PRACTICE_TIMEZONE",
    "practice_zone",
    "utc_now",
    "ensure_utc",
    "isoformat_utc",
    "parse_datetime",
    "local_date_to_utc_bounds",
    "local_time_to_utc",
    "utc_to_local_date_string",
    "utc_date_matches_local_date",
    "add_minutes",
]
