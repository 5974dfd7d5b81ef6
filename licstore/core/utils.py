"""
Utility helpers shared across repositories/services.
"""

from __future__ import annotations

from datetime import date, datetime, timezone
from typing import Any

# Numbers above this are epoch milliseconds (JavaScript Date values), not seconds.
_EPOCH_MS_THRESHOLD = 100_000_000_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def now_iso() -> str:
    """Timestamp format stored in createdAt/updatedAt."""
    return utcnow().isoformat()


def parse_datetime(value: Any) -> datetime | None:
    """
    Interpret datetimes, dates, ISO-8601 strings and epoch numbers.

    Naive values are taken as UTC. Returns None for anything else.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        seconds = value / 1000 if abs(value) >= _EPOCH_MS_THRESHOLD else value
        try:
            return datetime.fromtimestamp(seconds, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def to_storable(value: Any) -> Any:
    """
    Copy ``value`` into plain JSON types. Datetimes and dates become ISO
    strings and tuples become lists; anything else that JSON cannot hold
    raises TypeError.
    """
    if value is None or isinstance(value, (str, bool, int, float)):
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        stored = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise TypeError(f"field names must be strings, got {key!r}")
            stored[key] = to_storable(item)
        return stored
    if isinstance(value, (list, tuple)):
        return [to_storable(item) for item in value]
    raise TypeError(f"{type(value).__name__} values cannot be stored")
