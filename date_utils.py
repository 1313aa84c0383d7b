"""
Parse and format the ISO-8601 instants exchanged with clients and stored in SQLite.
All instants are normalized to aware UTC datetimes; naive input is read as UTC.
"""
from __future__ import annotations

import re
from datetime import date, datetime, timezone
from typing import Any

# Date only, no time part
_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def utc_now() -> datetime:
    """Wall clock in UTC, truncated to whole seconds (matches the stored format)."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes and convert aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: Any) -> datetime | None:
    """
    Convert a stored or client-supplied value to an aware UTC datetime.
    Accepts datetime, date, "YYYY-MM-DD", "YYYY-MM-DDTHH:MM:SS", with "Z" or an offset.
    Returns None for empty values; raises ValueError for unparseable strings.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    raw = str(value).strip()
    if not raw:
        return None
    if _ISO_DATE.match(raw):
        d = date.fromisoformat(raw)
        return datetime(d.year, d.month, d.day, tzinfo=timezone.utc)
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    try:
        dt = datetime.fromisoformat(raw)
    except ValueError as e:
        raise ValueError(f"Invalid date-time: {value!r}") from e
    return ensure_utc(dt)


def format_instant(value: datetime | None) -> str | None:
    """Format as YYYY-MM-DDTHH:MM:SSZ (UTC). None stays None."""
    if value is None:
        return None
    return ensure_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


def now_iso() -> str:
    return format_instant(utc_now())
