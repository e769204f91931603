"""Utilities for working with RFC3339 timestamps, UTC datetimes and all-day dates."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

UTC = timezone.utc


def parse_rfc3339(s: Optional[str]) -> Optional[datetime]:
    """Parse a RFC3339 string and return a timezone-aware UTC datetime."""

    if not s:
        return None

    value = s.strip()
    if not value:
        return None

    if value.endswith("Z"):
        value = value[:-1] + "+00:00"

    if "." in value:
        head, tail = value.split(".", 1)
        if "+" in tail:
            frac, tz = tail.split("+", 1)
            sign = "+"
        elif "-" in tail:
            frac, tz = tail.split("-", 1)
            sign = "-"
        else:
            frac, tz = tail, "00:00"
            sign = "+"
        frac = (frac + "000000")[:6]
        value = f"{head}.{frac}{sign}{tz}"
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None

    return ensure_utc(dt)


def parse_date(s: Optional[str]) -> Optional[date]:
    """Parse the date part of ``YYYY-MM-DD`` or a full RFC3339 string."""

    if not s:
        return None
    try:
        return date.fromisoformat(s.strip()[:10])
    except ValueError:
        return None


def to_rfc3339_utc(dt: Optional[Union[datetime, str]]) -> Optional[str]:
    """Convert a datetime (or string) to RFC3339 in UTC with second precision."""

    if dt is None:
        return None
    if isinstance(dt, str):
        dt = parse_rfc3339(dt)
    if dt is None:
        return None
    return ensure_utc(dt).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def utc_now() -> datetime:
    return datetime.now(UTC)


def midnight_utc(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=UTC)


def day_bounds(day: date, days: int = 1) -> Tuple[datetime, datetime]:
    start = midnight_utc(day)
    return start, start + timedelta(days=days)


def sync_window(now: Optional[datetime] = None, *, past_days: int, future_days: int) -> Tuple[datetime, datetime]:
    """Return the ``[time_min, time_max)`` window used by windowed listings."""

    anchor = ensure_utc(now) or utc_now()
    return anchor - timedelta(days=past_days), anchor + timedelta(days=future_days)


def parse_event_time(payload: Optional[Dict[str, Any]]) -> Tuple[Optional[datetime], Optional[date]]:
    """Split a Google ``start``/``end`` object into ``(utc datetime, all-day date)``.

    Timed values return ``(datetime, None)``. Date-only values return midnight UTC
    of that date together with the date itself.
    """

    if not payload:
        return None, None
    date_time = payload.get("dateTime")
    if date_time:
        return parse_rfc3339(date_time), None
    day = parse_date(payload.get("date"))
    if day is None:
        return None, None
    return midnight_utc(day), day


__all__ = [
    "UTC",
    "day_bounds",
    "ensure_utc",
    "midnight_utc",
    "parse_date",
    "parse_event_time",
    "parse_rfc3339",
    "sync_window",
    "to_rfc3339_utc",
    "utc_now",
]
