"""
Ratmas Validators - Timezones, schedule dates and wishlist links

All datetimes leaving this module are timezone-aware UTC.
"""

from __future__ import annotations

import datetime as dt
from typing import Dict, Optional
from urllib.parse import urlparse
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .ratmas_errors import InvalidEventConfig

WISHLIST_PATHS = ("/wishlist", "/hz/wishlist", "/registry/wishlist")


def validate_timezone(timezone: str) -> bool:
    if not timezone or not timezone.strip():
        return False
    try:
        ZoneInfo(timezone.strip())
        return True
    except (ZoneInfoNotFoundError, ValueError):
        return False


def get_zone(timezone: str) -> ZoneInfo:
    if not validate_timezone(timezone):
        raise InvalidEventConfig("Please provide a valid IANA timezone (e.g., America/Los_Angeles).")
    return ZoneInfo(timezone.strip())


def parse_date(value: str, timezone: str, label: str, boundary: str = "start") -> dt.datetime:
    """
    Parse a YYYY-MM-DD date in the given timezone.

    boundary="start" → 00:00 local, boundary="end" → last microsecond of the
    local day. Returned in UTC.
    """
    zone = get_zone(timezone)
    text = (value or "").strip()
    if not text:
        raise InvalidEventConfig(f"{label} is required.")

    try:
        day = dt.date.fromisoformat(text)
    except ValueError:
        raise InvalidEventConfig(f"{label} must be in YYYY-MM-DD format.") from None

    if boundary == "end":
        local = dt.datetime.combine(day, dt.time.max, tzinfo=zone)
    else:
        local = dt.datetime.combine(day, dt.time.min, tzinfo=zone)
    return local.astimezone(dt.timezone.utc)


def parse_schedule(
    start_date: str,
    purchase_deadline: str,
    reveal_date: str,
    timezone: str,
    end_date: Optional[str] = None,
) -> Dict[str, Optional[dt.datetime]]:
    """Parse the four schedule fields of an event. Ordering is checked by the service."""
    timezone = (timezone or "").strip()
    get_zone(timezone)

    return {
        "event_start_date": parse_date(start_date, timezone, "Start date", "start"),
        "purchase_deadline": parse_date(purchase_deadline, timezone, "Purchase deadline", "end"),
        "reveal_date": parse_date(reveal_date, timezone, "Opening day", "start"),
        "event_end_date": parse_date(end_date, timezone, "End date", "end") if end_date else None,
    }


def format_date_for_timezone(value: dt.datetime, timezone: str) -> str:
    """e.g. 'Monday, December 1, 2025' in the event's timezone"""
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    local = value.astimezone(get_zone(timezone))
    return f"{local:%A, %B} {local.day}, {local.year}"


def is_valid_wishlist_url(url: str) -> bool:
    """Amazon wishlist / registry links only"""
    try:
        parsed = urlparse((url or "").strip())
    except ValueError:
        return False

    if parsed.scheme not in ("http", "https"):
        return False
    host = (parsed.hostname or "").lower()
    if "amazon." not in host:
        return False
    path = parsed.path.lower()
    return any(marker in path for marker in WISHLIST_PATHS)


def normalize_wishlist_url(url: Optional[str]) -> Optional[str]:
    """Empty → None, valid → stripped, invalid → InvalidEventConfig"""
    if url is None or not url.strip():
        return None
    if not is_valid_wishlist_url(url):
        raise InvalidEventConfig("Please provide a valid Amazon wishlist URL.")
    return url.strip()
