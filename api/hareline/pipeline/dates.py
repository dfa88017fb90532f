from __future__ import annotations

import logging
import re
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "America/New_York"
_START_TIME_RE = re.compile(r"^(\d{1,2}):(\d{2})$")

REGION_TIMEZONES: dict[str, str] = {
    "New York City, NY": "America/New_York",
    "Long Island, NY": "America/New_York",
    "Boston, MA": "America/New_York",
    "Philadelphia, PA": "America/New_York",
    "New Jersey": "America/New_York",
    "Washington, DC": "America/New_York",
    "Chicago, IL": "America/Chicago",
    "Denver, CO": "America/Denver",
    "San Francisco, CA": "America/Los_Angeles",
    "Los Angeles, CA": "America/Los_Angeles",
    "London": "Europe/London",
    "Berlin": "Europe/Berlin",
}


def parse_event_date(value: str) -> date:
    """Parse a YYYY-MM-DD string as a calendar date, with no time-of-day attached."""
    return date.fromisoformat(value.strip()[:10])


def utc_noon(value: date) -> datetime:
    return datetime.combine(value, time(12, 0), tzinfo=timezone.utc)


def region_timezone(region: str | None) -> str:
    if not region:
        return DEFAULT_TIMEZONE
    found = REGION_TIMEZONES.get(region)
    if found:
        return found

    lowered = region.casefold()
    for key, value in REGION_TIMEZONES.items():
        key_lowered = key.casefold()
        if key_lowered in lowered or lowered in key_lowered:
            return value
    return DEFAULT_TIMEZONE


def compose_utc_start(event_date: date, start_time: str | None, tz_name: str | None) -> datetime | None:
    """Absolute UTC instant of a local HH:MM start on ``event_date`` in ``tz_name``."""
    if not start_time or not tz_name:
        return None

    match = _START_TIME_RE.match(start_time.strip())
    if not match:
        return None
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        return None

    try:
        zone = ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone=%s for start_time=%s", tz_name, start_time)
        return None

    local = datetime.combine(event_date, time(hour, minute), tzinfo=zone)
    return local.astimezone(timezone.utc)
