"""
Centralized time utilities for the RSVP bot.

All timestamps are stored in the database as UTC (TIMESTAMPTZ). Calendar
decisions ("how many days until the event", "follow up in 3 days") are made on
the local date of the configured event timezone (Asia/Jerusalem by default).

Key principles:
- Database stores everything in UTC
- Provider timestamps are unix seconds and converted to aware UTC datetimes
- All datetime objects should be timezone-aware
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional, Union
from zoneinfo import ZoneInfo

from rsvpbot.utils.env import get_event_timezone_name

logger = logging.getLogger(__name__)

EVENT_TZ = ZoneInfo(get_event_timezone_name())


def now_utc() -> datetime:
    """
    Get current time as timezone-aware UTC datetime.

    Returns:
        Current datetime in UTC
    """
    return datetime.now(timezone.utc)


def today_local() -> date:
    """Current calendar date in the event timezone."""
    return datetime.now(EVENT_TZ).date()


def from_unix_timestamp(value: Union[str, int, float, None]) -> Optional[datetime]:
    """
    Convert a provider unix timestamp (seconds, often sent as a string) to UTC.

    Returns None for missing or malformed values instead of raising, since
    provider payloads are not trusted to be well formed.
    """
    if value is None or value == "":
        return None
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        logger.warning("Ignoring malformed provider timestamp: %r", value)
        return None
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def coerce_date(value) -> Optional[date]:
    """
    Normalize a date-ish value coming from the database or a payload.

    Accepts ``date``, ``datetime`` (converted to the event timezone first when
    aware) and ISO strings (``YYYY-MM-DD`` or a full ISO timestamp). Returns
    None for empty or unparsable input.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        if value.tzinfo is not None:
            return value.astimezone(EVENT_TZ).date()
        return value.date()

    if isinstance(value, date):
        return value

    if isinstance(value, str):
        text_value = value.strip()
        if not text_value:
            return None
        try:
            return date.fromisoformat(text_value[:10])
        except ValueError:
            pass
        try:
            return coerce_date(datetime.fromisoformat(text_value))
        except ValueError:
            logger.warning("Cannot parse date value: %r", value)
            return None

    logger.warning("Unsupported date type %s: %r", type(value).__name__, value)
    return None
