"""Environment helpers for tunable runtime settings."""

import os
from typing import Optional


def get_default_country_code() -> str:
    """
    Get the country calling code used for local <-> international phone conversion.

    Returns:
        Digits-only calling code, ``972`` when DEFAULT_COUNTRY_CODE is not set.
    """
    value = (os.getenv("DEFAULT_COUNTRY_CODE") or "972").strip().lstrip("+")
    return value or "972"


def get_webhook_max_concurrency() -> int:
    """
    Get the maximum number of webhook items processed at the same time.

    Returns:
        A positive integer, ``10`` when WEBHOOK_MAX_CONCURRENCY is unset or invalid.
    """
    raw: Optional[str] = os.getenv("WEBHOOK_MAX_CONCURRENCY")
    try:
        value = int(raw) if raw else 10
    except ValueError:
        return 10
    return value if value > 0 else 10


def get_event_timezone_name() -> str:
    """Timezone used to decide what "today" means for follow-up dates."""
    return os.getenv("EVENT_TIMEZONE") or "Asia/Jerusalem"
