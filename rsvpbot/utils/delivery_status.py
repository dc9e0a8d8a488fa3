"""Delivery status normalization helpers.

Provider statuses are mapped to the canonical subset the RSVP flow reacts
to: ``sent``, ``delivered``, ``read`` or ``failed``. Only ``read`` and
``failed`` cause a database write; the others are bookkeeping noise.
"""
from __future__ import annotations

from typing import Any, Dict, Optional

_CANONICAL_STATUSES = {"sent", "delivered", "read", "failed"}

UNKNOWN_FAILURE = "Unknown failure"


def normalize_delivery_status(status: Optional[str]) -> str:
    """Normalize provider-specific status strings into canonical values.

    Empty statuses default to ``sent``. Anything that looks like an error is
    ``failed``; any other unrecognized state falls back to ``sent``.
    """

    if not status:
        return "sent"

    status_lower = status.strip().lower()
    mapping = {
        "accepted": "sent",
        "queued": "sent",
        "sending": "sent",
        "sent": "sent",
        "delivered": "delivered",
        "read": "read",
        "seen": "read",
        "undelivered": "failed",
        "failed": "failed",
        "deleted": "failed",
        "error": "failed",
    }

    if status_lower in mapping:
        return mapping[status_lower]

    if "fail" in status_lower or "error" in status_lower:
        return "failed"

    if status_lower in _CANONICAL_STATUSES:
        return status_lower

    return "sent"


def extract_failure_reason(status_item: Dict[str, Any]) -> str:
    """Pick a human readable failure reason out of a failed status item.

    Preference order for the first error: ``error_data.details``, ``message``,
    ``title``. Falls back to ``Unknown failure``.
    """

    errors = (status_item or {}).get("errors") or []
    if not errors or not isinstance(errors[0], dict):
        return UNKNOWN_FAILURE

    first = errors[0]
    details = (first.get("error_data") or {}).get("details")
    for candidate in (details, first.get("message"), first.get("title")):
        if candidate and str(candidate).strip():
            return str(candidate).strip()

    return UNKNOWN_FAILURE
