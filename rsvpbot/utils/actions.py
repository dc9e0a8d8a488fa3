"""Helpers for parsing WhatsApp quick-reply payload identifiers.

RSVP buttons embed the event id (``rsvp_yes_<eventId>``) so a reply can be
tied to the right invitation even when the same phone number is a contact of
several events. Follow-up timeframe buttons (``followup_<token>``) carry no
event id and are matched against the guest's latest "maybe" invitation.
"""

from __future__ import annotations

import re
from typing import Optional, TypedDict

FOLLOWUP_TOKENS = ("tomorrow", "2days", "3days", "5days", "week", "2weeks")


class ParsedAction(TypedDict, total=False):
    type: str
    answer: str
    event_id: str
    token: str


ACTION_PATTERNS = [
    (re.compile(r"^rsvp_(yes|no|maybe)_(.+)$"), "RSVP"),
    (re.compile(r"^followup_(%s)$" % "|".join(FOLLOWUP_TOKENS)), "FOLLOWUP"),
]


def parse_action_id(action_id: Optional[str]) -> Optional[ParsedAction]:
    if not action_id:
        return None

    action_id = action_id.strip()
    for pattern, action_type in ACTION_PATTERNS:
        match = pattern.match(action_id)
        if not match:
            continue

        if action_type == "RSVP":
            return {
                "type": action_type,
                "answer": match.group(1),
                "event_id": match.group(2),
            }

        return {"type": action_type, "token": match.group(1)}

    return None
