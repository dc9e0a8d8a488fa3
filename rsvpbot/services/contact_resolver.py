"""Resolve the contact behind an inbound WhatsApp phone number.

Guests reply from their international number (``972544349661``) while the
organizer may have imported them in local form (``054-434-9661``), and the
same person is often a contact of several events. Resolution therefore works
on every equivalent phone form and reports an explicit outcome instead of
silently taking the first row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, List, Optional

from rsvpbot.repositories import ContactRepository
from rsvpbot.utils.phone import normalize_phone_formats

logger = logging.getLogger(__name__)

FOUND = "found"
AMBIGUOUS = "ambiguous"
NOT_FOUND = "not_found"


@dataclass
class ContactResolution:
    status: str
    contact: Optional[dict] = None
    candidates: List[dict] = field(default_factory=list)
    phone_formats: List[str] = field(default_factory=list)

    @property
    def found(self) -> bool:
        return self.contact is not None

    @property
    def contact_id(self) -> Optional[int]:
        return self.contact["id"] if self.contact else None


def _recency_key(row: dict, associated_at: Any = None):
    # Rows without any association sort last; ties fall back to the newest contact id.
    when = associated_at if associated_at is not None else row.get("last_associated_at")
    return (when is not None, str(when) if when is not None else "", row.get("id") or 0)


class ContactResolver:
    def __init__(self, contacts: Optional[ContactRepository] = None):
        self.contacts = contacts or ContactRepository()

    def resolve(self, session, phone_number: str, event_id: Optional[str] = None) -> ContactResolution:
        """Find the single contact for ``phone_number``, never creating one.

        With several matches the event association narrows the choice; if
        that still leaves more than one (or none), the most recently
        associated contact wins and the result is flagged ``ambiguous``.
        """
        phone_formats = normalize_phone_formats(phone_number)
        if not phone_number:
            return ContactResolution(status=NOT_FOUND, phone_formats=phone_formats)

        candidates = self.contacts.find_by_phone_formats(session, phone_formats)

        if not candidates:
            logger.info(
                "Phone number lookup failed for %s (tried formats: %s)",
                phone_number,
                ", ".join(str(f) for f in phone_formats),
            )
            return ContactResolution(status=NOT_FOUND, phone_formats=phone_formats)

        if len(candidates) == 1:
            return ContactResolution(
                status=FOUND,
                contact=candidates[0],
                candidates=candidates,
                phone_formats=phone_formats,
            )

        pool = candidates
        associations: dict = {}
        if event_id:
            associations = self.contacts.list_event_associations(
                session, event_id, [row["id"] for row in candidates]
            )
            in_event = [row for row in candidates if row["id"] in associations]
            if len(in_event) == 1:
                return ContactResolution(
                    status=FOUND,
                    contact=in_event[0],
                    candidates=candidates,
                    phone_formats=phone_formats,
                )
            if in_event:
                pool = in_event

        chosen = max(pool, key=lambda row: _recency_key(row, associations.get(row["id"])))
        logger.warning(
            "Ambiguous contact for phone %s: %d candidates, picked contact %s",
            phone_number,
            len(pool),
            chosen["id"],
            extra={
                "event_id": event_id,
                "candidate_ids": [row["id"] for row in pool],
                "contact_id": chosen["id"],
            },
        )
        return ContactResolution(
            status=AMBIGUOUS,
            contact=chosen,
            candidates=candidates,
            phone_formats=phone_formats,
        )
