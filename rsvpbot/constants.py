"""Shared application constants for RSVP responses and conversation states."""

from __future__ import annotations

from enum import Enum


class RSVPResponse(str, Enum):
    """Closed vocabulary stored in ``event_messages.response``."""

    PENDING = "Pending"
    NO_ANSWER = "NoAnswer"
    ATTENDING = "Attending"
    NOT_ATTENDING = "NotAttending"
    MAYBE = "Maybe"


# Responses that still expect an answer from the guest.
OPEN_RESPONSES: tuple[str, ...] = (RSVPResponse.PENDING.value, RSVPResponse.NO_ANSWER.value)


class InvitationState(str, Enum):
    """Conversational state derived from an ``event_messages`` row."""

    PENDING = "Pending"
    AWAITING_GUEST_COUNT = "AwaitingGuestCount"
    CONFIRMED = "Confirmed"
    DECLINED = "Declined"
    AWAITING_FOLLOWUP_CHOICE = "AwaitingFollowupChoice"
    FOLLOWUP_SCHEDULED = "FollowupScheduled"


# Outbound message types that can receive RSVP replies.
MESSAGE_TYPE_INVITATION = "invitation"
MESSAGE_TYPE_REMINDER = "reminder"
MESSAGE_TYPES: list[str] = [MESSAGE_TYPE_INVITATION, MESSAGE_TYPE_REMINDER]


# Guest count bounds accepted from a numeric reply.
MIN_GUEST_COUNT = 1
MAX_GUEST_COUNT = 99


def derive_invitation_state(row) -> InvitationState:
    """Map the facets of an ``event_messages`` row onto a conversational state."""

    response = (row or {}).get("response")

    if response == RSVPResponse.ATTENDING.value:
        if row.get("awaiting_guest_count"):
            return InvitationState.AWAITING_GUEST_COUNT
        return InvitationState.CONFIRMED

    if response == RSVPResponse.NOT_ATTENDING.value:
        return InvitationState.DECLINED

    if response == RSVPResponse.MAYBE.value:
        if row.get("followup_date"):
            return InvitationState.FOLLOWUP_SCHEDULED
        return InvitationState.AWAITING_FOLLOWUP_CHOICE

    return InvitationState.PENDING
