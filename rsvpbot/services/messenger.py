"""
Outbound WhatsApp messages of the RSVP flow.

The state machine decides *what* to say by building an
``OutboundNotification``; ``deliver`` sends it after the database transaction
has committed. Send failures are logged and swallowed here: the guest's RSVP
is already stored, and the confirmation text is secondary to it.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from rsvpbot import whatsapp_client
from rsvpbot.errors import NotifierFailure
from rsvpbot.services.followup_scheduler import (
    FollowupSelection,
    build_reply_buttons,
    display_text,
    event_too_close_message,
)

logger = logging.getLogger(__name__)

GUEST_COUNT_QUESTION = "guest_count_question"
GUEST_COUNT_CONFIRMATION = "guest_count_confirmation"
INVALID_GUEST_COUNT = "invalid_guest_count"
DECLINE_CONFIRMATION = "decline_confirmation"
MAYBE_FOLLOWUP_BUTTONS = "maybe_followup_buttons"
EVENT_TOO_CLOSE = "event_too_close"
FOLLOWUP_CONFIRMATION = "followup_confirmation"

GUEST_COUNT_QUESTION_TEXT = "מעולה! 🎉\n\nכמה אורחים יגיעו?\nאנא השב עם מספר בלבד (לדוגמה: 2)"
INVALID_GUEST_COUNT_TEXT = "אנא השב עם מספר תקין (לדוגמה: 2, 3, 4...)"
DECLINE_CONFIRMATION_TEXT = "תודה על עדכון! נשמח לראותך באירועים הבאים 💙"
MAYBE_QUESTION_TEXT = "בסדר גמור! 😊\n\nמתי נוכל לבדוק איתך שוב?"


@dataclass
class OutboundNotification:
    kind: str
    to: str
    text: str
    buttons: List[dict] = field(default_factory=list)


def guest_count_question(to: str) -> OutboundNotification:
    return OutboundNotification(kind=GUEST_COUNT_QUESTION, to=to, text=GUEST_COUNT_QUESTION_TEXT)


def guest_count_confirmation(to: str, guest_count: int) -> OutboundNotification:
    return OutboundNotification(
        kind=GUEST_COUNT_CONFIRMATION,
        to=to,
        text=f"תודה! רשמנו {guest_count} אורחים. נתראה באירוע! 🎊",
    )


def invalid_guest_count(to: str) -> OutboundNotification:
    return OutboundNotification(kind=INVALID_GUEST_COUNT, to=to, text=INVALID_GUEST_COUNT_TEXT)


def decline_confirmation(to: str) -> OutboundNotification:
    return OutboundNotification(kind=DECLINE_CONFIRMATION, to=to, text=DECLINE_CONFIRMATION_TEXT)


def maybe_confirmation(
    to: str,
    selection: FollowupSelection,
    celebrator1_name: Optional[str] = None,
    celebrator2_name: Optional[str] = None,
) -> OutboundNotification:
    """Follow-up buttons for the selection, or the too-close directive text."""
    if selection.too_close:
        return OutboundNotification(
            kind=EVENT_TOO_CLOSE,
            to=to,
            text=event_too_close_message(celebrator1_name, celebrator2_name),
        )

    return OutboundNotification(
        kind=MAYBE_FOLLOWUP_BUTTONS,
        to=to,
        text=MAYBE_QUESTION_TEXT,
        buttons=build_reply_buttons(selection.options),
    )


def followup_confirmation(to: str, option_id: str) -> OutboundNotification:
    return OutboundNotification(
        kind=FOLLOWUP_CONFIRMATION,
        to=to,
        text=f"תודה! נחזור אליך {display_text(option_id)} ✅",
    )


def deliver(notification: Optional[OutboundNotification]) -> bool:
    """Send a notification; returns False (after logging) when the send failed."""
    if notification is None:
        return False

    try:
        if notification.buttons:
            response = whatsapp_client.send_buttons(
                notification.to, notification.text, notification.buttons
            )
        else:
            response = whatsapp_client.send_text(notification.to, notification.text)
    except (NotifierFailure, ValueError) as exc:
        logger.error(
            "Failed to send %s message: %s",
            notification.kind,
            exc,
            extra={"to": notification.to, "kind": notification.kind},
        )
        return False

    logger.info(
        "Sent %s message: %s",
        notification.kind,
        whatsapp_client.sent_message_id(response) or "no-id",
    )
    return True


def mark_incoming_as_read(message_id: Optional[str]) -> bool:
    if not message_id:
        return False
    try:
        whatsapp_client.mark_as_read(message_id)
    except (NotifierFailure, ValueError) as exc:
        logger.warning("Mark as read failed for %s: %s", message_id, exc)
        return False
    return True
