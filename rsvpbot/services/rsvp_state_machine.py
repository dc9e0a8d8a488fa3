"""Core RSVP service: turns one provider webhook item into at most one state change.

Each inbound item (a guest reply, a delivery status or a provider error) is
handled in its own short database transaction. Every row that decides a
transition is re-read under a row lock inside that transaction, so two items
for the same invitation that arrive concurrently serialise instead of
overwriting each other. The outbound WhatsApp message chosen by the
transition is sent only after the transaction commits.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from rsvpbot.appdb import get_session
from rsvpbot.constants import InvitationState, RSVPResponse, derive_invitation_state
from rsvpbot.errors import TransactionFailure
from rsvpbot.repositories import ContactRepository, EventMessageRepository, EventRepository
from rsvpbot.services import messenger
from rsvpbot.services.contact_resolver import AMBIGUOUS, ContactResolver
from rsvpbot.services.followup_scheduler import resolve_followup_date, select_followup_options
from rsvpbot.services.messenger import OutboundNotification
from rsvpbot.services.response_mapper import (
    INVALID_COUNT,
    UNRECOGNIZED,
    map_invitation_response,
    parse_guest_count,
)
from rsvpbot.time_utils import coerce_date, from_unix_timestamp, now_utc, today_local
from rsvpbot.utils.actions import ParsedAction, parse_action_id
from rsvpbot.utils.delivery_status import extract_failure_reason, normalize_delivery_status

logger = logging.getLogger(__name__)

# Transition outcomes
RESPONSE_RECORDED = "response_recorded"
GUEST_COUNT_RECORDED = "guest_count_recorded"
FOLLOWUP_SCHEDULED = "followup_scheduled"
SEEN_RECORDED = "seen_recorded"
FAILURE_RECORDED = "failure_recorded"
STATUS_IGNORED = "status_ignored"
PROVIDER_ERROR = "provider_error"
CONTACT_NOT_FOUND = "contact_not_found"
NO_PENDING_INVITATION = "no_pending_invitation"
MESSAGE_NOT_FOUND = "message_not_found"
UNRECOGNIZED_REPLY = "unrecognized"
INVALID_GUEST_COUNT = "invalid_guest_count"
UNSUPPORTED_MESSAGE = "unsupported_message"
DUPLICATE_REPLY = "duplicate_reply"

REPLY_MESSAGE_TYPES = ("text", "button", "interactive")


@dataclass
class InboundReply:
    provider_message_id: Optional[str]
    phone: str
    message_type: str
    text: str
    payload: Optional[str]
    received_at: Optional[datetime]

    @classmethod
    def from_message(cls, message: Dict[str, Any]) -> Optional["InboundReply"]:
        """Extract the reply facets of a webhook message item; None for non-replies."""
        message_type = (message.get("type") or "").lower()
        if message_type not in REPLY_MESSAGE_TYPES:
            return None

        text_value = ""
        payload = None

        if message_type == "text":
            text_value = (message.get("text") or {}).get("body") or ""
        elif message_type == "button":
            button = message.get("button") or {}
            text_value = button.get("text") or ""
            payload = button.get("payload")
        else:
            interactive = message.get("interactive") or {}
            reply = interactive.get("button_reply") or interactive.get("list_reply")
            if not reply:
                return None
            text_value = reply.get("title") or ""
            payload = reply.get("id")

        return cls(
            provider_message_id=message.get("id"),
            phone=(message.get("from") or "").strip(),
            message_type=message_type,
            text=text_value.strip(),
            payload=payload.strip() if isinstance(payload, str) and payload.strip() else None,
            received_at=from_unix_timestamp(message.get("timestamp")),
        )


@dataclass
class Transition:
    outcome: str
    event_message_id: Optional[int] = None
    contact_id: Optional[int] = None
    state: Optional[InvitationState] = None
    guest_count: Optional[int] = None
    followup_date: Optional[date] = None
    notification: Optional[OutboundNotification] = None
    ambiguous_contact: bool = False
    delivered: bool = False
    detail: Optional[str] = None


class RSVPStateMachine:
    def __init__(
        self,
        contacts: Optional[ContactRepository] = None,
        events: Optional[EventRepository] = None,
        messages: Optional[EventMessageRepository] = None,
        today: Callable[[], date] = today_local,
    ):
        self.contacts = contacts or ContactRepository()
        self.events = events or EventRepository()
        self.messages = messages or EventMessageRepository()
        self.resolver = ContactResolver(self.contacts)
        self.today = today

    # --- entry points ---------------------------------------------------------------

    def handle_message(self, message: Dict[str, Any], value: Optional[dict] = None) -> Transition:
        """Process one incoming guest message (text / button / interactive reply)."""
        reply = InboundReply.from_message(message or {})
        provider_message_id = (message or {}).get("id")

        logger.info(
            "Incoming WhatsApp message",
            extra={
                "provider_message_id": provider_message_id,
                "message_type": (message or {}).get("type"),
                "has_reply": reply is not None,
            },
        )

        messenger.mark_incoming_as_read(provider_message_id)

        if reply is None:
            return Transition(outcome=UNSUPPORTED_MESSAGE, detail=(message or {}).get("type"))

        if not reply.phone:
            logger.warning("Reply without sender phone", extra={"provider_message_id": provider_message_id})
            return Transition(outcome=CONTACT_NOT_FOUND)

        transition = self._run_in_transaction(self._apply_reply, reply)
        self._notify(transition)
        return transition

    def handle_status(self, status: Dict[str, Any], value: Optional[dict] = None) -> Transition:
        """Track read receipts and delivery failures of invitations we sent."""
        provider_message_id = (status or {}).get("id")
        status_kind = normalize_delivery_status((status or {}).get("status"))

        if status_kind not in ("read", "failed") or not provider_message_id:
            logger.debug(
                "Ignoring delivery status %s for %s", status_kind, provider_message_id
            )
            return Transition(outcome=STATUS_IGNORED, detail=status_kind)

        return self._run_in_transaction(self._apply_status, status, status_kind)

    def handle_error(self, error: Dict[str, Any], value: Optional[dict] = None) -> Transition:
        """Out-of-band provider errors are logged only."""
        error = error or {}
        details = (error.get("error_data") or {}).get("details")
        logger.warning(
            "360dialog error %s: %s",
            error.get("code"),
            error.get("title") or error.get("message"),
            extra={
                "code": error.get("code"),
                "title": error.get("title"),
                "error_message": error.get("message"),
                "details": details,
            },
        )
        return Transition(outcome=PROVIDER_ERROR, detail=str(error.get("code")))

    # --- transaction plumbing ----------------------------------------------------------

    def _run_in_transaction(self, apply: Callable[..., Transition], *args) -> Transition:
        try:
            with get_session() as session:
                return apply(session, *args)
        except SQLAlchemyError as exc:
            logger.exception("RSVP transaction rolled back")
            item = args[0] if args else None
            if isinstance(item, dict):
                provider_message_id = item.get("id")
            else:
                provider_message_id = getattr(item, "provider_message_id", None)
            raise TransactionFailure(
                f"Database error while processing webhook item: {exc}",
                provider_message_id=provider_message_id,
            ) from exc

    def _notify(self, transition: Transition) -> None:
        if transition.notification is not None:
            transition.delivered = messenger.deliver(transition.notification)

    # --- statuses ----------------------------------------------------------------------

    def _apply_status(self, session, status: Dict[str, Any], status_kind: str) -> Transition:
        provider_message_id = status.get("id")
        row = self.messages.find_by_provider_message_id(session, provider_message_id)
        if not row:
            logger.info(
                "No invitation found for provider message id",
                extra={"provider_message_id": provider_message_id, "status": status_kind},
            )
            return Transition(outcome=MESSAGE_NOT_FOUND, detail=status_kind)

        state = derive_invitation_state(row)

        if status_kind == "read":
            seen_at = from_unix_timestamp(status.get("timestamp")) or now_utc()
            self.messages.update_seen_at(session, row["id"], seen_at)
            return Transition(
                outcome=SEEN_RECORDED,
                event_message_id=row["id"],
                contact_id=row["contact_id"],
                state=state,
            )

        reason = extract_failure_reason(status)
        self.messages.update_failure(session, row["id"], reason)
        logger.warning(
            "Invitation delivery failed: %s",
            reason,
            extra={"event_message_id": row["id"], "provider_message_id": provider_message_id},
        )
        return Transition(
            outcome=FAILURE_RECORDED,
            event_message_id=row["id"],
            contact_id=row["contact_id"],
            state=state,
            detail=reason,
        )

    # --- replies -----------------------------------------------------------------------

    def _apply_reply(self, session, reply: InboundReply) -> Transition:
        action: Optional[ParsedAction] = parse_action_id(reply.payload)
        event_hint = action["event_id"] if action and action["type"] == "RSVP" else None

        resolution = self.resolver.resolve(session, reply.phone, event_hint)
        if not resolution.found:
            logger.info(
                "Dropping reply from unknown contact",
                extra={"phone": reply.phone, "event_id": event_hint},
            )
            return Transition(outcome=CONTACT_NOT_FOUND)

        contact = resolution.contact
        ambiguous = resolution.status == AMBIGUOUS

        # A phone shared by duplicate contacts: the conversation may live on any of them.
        candidates = resolution.candidates if ambiguous else [contact]
        contact_ids = [row["id"] for row in candidates]

        if action is None:
            awaiting = self.messages.find_awaiting_guest_count(session, contact_ids)
            if awaiting:
                transition = self._apply_guest_count(session, awaiting, reply)
                transition.ambiguous_contact = ambiguous
                return transition

        if action and action["type"] == "FOLLOWUP":
            transition = self._apply_followup_choice(session, contact_ids, reply, action)
            transition.ambiguous_contact = ambiguous
            return transition

        invitation = self.messages.find_open_invitation(session, contact_ids, event_hint)
        if not invitation:
            transition = self._record_stale_reply(session, candidates, contact, reply, event_hint)
            transition.ambiguous_contact = ambiguous
            return transition

        contact = next((c for c in candidates if c["id"] == invitation["contact_id"]), contact)

        response = map_invitation_response(
            reply.text,
            reply.message_type,
            allow_text_fallback=reply.message_type == "text",
            payload=reply.payload,
        )
        if response is UNRECOGNIZED:
            logger.info(
                "Unrecognized reply left without change",
                extra={
                    "event_message_id": invitation["id"],
                    "contact_id": contact["id"],
                    "message_type": reply.message_type,
                    "reply_text": reply.text[:50],
                },
            )
            return Transition(
                outcome=UNRECOGNIZED_REPLY,
                event_message_id=invitation["id"],
                contact_id=contact["id"],
                state=InvitationState.PENDING,
                ambiguous_contact=ambiguous,
            )

        transition = self._apply_rsvp(session, invitation, contact, reply, response)
        transition.ambiguous_contact = ambiguous
        return transition

    def _apply_rsvp(
        self,
        session,
        invitation,
        contact: dict,
        reply: InboundReply,
        response: RSVPResponse,
    ) -> Transition:
        event_message_id = invitation["id"]
        response_time = reply.received_at or now_utc()

        if response == RSVPResponse.ATTENDING:
            self.messages.record_response(
                session,
                event_message_id,
                response.value,
                response_time,
                guests_coming=1,
                awaiting_guest_count=True,
                reply_message_id=reply.provider_message_id,
            )
            notification = messenger.guest_count_question(reply.phone)
            state = InvitationState.AWAITING_GUEST_COUNT

        elif response == RSVPResponse.NOT_ATTENDING:
            self.messages.record_response(
                session,
                event_message_id,
                response.value,
                response_time,
                guests_coming=0,
                awaiting_guest_count=False,
                reply_message_id=reply.provider_message_id,
            )
            notification = messenger.decline_confirmation(reply.phone)
            state = InvitationState.DECLINED

        else:
            self.messages.record_response(
                session,
                event_message_id,
                response.value,
                response_time,
                guests_coming=0,
                awaiting_guest_count=False,
                reply_message_id=reply.provider_message_id,
            )
            event = self.events.get_event_by_id(session, invitation["event_id"]) or {}
            selection = select_followup_options(event.get("event_date"), self.today())
            notification = messenger.maybe_confirmation(
                reply.phone,
                selection,
                event.get("celebrator1_name"),
                event.get("celebrator2_name"),
            )
            state = InvitationState.AWAITING_FOLLOWUP_CHOICE

        logger.info(
            "RSVP recorded: %s",
            response.value,
            extra={
                "event_message_id": event_message_id,
                "event_id": invitation["event_id"],
                "contact_id": contact["id"],
            },
        )
        return Transition(
            outcome=RESPONSE_RECORDED,
            event_message_id=event_message_id,
            contact_id=contact["id"],
            state=state,
            notification=notification,
        )

    @staticmethod
    def _is_redelivery(row, reply: InboundReply) -> bool:
        """The provider re-sent the inbound message that last changed this row."""
        return bool(reply.provider_message_id) and (
            row.get("last_reply_message_id") == reply.provider_message_id
        )

    def _duplicate(self, row, reply: InboundReply) -> Transition:
        logger.info(
            "Redelivered reply %s ignored",
            reply.provider_message_id,
            extra={"event_message_id": row["id"], "contact_id": row["contact_id"]},
        )
        return Transition(
            outcome=DUPLICATE_REPLY,
            event_message_id=row["id"],
            contact_id=row["contact_id"],
            state=derive_invitation_state(row),
        )

    def _apply_guest_count(self, session, awaiting, reply: InboundReply) -> Transition:
        if self._is_redelivery(awaiting, reply):
            return self._duplicate(awaiting, reply)

        count = parse_guest_count(reply.text)

        if count is INVALID_COUNT:
            logger.info(
                "Invalid guest count reply %r",
                reply.text[:20],
                extra={"event_message_id": awaiting["id"]},
            )
            return Transition(
                outcome=INVALID_GUEST_COUNT,
                event_message_id=awaiting["id"],
                contact_id=awaiting["contact_id"],
                state=InvitationState.AWAITING_GUEST_COUNT,
                notification=messenger.invalid_guest_count(reply.phone),
            )

        self.messages.update_guest_count(
            session, awaiting["id"], count, reply_message_id=reply.provider_message_id
        )
        logger.info(
            "Guest count recorded: %s",
            count,
            extra={"event_message_id": awaiting["id"], "event_id": awaiting["event_id"]},
        )
        return Transition(
            outcome=GUEST_COUNT_RECORDED,
            event_message_id=awaiting["id"],
            contact_id=awaiting["contact_id"],
            state=InvitationState.CONFIRMED,
            guest_count=count,
            notification=messenger.guest_count_confirmation(reply.phone, count),
        )

    def _apply_followup_choice(
        self, session, contact_ids: List[int], reply: InboundReply, action: ParsedAction
    ) -> Transition:
        maybe = self.messages.find_latest_maybe(session, contact_ids)
        if not maybe:
            logger.info(
                "Follow-up choice without a 'maybe' invitation",
                extra={"candidate_ids": contact_ids, "payload": reply.payload},
            )
            return Transition(outcome=NO_PENDING_INVITATION, contact_id=contact_ids[0])

        if self._is_redelivery(maybe, reply):
            return self._duplicate(maybe, reply)

        option_id = f"followup_{action['token']}"
        followup_date = resolve_followup_date(option_id, self.today())

        if coerce_date(maybe.get("followup_date")) == followup_date:
            # Same choice tapped twice; the guest already got a confirmation.
            return Transition(
                outcome=FOLLOWUP_SCHEDULED,
                event_message_id=maybe["id"],
                contact_id=maybe["contact_id"],
                state=InvitationState.FOLLOWUP_SCHEDULED,
                followup_date=followup_date,
            )

        self.messages.set_followup_date(
            session, maybe["id"], followup_date, reply_message_id=reply.provider_message_id
        )
        logger.info(
            "Follow-up scheduled for %s",
            followup_date.isoformat(),
            extra={"event_message_id": maybe["id"], "event_id": maybe["event_id"]},
        )
        return Transition(
            outcome=FOLLOWUP_SCHEDULED,
            event_message_id=maybe["id"],
            contact_id=maybe["contact_id"],
            state=InvitationState.FOLLOWUP_SCHEDULED,
            followup_date=followup_date,
            notification=messenger.followup_confirmation(reply.phone, option_id),
        )

    def _record_stale_reply(
        self,
        session,
        candidates: List[dict],
        contact: dict,
        reply: InboundReply,
        event_hint: Optional[str],
    ) -> Transition:
        """A reply with no open invitation: annotate the latest record, never create one."""
        contact_ids = [row["id"] for row in candidates]
        latest = self.messages.find_latest_invitation(session, contact_ids, event_hint)
        if not latest:
            logger.info(
                "Reply without any invitation record dropped",
                extra={"contact_id": contact["id"], "event_id": event_hint},
            )
            return Transition(outcome=NO_PENDING_INVITATION, contact_id=contact["id"])

        contact = next((c for c in candidates if c["id"] == latest["contact_id"]), contact)
        note = (
            "[DEBUG] No pending invitation found (response may have already been recorded). "
            f"Event: {latest.get('event_name') or 'unknown'} ({latest.get('event_id')}) | "
            f"Owner: {latest.get('owner_email') or 'unknown'} | "
            f"Contact: {contact.get('display_name') or 'unknown'} (ID: {contact['id']}) | "
            f"Phone: {reply.phone} | Payload: {reply.payload} | "
            f"Message type: {reply.message_type}"
        )
        self.messages.attach_diagnostic_note(session, latest["id"], note)
        logger.info(
            "Stale or duplicate reply noted on invitation %s",
            latest["id"],
            extra={"contact_id": contact["id"], "event_id": latest.get("event_id")},
        )
        return Transition(
            outcome=NO_PENDING_INVITATION,
            event_message_id=latest["id"],
            contact_id=contact["id"],
            state=derive_invitation_state(latest),
            detail=note,
        )
