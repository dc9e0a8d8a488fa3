"""
End-to-end tests of the RSVP state machine against a SQLite database.
Outbound WhatsApp calls are captured by the ``outbox`` fixture.
"""
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import OperationalError

from rsvpbot import whatsapp_client
from rsvpbot.constants import InvitationState
from rsvpbot.errors import NotifierFailure, TransactionFailure
from rsvpbot.repositories import EventMessageRepository
from rsvpbot.services import rsvp_state_machine as sm
from rsvpbot.services.rsvp_state_machine import InboundReply, RSVPStateMachine
from rsvpbot.time_utils import coerce_date

TODAY = date(2026, 3, 1)
GUEST_PHONE = "972544349661"


def _button(title, payload, msg_id="wamid.in.1", phone=GUEST_PHONE, timestamp="1767225600"):
    return {
        "id": msg_id,
        "from": phone,
        "timestamp": timestamp,
        "type": "button",
        "button": {"text": title, "payload": payload},
    }


def _text(body, msg_id="wamid.in.2", phone=GUEST_PHONE):
    return {
        "id": msg_id,
        "from": phone,
        "timestamp": "1767225700",
        "type": "text",
        "text": {"body": body},
    }


def _interactive(reply_id, title, msg_id="wamid.in.3", phone=GUEST_PHONE):
    return {
        "id": msg_id,
        "from": phone,
        "timestamp": "1767225800",
        "type": "interactive",
        "interactive": {"type": "button_reply", "button_reply": {"id": reply_id, "title": title}},
    }


def _row(event_message_id):
    return EventMessageRepository().get_event_message(event_message_id)


@pytest.fixture
def machine():
    return RSVPStateMachine(today=lambda: TODAY)


@pytest.fixture
def invitation(seed):
    """A pending invitation for an event 20 days away, guest stored in local form."""
    seed.event(
        "EVT-1",
        event_date=TODAY + timedelta(days=20),
        celebrator1_name="דנה",
        celebrator2_name="יוסי",
    )
    contact_id = seed.contact("0544349661", display_name="Ruth")
    seed.link("EVT-1", contact_id)
    return seed.invitation("EVT-1", contact_id, provider_message_id="wamid.out.1")


def test_attending_then_guest_count_confirms(machine, invitation, outbox):
    first = machine.handle_message(_button("כן, אני מגיע!", "rsvp_yes_EVT-1"))

    assert first.outcome == sm.RESPONSE_RECORDED
    assert first.state == InvitationState.AWAITING_GUEST_COUNT
    row = _row(invitation)
    assert row["response"] == "Attending"
    assert row["awaiting_guest_count"]
    assert row["guests_coming"] == 1

    second = machine.handle_message(_text("3"))

    assert second.outcome == sm.GUEST_COUNT_RECORDED
    assert second.state == InvitationState.CONFIRMED
    assert second.guest_count == 3
    row = _row(invitation)
    assert row["guests_coming"] == 3
    assert not row["awaiting_guest_count"]

    assert [to for to, _ in outbox["text"]] == [GUEST_PHONE, GUEST_PHONE]
    assert "כמה אורחים" in outbox["text"][0][1]
    assert "רשמנו 3 אורחים" in outbox["text"][1][1]
    assert outbox["read"] == ["wamid.in.1", "wamid.in.2"]


@pytest.mark.parametrize("bad_count", ["abc", "150", "0"])
def test_invalid_guest_count_prompts_without_change(machine, invitation, outbox, bad_count):
    machine.handle_message(_button("כן, אני מגיע!", "rsvp_yes_EVT-1"))

    transition = machine.handle_message(_text(bad_count))

    assert transition.outcome == sm.INVALID_GUEST_COUNT
    assert transition.state == InvitationState.AWAITING_GUEST_COUNT
    row = _row(invitation)
    assert row["awaiting_guest_count"]
    assert row["guests_coming"] == 1
    assert "מספר תקין" in outbox["text"][-1][1]


def test_replayed_replies_do_not_resend(machine, invitation, outbox):
    machine.handle_message(_button("כן, אני מגיע!", "rsvp_yes_EVT-1"))
    machine.handle_message(_text("2"))
    sent_before = len(outbox["text"])

    replay_button = machine.handle_message(_button("כן, אני מגיע!", "rsvp_yes_EVT-1"))
    replay_count = machine.handle_message(_text("2"))

    assert replay_button.outcome == sm.NO_PENDING_INVITATION
    assert replay_count.outcome == sm.NO_PENDING_INVITATION
    assert replay_button.state == InvitationState.CONFIRMED
    assert len(outbox["text"]) == sent_before

    row = _row(invitation)
    assert row["response"] == "Attending"
    assert row["guests_coming"] == 2
    assert row["diagnostic_note"].startswith("[DEBUG] No pending invitation found")
    assert "Ruth" in row["diagnostic_note"]


def test_decline(machine, invitation, outbox):
    transition = machine.handle_message(_button("לצערי, לא", "rsvp_no_EVT-1"))

    assert transition.state == InvitationState.DECLINED
    row = _row(invitation)
    assert row["response"] == "NotAttending"
    assert row["guests_coming"] == 0
    assert row["response_time"] is not None
    assert "תודה על עדכון" in outbox["text"][0][1]


def test_maybe_offers_followup_buttons_and_schedules(machine, invitation, outbox):
    transition = machine.handle_message(_button("עדיין לא יודע\\ת", "rsvp_maybe_EVT-1"))

    assert transition.state == InvitationState.AWAITING_FOLLOWUP_CHOICE
    _, _, buttons = outbox["buttons"][0]
    assert [b["reply"]["id"] for b in buttons] == [
        "followup_3days",
        "followup_week",
        "followup_2weeks",
    ]

    chosen = machine.handle_message(_interactive("followup_week", "בעוד שבוע"))

    assert chosen.outcome == sm.FOLLOWUP_SCHEDULED
    assert chosen.state == InvitationState.FOLLOWUP_SCHEDULED
    assert chosen.followup_date == TODAY + timedelta(days=7)
    assert coerce_date(_row(invitation)["followup_date"]) == TODAY + timedelta(days=7)
    assert "בעוד שבוע" in outbox["text"][-1][1]

    sent_before = len(outbox["text"])
    redelivered = machine.handle_message(_interactive("followup_week", "בעוד שבוע"))
    tapped_again = machine.handle_message(
        _interactive("followup_week", "בעוד שבוע", msg_id="wamid.in.4")
    )

    assert redelivered.outcome == sm.DUPLICATE_REPLY
    assert redelivered.state == InvitationState.FOLLOWUP_SCHEDULED
    assert tapped_again.outcome == sm.FOLLOWUP_SCHEDULED
    assert tapped_again.notification is None
    assert len(outbox["text"]) == sent_before


def test_maybe_one_day_before_event_names_celebrants(seed, machine, outbox):
    seed.event(
        "EVT-SOON",
        event_date=TODAY + timedelta(days=1),
        celebrator1_name="דנה",
        celebrator2_name="יוסי",
    )
    contact_id = seed.contact(GUEST_PHONE)
    seed.invitation("EVT-SOON", contact_id)

    transition = machine.handle_message(_button("עדיין לא יודע\\ת", "rsvp_maybe_EVT-SOON"))

    assert transition.state == InvitationState.AWAITING_FOLLOWUP_CHOICE
    assert outbox["buttons"] == []
    assert "דנה ויוסי" in outbox["text"][0][1]


def test_followup_without_maybe_is_no_pending(machine, invitation, outbox):
    transition = machine.handle_message(_interactive("followup_3days", "בעוד 3 ימים"))

    assert transition.outcome == sm.NO_PENDING_INVITATION
    assert outbox["text"] == []


def test_free_text_reply_is_classified(machine, invitation, outbox):
    transition = machine.handle_message(_text("כן"))

    assert transition.outcome == sm.RESPONSE_RECORDED
    assert _row(invitation)["response"] == "Attending"


def test_unrecognized_reply_is_silent(machine, invitation, outbox):
    transition = machine.handle_message(_text("מה השעה?"))

    assert transition.outcome == sm.UNRECOGNIZED_REPLY
    assert transition.state == InvitationState.PENDING
    assert _row(invitation)["response"] == "Pending"
    assert outbox["text"] == [] and outbox["buttons"] == []


def test_unknown_contact_is_dropped(machine, invitation, outbox):
    transition = machine.handle_message(_text("כן", phone="15550001111"))

    assert transition.outcome == sm.CONTACT_NOT_FOUND
    assert _row(invitation)["response"] == "Pending"
    assert outbox["text"] == []


def test_unsupported_message_type(machine, outbox):
    transition = machine.handle_message({"id": "wamid.img", "from": GUEST_PHONE, "type": "image"})

    assert transition.outcome == sm.UNSUPPORTED_MESSAGE
    assert outbox["read"] == ["wamid.img"]


def test_send_failure_keeps_state(machine, invitation, outbox, monkeypatch):
    def broken_send(to, body):
        raise NotifierFailure("360dialog request failed (500): boom", status_code=500)

    monkeypatch.setattr(whatsapp_client, "send_text", broken_send)

    transition = machine.handle_message(_button("לצערי, לא", "rsvp_no_EVT-1"))

    assert transition.delivered is False
    assert _row(invitation)["response"] == "NotAttending"


def test_database_error_becomes_transaction_failure(machine, invitation, outbox):
    error = OperationalError("SELECT 1", {}, Exception("database is locked"))

    with patch.object(machine.resolver, "resolve", side_effect=error):
        with pytest.raises(TransactionFailure) as excinfo:
            machine.handle_message(_text("כן", msg_id="wamid.locked"))

    assert excinfo.value.provider_message_id == "wamid.locked"
    assert _row(invitation)["response"] == "Pending"


def test_read_status_keeps_latest_seen_at(machine, invitation):
    first = machine.handle_status({"id": "wamid.out.1", "status": "read", "timestamp": "1767300000"})
    seen_first = _row(invitation)["seen_at"]

    older = machine.handle_status({"id": "wamid.out.1", "status": "read", "timestamp": "1767200000"})

    assert first.outcome == sm.SEEN_RECORDED
    assert older.outcome == sm.SEEN_RECORDED
    assert seen_first is not None
    assert _row(invitation)["seen_at"] == seen_first
    assert _row(invitation)["response"] == "Pending"


def test_failed_status_records_reason(machine, invitation):
    transition = machine.handle_status(
        {
            "id": "wamid.out.1",
            "status": "failed",
            "errors": [{"title": "Undeliverable", "error_data": {"details": "Not a WhatsApp user"}}],
        }
    )

    assert transition.outcome == sm.FAILURE_RECORDED
    row = _row(invitation)
    assert row["failure_reason"] == "Not a WhatsApp user"
    assert row["response"] == "Pending"


def test_delivered_and_unknown_statuses(machine, invitation):
    assert machine.handle_status({"id": "wamid.out.1", "status": "delivered"}).outcome == sm.STATUS_IGNORED
    assert machine.handle_status({"id": "wamid.nope", "status": "read"}).outcome == sm.MESSAGE_NOT_FOUND


def test_provider_error_is_logged_only(machine):
    transition = machine.handle_error({"code": 131047, "title": "Re-engagement message"})

    assert transition.outcome == sm.PROVIDER_ERROR
    assert transition.detail == "131047"


def test_inbound_reply_extraction():
    reply = InboundReply.from_message(
        {
            "id": "wamid.x",
            "from": "972544349661",
            "timestamp": "1767225600",
            "type": "interactive",
            "interactive": {"type": "list_reply", "list_reply": {"id": "followup_2days", "title": "בעוד יומיים"}},
        }
    )

    assert reply.payload == "followup_2days"
    assert reply.text == "בעוד יומיים"
    assert reply.received_at is not None
    assert InboundReply.from_message({"type": "audio"}) is None


def test_redelivered_free_text_reply_sends_once(machine, invitation, outbox):
    first = machine.handle_message(_text("כן", msg_id="wamid.same"))
    again = machine.handle_message(_text("כן", msg_id="wamid.same"))

    assert first.outcome == sm.RESPONSE_RECORDED
    assert again.outcome == sm.DUPLICATE_REPLY
    assert again.state == InvitationState.AWAITING_GUEST_COUNT
    assert again.notification is None
    assert len(outbox["text"]) == 1

    counted = machine.handle_message(_text("4", msg_id="wamid.count"))
    replayed = machine.handle_message(_text("4", msg_id="wamid.count"))

    assert counted.outcome == sm.GUEST_COUNT_RECORDED
    assert replayed.notification is None
    assert _row(invitation)["guests_coming"] == 4
    assert len(outbox["text"]) == 2


@pytest.fixture
def duplicate_contacts(seed):
    """Same phone stored twice: local form for EVT-A (older), international for EVT-B."""
    seed.event("EVT-A", event_date=TODAY + timedelta(days=20))
    seed.event("EVT-B", event_date=TODAY + timedelta(days=30))
    first = seed.contact("0544349661", display_name="Ruth A")
    second = seed.contact(GUEST_PHONE, display_name="Ruth B")
    seed.link("EVT-A", first, created_at=datetime(2026, 1, 1, tzinfo=timezone.utc))
    seed.link("EVT-B", second, created_at=datetime(2026, 2, 1, tzinfo=timezone.utc))
    return {
        "EVT-A": seed.invitation("EVT-A", first),
        "EVT-B": seed.invitation("EVT-B", second),
    }


def test_guest_count_reaches_the_older_duplicate_contact(machine, duplicate_contacts, outbox):
    machine.handle_message(_button("כן, אני מגיע!", "rsvp_yes_EVT-A"))

    transition = machine.handle_message(_text("3"))

    assert transition.outcome == sm.GUEST_COUNT_RECORDED
    assert transition.ambiguous_contact
    row_a = _row(duplicate_contacts["EVT-A"])
    assert row_a["guests_coming"] == 3
    assert not row_a["awaiting_guest_count"]
    assert _row(duplicate_contacts["EVT-B"])["response"] == "Pending"
    assert "רשמנו 3 אורחים" in outbox["text"][-1][1]


def test_followup_choice_reaches_the_older_duplicate_contact(machine, duplicate_contacts, outbox):
    machine.handle_message(_button("עדיין לא יודע\\ת", "rsvp_maybe_EVT-A"))

    transition = machine.handle_message(_interactive("followup_week", "בעוד שבוע"))

    assert transition.outcome == sm.FOLLOWUP_SCHEDULED
    assert coerce_date(_row(duplicate_contacts["EVT-A"])["followup_date"]) == TODAY + timedelta(days=7)
    assert _row(duplicate_contacts["EVT-B"])["followup_date"] is None


def test_free_text_without_event_goes_to_newest_open_invitation(machine, duplicate_contacts, outbox):
    transition = machine.handle_message(_text("לא"))

    assert transition.outcome == sm.RESPONSE_RECORDED
    assert transition.event_message_id == duplicate_contacts["EVT-B"]
    assert _row(duplicate_contacts["EVT-A"])["response"] == "Pending"
