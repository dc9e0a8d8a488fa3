from datetime import date, timedelta
from unittest.mock import MagicMock

import pytest

from rsvpbot.errors import TransactionFailure
from rsvpbot.repositories import EventMessageRepository
from rsvpbot.services import rsvp_state_machine as sm
from rsvpbot.services.rsvp_state_machine import RSVPStateMachine
from rsvpbot.services.webhook_dispatcher import process_webhook_entries


def _entries():
    return [
        {
            "changes": [
                {
                    "value": {
                        "messages": [{"id": "m1"}, {"id": "m2"}],
                        "statuses": [{"id": "s1", "status": "read"}],
                    }
                }
            ]
        },
        {"changes": [{"value": {"errors": [{"code": 1}]}}]},
        {"changes": "not-a-list"},
        "garbage",
    ]


@pytest.mark.anyio
async def test_fans_out_every_item():
    machine = MagicMock()
    machine.handle_message.side_effect = lambda item, value: f"msg:{item['id']}"
    machine.handle_status.return_value = "status"
    machine.handle_error.return_value = "error"

    results = await process_webhook_entries(_entries(), machine, max_concurrency=2)

    assert sorted(results) == ["error", "msg:m1", "msg:m2", "status"]
    assert machine.handle_message.call_count == 2
    machine.handle_status.assert_called_once()
    machine.handle_error.assert_called_once()


@pytest.mark.anyio
async def test_one_failure_does_not_cancel_siblings():
    machine = MagicMock()

    def handle_message(item, value):
        if item["id"] == "m1":
            raise TransactionFailure("db down", provider_message_id="m1")
        return "ok"

    machine.handle_message.side_effect = handle_message
    machine.handle_status.return_value = "status"
    machine.handle_error.return_value = "error"

    results = await process_webhook_entries(_entries(), machine)

    failures = [r for r in results if isinstance(r, TransactionFailure)]
    assert len(failures) == 1
    assert "ok" in results and "status" in results and "error" in results


@pytest.mark.anyio
async def test_empty_payload():
    machine = MagicMock()

    assert await process_webhook_entries([], machine) == []
    assert await process_webhook_entries([{"changes": [{"value": {}}]}], machine) == []
    machine.handle_message.assert_not_called()


def _redelivered_payload():
    reply = {
        "id": "wamid.in.1",
        "from": "972544349661",
        "timestamp": "1767225600",
        "type": "button",
        "button": {"text": "כן, אני מגיע!", "payload": "rsvp_yes_EVT-1"},
    }
    return [
        {"changes": [{"value": {"messages": [reply]}}]},
        {"changes": [{"value": {"messages": [dict(reply)]}}]},
        {
            "changes": [
                {"value": {"statuses": [{"id": "wamid.out.1", "status": "read", "timestamp": "1767225500"}]}}
            ]
        },
    ]


@pytest.mark.anyio
async def test_redelivered_reply_and_read_status_against_database(seed, outbox):
    today = date(2026, 3, 1)
    seed.event("EVT-1", event_date=today + timedelta(days=20))
    contact_id = seed.contact("0544349661")
    invitation_id = seed.invitation("EVT-1", contact_id, provider_message_id="wamid.out.1")
    machine = RSVPStateMachine(today=lambda: today)

    results = await process_webhook_entries(_redelivered_payload(), machine, max_concurrency=4)

    assert not [r for r in results if isinstance(r, BaseException)]
    outcomes = [r.outcome for r in results]
    assert outcomes.count(sm.RESPONSE_RECORDED) == 1
    assert sm.SEEN_RECORDED in outcomes
    assert len(outbox["text"]) == 1

    row = EventMessageRepository().get_event_message(invitation_id)
    assert row["response"] == "Attending"
    assert row["awaiting_guest_count"]
    assert row["seen_at"] is not None
