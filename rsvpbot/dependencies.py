"""Common FastAPI dependency providers."""

from rsvpbot.repositories import EventMessageRepository
from rsvpbot.services.rsvp_state_machine import RSVPStateMachine

_state_machine: RSVPStateMachine | None = None


def get_state_machine() -> RSVPStateMachine:
    """Return a singleton-like instance of :class:`RSVPStateMachine`.

    The machine holds no conversational state of its own, so one instance
    per process is shared by all webhook deliveries.
    """

    global _state_machine
    if _state_machine is None:
        _state_machine = RSVPStateMachine()
    return _state_machine


def get_event_message_repository() -> EventMessageRepository:
    return EventMessageRepository()
