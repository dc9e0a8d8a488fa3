"""Exceptions raised across the RSVP flow.

Recoverable classification outcomes (contact not found, unrecognized reply,
invalid guest count, ...) are not exceptions: they are reported as
``Transition.outcome`` tags so callers can log and move on.
"""


class TransactionFailure(RuntimeError):
    """A database error aborted the per-event transaction; nothing was changed."""

    def __init__(self, message: str, *, provider_message_id: str | None = None):
        super().__init__(message)
        self.provider_message_id = provider_message_id


class NotifierFailure(RuntimeError):
    """An outbound WhatsApp request failed after the state change was committed."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code
