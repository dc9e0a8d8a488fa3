import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from rsvpbot.appdb import get_session
from rsvpbot.constants import MESSAGE_TYPES
from rsvpbot.dependencies import get_event_message_repository
from rsvpbot.repositories import ContactRepository, EventMessageRepository, EventRepository

router = APIRouter(prefix="/api/event-messages", tags=["event-messages"])
logger = logging.getLogger(__name__)


class SentInvitation(BaseModel):
    contact_id: int
    provider_message_id: Optional[str] = None


class LogInvitationsRequest(BaseModel):
    event_id: str
    message_type: str = "invitation"
    message_round: int = Field(default=1, ge=1)
    messages: List[SentInvitation]


@router.post("")
def log_event_messages(
    body: LogInvitationsRequest,
    repo: EventMessageRepository = Depends(get_event_message_repository),
):
    """
    Record invitations that were sent for an event round.

    Each sent message becomes an open (Pending) invitation; the provider
    message id links later read/failed statuses back to it. Unknown
    contacts are reported back and skipped.
    """
    if body.message_type not in MESSAGE_TYPES:
        raise HTTPException(status_code=400, detail=f"Invalid message_type: {body.message_type}")

    with get_session() as session:
        event = EventRepository().get_event_by_id(session, body.event_id)
        if not event:
            raise HTTPException(status_code=404, detail="Event not found")

        contacts = ContactRepository()
        known_ids = {
            sent.contact_id
            for sent in body.messages
            if contacts.get_contact_by_id(session, sent.contact_id)
        }

    logged = []
    skipped = []
    for sent in body.messages:
        if sent.contact_id not in known_ids:
            skipped.append(sent.contact_id)
            continue
        event_message_id = repo.log_invitation(
            body.event_id,
            sent.contact_id,
            message_type=body.message_type,
            message_round=body.message_round,
            provider_message_id=sent.provider_message_id,
        )
        logged.append({"contact_id": sent.contact_id, "event_message_id": event_message_id})

    logger.info(
        "Logged %s invitations for event %s (round %s), skipped %s",
        len(logged),
        body.event_id,
        body.message_round,
        len(skipped),
    )
    return JSONResponse({"success": True, "logged": logged, "skipped_contact_ids": skipped})


@router.get("/{event_id}/stats")
def get_event_response_stats(
    event_id: str,
    repo: EventMessageRepository = Depends(get_event_message_repository),
):
    return JSONResponse(repo.get_response_stats(event_id))
