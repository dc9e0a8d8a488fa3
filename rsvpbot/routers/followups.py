# rsvpbot/routers/followups.py
from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder

from rsvpbot.dependencies import get_event_message_repository
from rsvpbot.repositories import EventMessageRepository


router = APIRouter(prefix="/api/followup-notifications", tags=["followups"])


@router.get("")
def list_followup_notifications(
    owner_email: str = Query(..., alias="ownerEmail"),
    repo: EventMessageRepository = Depends(get_event_message_repository),
):
    """Guests who answered 'maybe' and picked a date, not yet dismissed by the owner."""
    notifications = repo.list_followup_notifications(owner_email)
    return JSONResponse(
        jsonable_encoder({"notifications": notifications, "count": len(notifications)})
    )


@router.delete("/{event_message_id}")
def dismiss_followup_notification(
    event_message_id: int,
    repo: EventMessageRepository = Depends(get_event_message_repository),
):
    if not repo.dismiss_followup_notification(event_message_id):
        raise HTTPException(status_code=404, detail="Follow-up notification not found")
    return JSONResponse({"success": True, "id": event_message_id})
