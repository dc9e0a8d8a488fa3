import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.responses import JSONResponse

from rsvpbot.dependencies import get_state_machine
from rsvpbot.services.rsvp_state_machine import RSVPStateMachine
from rsvpbot.services.webhook_dispatcher import process_webhook_entries

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/dialog360-webhook")
async def dialog360_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    machine: RSVPStateMachine = Depends(get_state_machine),
):
    """
    360dialog webhook.

    Always answers 200 right away (the provider retries anything else);
    the payload is processed after the response in a background task.
    """
    try:
        payload = await request.json()
    except ValueError:
        raw_body = await request.body()
        logger.warning("Webhook body is not valid JSON (%s bytes)", len(raw_body or b""))
        return JSONResponse({"success": True})

    entries = payload.get("entry") if isinstance(payload, dict) else None
    if not isinstance(entries, list):
        logger.warning("Webhook payload without an 'entry' list, ignoring")
        return JSONResponse({"success": True})

    logger.info("360dialog webhook received with %s entries", len(entries))
    background_tasks.add_task(process_webhook_entries, entries, machine)
    return JSONResponse({"success": True})
