# rsvpbot/whatsapp_client.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import requests

from rsvpbot.credentials import D360_API_KEY, D360_BASE_URL, D360_TIMEOUT_SECONDS
from rsvpbot.errors import NotifierFailure
from rsvpbot.utils.phone import normalize_phone_for_dialog360

logger = logging.getLogger(__name__)

MESSAGES_URL = f"{D360_BASE_URL}/messages"
MAX_REPLY_BUTTONS = 3

session = requests.Session()
session.headers.update(
    {
        "D360-API-KEY": D360_API_KEY,
        "Content-Type": "application/json",
    }
)


def _normalize_to(to_number: str) -> str:
    """Return the recipient in the digits-only international form, e.g. 9725..."""

    normalized = normalize_phone_for_dialog360(to_number or "")
    if not normalized:
        raise ValueError("Recipient phone number is required")
    return normalized


def _post(payload: Dict[str, Any]) -> Dict[str, Any]:
    try:
        response = session.post(MESSAGES_URL, json=payload, timeout=D360_TIMEOUT_SECONDS)
        response.raise_for_status()
    except requests.HTTPError as exc:
        status_code = exc.response.status_code if exc.response is not None else None
        body = exc.response.text if exc.response is not None else ""
        raise NotifierFailure(
            f"360dialog request failed ({status_code}): {body}", status_code=status_code
        ) from exc
    except requests.RequestException as exc:
        raise NotifierFailure(f"360dialog request failed: {exc}") from exc

    try:
        return response.json()
    except ValueError:
        return {}


def sent_message_id(response_json: Optional[Dict[str, Any]]) -> Optional[str]:
    messages = (response_json or {}).get("messages") or []
    if messages and isinstance(messages[0], dict):
        return messages[0].get("id")
    return None


def send_text(to: str, body: str) -> Dict[str, Any]:
    """שליחת טקסט רגיל (session message)."""

    payload: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": _normalize_to(to),
        "type": "text",
        "text": {"body": body},
    }
    return _post(payload)


def send_buttons(to: str, body: str, buttons: List[dict]) -> Dict[str, Any]:
    """
    Send an interactive reply-button message.

    :param to: recipient phone (local or international form)
    :param body: message text shown above the buttons
    :param buttons: provider reply-button objects ({"type": "reply", "reply": {...}})
    """

    if not buttons:
        raise ValueError("At least one button is required")
    if len(buttons) > MAX_REPLY_BUTTONS:
        raise ValueError(f"WhatsApp allows at most {MAX_REPLY_BUTTONS} reply buttons")

    payload: Dict[str, Any] = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": _normalize_to(to),
        "type": "interactive",
        "interactive": {
            "type": "button",
            "body": {"text": body},
            "action": {"buttons": buttons},
        },
    }
    return _post(payload)


def mark_as_read(message_id: str) -> Dict[str, Any]:
    """Mark an incoming message as read (blue ticks on the guest's phone)."""

    if not message_id:
        raise ValueError("message_id is required")

    payload = {
        "messaging_product": "whatsapp",
        "status": "read",
        "message_id": message_id,
    }
    return _post(payload)
