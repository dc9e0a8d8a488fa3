"""Fan-out of a 360dialog webhook body into per-item state machine calls."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

from starlette.concurrency import run_in_threadpool

from rsvpbot.services.rsvp_state_machine import RSVPStateMachine
from rsvpbot.utils.env import get_webhook_max_concurrency

logger = logging.getLogger(__name__)


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


async def process_webhook_entries(
    entries: List[dict],
    machine: RSVPStateMachine,
    max_concurrency: Optional[int] = None,
) -> List[Any]:
    """
    Run every message / status / error of the payload through the state machine.

    Items run concurrently (bounded), each blocking unit in the threadpool.
    A failing item is logged and never cancels its siblings.
    Returns the per-item results (Transition or the raised exception).
    """
    limit = max_concurrency or get_webhook_max_concurrency()
    semaphore = asyncio.Semaphore(limit)
    units: List[Awaitable[Any]] = []
    labels: List[str] = []

    async def _run(handler: Callable[..., Any], item: dict, value: dict) -> Any:
        async with semaphore:
            return await run_in_threadpool(handler, item, value)

    for entry in _as_list(entries):
        if not isinstance(entry, dict):
            continue
        for change in _as_list(entry.get("changes")):
            value = (change or {}).get("value") if isinstance(change, dict) else None
            if not isinstance(value, dict):
                continue

            for message in _as_list(value.get("messages")):
                units.append(_run(machine.handle_message, message, value))
                labels.append(f"message {message.get('id') if isinstance(message, dict) else '?'}")
            for status in _as_list(value.get("statuses")):
                units.append(_run(machine.handle_status, status, value))
                labels.append(f"status {status.get('id') if isinstance(status, dict) else '?'}")
            for error in _as_list(value.get("errors")):
                units.append(_run(machine.handle_error, error, value))
                labels.append("error")

    if not units:
        logger.debug("Webhook payload carried no messages, statuses or errors")
        return []

    results = await asyncio.gather(*units, return_exceptions=True)

    for label, result in zip(labels, results):
        if isinstance(result, BaseException):
            logger.error(
                "Webhook item %s failed: %s",
                label,
                result,
                exc_info=(type(result), result, result.__traceback__),
            )

    logger.info("Processed %s webhook items", len(results))
    return list(results)
