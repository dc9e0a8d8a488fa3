"""
Invitation response mapper.

Maps WhatsApp invitation replies to the RSVP vocabulary.

Expected invitation quick-reply buttons:
- "כן, אני מגיע!"    -> Attending
- "לצערי, לא"        -> NotAttending
- "עדיין לא יודע\\ת" -> Maybe

Free text is classified only when the caller allows it (templates sent
without buttons). Rules are evaluated top to bottom and the first match wins,
so negative phrases sit above positive ones ("not attending" must never be
read as "attending") and specific phrases above generic ones ("לא בטוח" is
an uncertain answer, not a decline).

Anything else is UNRECOGNIZED; the mapper never raises.
"""

from __future__ import annotations

import logging
import re
from typing import Optional, Tuple, Union

from rsvpbot.constants import MAX_GUEST_COUNT, MIN_GUEST_COUNT, RSVPResponse
from rsvpbot.utils.actions import parse_action_id

logger = logging.getLogger(__name__)


class _Sentinel:
    def __init__(self, name: str):
        self._name = name

    def __repr__(self) -> str:
        return self._name

    def __bool__(self) -> bool:
        return False


UNRECOGNIZED = _Sentinel("UNRECOGNIZED")
INVALID_COUNT = _Sentinel("INVALID_COUNT")

BUTTON_MESSAGE_TYPES = ("button", "interactive")

_PUNCTUATION = re.compile(r"[!.,?\"'״׳]")
_WHITESPACE = re.compile(r"\s+")

# (tag, outcome, match kind, tokens)
#   all   - every token is a substring of the text
#   any   - at least one token is a substring of the text
#   exact - the whole text equals one of the tokens
Rule = Tuple[str, RSVPResponse, str, Tuple[str, ...]]

BUTTON_RULES: Tuple[Rule, ...] = (
    ("button-attending", RSVPResponse.ATTENDING, "all", ("כן", "אני", "מגיע")),
    ("button-declined", RSVPResponse.NOT_ATTENDING, "all", ("לצערי", "לא")),
    ("button-undecided", RSVPResponse.MAYBE, "all", ("עדיין", "לא", "יודע")),
)

FREE_TEXT_RULES: Tuple[Rule, ...] = (
    (
        "text-undecided-specific",
        RSVPResponse.MAYBE,
        "any",
        ("לא בטוח", "לא יודע", "עדיין לא", "not sure", "don't know", "dont know"),
    ),
    (
        "text-declined",
        RSVPResponse.NOT_ATTENDING,
        "any",
        (
            "לא מגיע",
            "לא נגיע",
            "לא אגיע",
            "לא נוכל",
            "לא אוכל",
            "לצערי",
            "not attending",
            "not coming",
            "can't make it",
            "cannot make it",
            "won't be",
        ),
    ),
    ("text-declined-short", RSVPResponse.NOT_ATTENDING, "exact", ("לא", "no", "nope")),
    ("text-undecided", RSVPResponse.MAYBE, "any", ("אולי", "maybe", "perhaps")),
    (
        "text-attending",
        RSVPResponse.ATTENDING,
        "any",
        ("מגיע", "נגיע", "אגיע", "נבוא", "אבוא", "attending", "coming"),
    ),
    ("text-attending-short", RSVPResponse.ATTENDING, "exact", ("כן", "yes", "בטח")),
)

_PAYLOAD_ANSWERS = {
    "yes": RSVPResponse.ATTENDING,
    "no": RSVPResponse.NOT_ATTENDING,
    "maybe": RSVPResponse.MAYBE,
}


def normalize_reply_text(value: Optional[str]) -> str:
    """Trim, lower-case, drop punctuation and collapse whitespace."""
    if not value:
        return ""
    cleaned = _PUNCTUATION.sub("", value.strip().lower())
    return _WHITESPACE.sub(" ", cleaned).strip()


def _rule_matches(kind: str, tokens: Tuple[str, ...], text: str) -> bool:
    if kind == "all":
        return all(token in text for token in tokens)
    if kind == "any":
        return any(token in text for token in tokens)
    if kind == "exact":
        return text in tokens
    raise ValueError(f"Unknown rule kind {kind}")


def _apply_rules(rules: Tuple[Rule, ...], text: str) -> Union[RSVPResponse, _Sentinel]:
    for tag, outcome, kind, tokens in rules:
        if _rule_matches(kind, tokens, text):
            logger.debug("Reply matched rule %s -> %s", tag, outcome.value)
            return outcome
    return UNRECOGNIZED


def map_invitation_response(
    reply_text: Optional[str],
    message_type: str,
    allow_text_fallback: bool = False,
    payload: Optional[str] = None,
) -> Union[RSVPResponse, _Sentinel]:
    """
    Classify an invitation reply.

    :param reply_text: button title or free text body
    :param message_type: provider message type ('button', 'interactive', 'text', ...)
    :param allow_text_fallback: classify free text as well (templates without buttons)
    :param payload: button payload / interactive reply id, when present
    :return: an RSVPResponse, or UNRECOGNIZED
    """
    parsed = parse_action_id(payload)
    if parsed and parsed["type"] == "RSVP":
        return _PAYLOAD_ANSWERS[parsed["answer"]]

    text = normalize_reply_text(reply_text)
    if not text:
        return UNRECOGNIZED

    if message_type in BUTTON_MESSAGE_TYPES:
        outcome = _apply_rules(BUTTON_RULES, text)
        if outcome is UNRECOGNIZED:
            logger.warning("Unexpected button reply: %r", reply_text)
        return outcome

    if not allow_text_fallback:
        logger.info("Skipping free-text message (not a quick reply button): %r", reply_text)
        return UNRECOGNIZED

    return _apply_rules(FREE_TEXT_RULES, text)


def parse_guest_count(reply_text: Optional[str]) -> Union[int, _Sentinel]:
    """Guest count sub-conversation: an integer in [1, 99], else INVALID_COUNT."""
    if reply_text is None:
        return INVALID_COUNT

    value = reply_text.strip()
    if not value.isdigit() or not value.isascii():
        return INVALID_COUNT

    count = int(value)
    if count < MIN_GUEST_COUNT or count > MAX_GUEST_COUNT:
        return INVALID_COUNT
    return count
