"""
Follow-up timeframe selection for undecided ("maybe") guests.

The buttons offered depend on how close the event is:
- >17 days:  3 days, 1 week, 2 weeks
- 10-17:     3 days, 1 week
- 7-9:       3 days, 5 days
- 5-6:       3 days
- 4:         2 days
- 3:         2 days, tomorrow
- 2:         tomorrow
- <2:        no buttons; the guest is asked to contact the celebrants directly
- no date:   the default set (3 days, 1 week, 2 weeks)
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from rsvpbot.time_utils import coerce_date

logger = logging.getLogger(__name__)

FOLLOWUP_TOMORROW = "followup_tomorrow"
FOLLOWUP_2DAYS = "followup_2days"
FOLLOWUP_3DAYS = "followup_3days"
FOLLOWUP_5DAYS = "followup_5days"
FOLLOWUP_WEEK = "followup_week"
FOLLOWUP_2WEEKS = "followup_2weeks"

FOLLOWUP_OFFSETS_DAYS: Dict[str, int] = {
    FOLLOWUP_TOMORROW: 1,
    FOLLOWUP_2DAYS: 2,
    FOLLOWUP_3DAYS: 3,
    FOLLOWUP_5DAYS: 5,
    FOLLOWUP_WEEK: 7,
    FOLLOWUP_2WEEKS: 14,
}

FOLLOWUP_LABELS: Dict[str, str] = {
    FOLLOWUP_TOMORROW: "מחר",
    FOLLOWUP_2DAYS: "בעוד יומיים",
    FOLLOWUP_3DAYS: "בעוד 3 ימים",
    FOLLOWUP_5DAYS: "בעוד 5 ימים",
    FOLLOWUP_WEEK: "בעוד שבוע",
    FOLLOWUP_2WEEKS: "בעוד שבועיים",
}

GENERIC_FOLLOWUP_LABEL = "בעוד מספר ימים"

KIND_BUTTONS = "buttons"
KIND_TOO_CLOSE = "too_close"
KIND_DEFAULT = "default"

DEFAULT_OPTIONS: Tuple[str, ...] = (FOLLOWUP_3DAYS, FOLLOWUP_WEEK, FOLLOWUP_2WEEKS)

# (min days, max days or None for open-ended, options), checked top to bottom.
PROXIMITY_TABLE: Tuple[Tuple[int, Optional[int], Tuple[str, ...]], ...] = (
    (18, None, (FOLLOWUP_3DAYS, FOLLOWUP_WEEK, FOLLOWUP_2WEEKS)),
    (10, 17, (FOLLOWUP_3DAYS, FOLLOWUP_WEEK)),
    (7, 9, (FOLLOWUP_3DAYS, FOLLOWUP_5DAYS)),
    (5, 6, (FOLLOWUP_3DAYS,)),
    (4, 4, (FOLLOWUP_2DAYS,)),
    (3, 3, (FOLLOWUP_2DAYS, FOLLOWUP_TOMORROW)),
    (2, 2, (FOLLOWUP_TOMORROW,)),
)


@dataclass(frozen=True)
class FollowupSelection:
    kind: str
    options: Tuple[str, ...] = ()
    days_until_event: Optional[int] = None

    @property
    def too_close(self) -> bool:
        return self.kind == KIND_TOO_CLOSE


def days_until(event_date: Any, today: date) -> Optional[int]:
    """Whole days from ``today`` to the event, rounded up (ceil)."""
    if isinstance(event_date, datetime):
        start = datetime.combine(today, datetime.min.time(), tzinfo=event_date.tzinfo)
        delta = event_date - start
        return math.ceil(delta.total_seconds() / 86400)

    target = coerce_date(event_date)
    if target is None:
        return None
    return (target - today).days


def select_followup_options(event_date: Any, today: date) -> FollowupSelection:
    """Decide which follow-up timeframes to offer for an event date."""
    days = days_until(event_date, today) if event_date is not None else None

    if days is None:
        logger.warning("No event date provided, using default follow-up buttons")
        return FollowupSelection(kind=KIND_DEFAULT, options=DEFAULT_OPTIONS)

    for min_days, max_days, options in PROXIMITY_TABLE:
        if days >= min_days and (max_days is None or days <= max_days):
            logger.info("Days until event: %s -> follow-up options %s", days, ", ".join(options))
            return FollowupSelection(kind=KIND_BUTTONS, options=options, days_until_event=days)

    logger.info("Event is %s days away - too close for follow-up buttons", days)
    return FollowupSelection(kind=KIND_TOO_CLOSE, days_until_event=days)


def resolve_followup_date(option_id: str, today: date) -> date:
    """Concrete follow-up date for a chosen option; unknown options resolve to today."""
    offset = FOLLOWUP_OFFSETS_DAYS.get(option_id)
    if offset is None:
        logger.warning("Unknown follow-up option %r, using today's date", option_id)
        return today
    return today + timedelta(days=offset)


def display_text(option_id: str) -> str:
    return FOLLOWUP_LABELS.get(option_id, GENERIC_FOLLOWUP_LABEL)


def build_reply_buttons(options: Tuple[str, ...]) -> List[dict]:
    """Provider reply-button objects for an option set (WhatsApp allows at most 3)."""
    return [
        {"type": "reply", "reply": {"id": option_id, "title": display_text(option_id)}}
        for option_id in options[:3]
    ]


def event_too_close_message(
    celebrator1_name: Optional[str] = None, celebrator2_name: Optional[str] = None
) -> str:
    """Plain text for events less than two days away, naming the celebrant(s)."""
    if celebrator1_name and celebrator2_name:
        celebrator_text = f"{celebrator1_name} ו{celebrator2_name}"
    elif celebrator1_name or celebrator2_name:
        celebrator_text = celebrator1_name or celebrator2_name
    else:
        celebrator_text = "מארגני האירוע"

    return (
        "האירוע ממש בפתח! 🎊\n\n"
        "משמחים לראות שאתם שוקלים להגיע!\n\n"
        f"אם אתם יכולים להגיע - נא ליצור קשר ישירות עם {celebrator_text} כדי לעדכן.\n\n"
        "מצפים לראותכם! 💙"
    )
