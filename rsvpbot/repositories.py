# repositories.py
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Sequence
import logging

from sqlalchemy import bindparam, text

from .appdb import get_session, supports_row_locks
from .constants import MESSAGE_TYPES, OPEN_RESPONSES, RSVPResponse
from .time_utils import now_utc


logger = logging.getLogger(__name__)


def _lock_clause(session, lock: bool, of: Optional[str] = None) -> str:
    if not lock or not supports_row_locks(session):
        return ""
    # Postgres refuses FOR UPDATE on the nullable side of an outer join
    return f" FOR UPDATE OF {of}" if of else " FOR UPDATE"


class ContactRepository:
    """אחראי על טבלאות contacts ו-event_contacts"""

    def find_by_phone_formats(self, session, phone_formats: List[str]) -> List[dict]:
        """Return every contact whose stored or canonical phone equals one of the given formats.

        Each row carries ``last_associated_at``: the newest event association of
        that contact, used to break ties between duplicates.
        """
        formats = [value for value in phone_formats if value]
        if not formats:
            return []

        query = text(
            """
            SELECT c.id, c.display_name, c.phone_number, c.canonical_form, c.owner_email,
                   (
                       SELECT MAX(ec.created_at)
                       FROM event_contacts ec
                       WHERE ec.contact_id = c.id
                   ) AS last_associated_at
            FROM contacts c
            WHERE c.phone_number IN :formats
               OR c.canonical_form IN :formats
            ORDER BY c.id
            """
        ).bindparams(bindparam("formats", expanding=True))

        result = session.execute(query, {"formats": formats})
        return [dict(row) for row in result.mappings().all()]

    def list_event_associations(
        self, session, event_id: str, contact_ids: List[int]
    ) -> Dict[int, Any]:
        """Map contact_id -> association created_at for contacts linked to the event."""
        if not contact_ids:
            return {}

        query = text(
            """
            SELECT contact_id, created_at
            FROM event_contacts
            WHERE event_id = :event_id
              AND contact_id IN :contact_ids
            """
        ).bindparams(bindparam("contact_ids", expanding=True))

        rows = session.execute(
            query, {"event_id": event_id, "contact_ids": list(contact_ids)}
        ).mappings().all()
        return {row["contact_id"]: row["created_at"] for row in rows}

    def get_contact_by_id(self, session, contact_id: int):
        query = text(
            """
            SELECT *
            FROM contacts
            WHERE id = :contact_id
            """
        )
        return session.execute(query, {"contact_id": contact_id}).mappings().first()


class EventRepository:
    """אחראי על טבלת events"""

    def get_event_by_id(self, session, event_id: str):
        query = text(
            """
            SELECT *
            FROM events
            WHERE id = :event_id
            """
        )
        return session.execute(query, {"event_id": event_id}).mappings().first()


class EventMessageRepository:
    """אחראי על טבלת event_messages – רשומת ההזמנה של כל (אירוע, איש קשר, סבב)

    Conversation lookups take a list of contact ids: one phone number may
    belong to several duplicate contacts, and the newest matching row among
    all of them wins.
    """

    # --- lookups used inside the per-webhook transaction ---

    def find_by_provider_message_id(
        self, session, provider_message_id: str, lock: bool = True
    ):
        query = text(
            f"""
            SELECT *
            FROM event_messages
            WHERE provider_message_id = :provider_message_id
            ORDER BY id DESC
            LIMIT 1{_lock_clause(session, lock)}
            """
        )
        return session.execute(
            query, {"provider_message_id": provider_message_id}
        ).mappings().first()

    def find_awaiting_guest_count(
        self,
        session,
        contact_ids: Sequence[int],
        event_id: Optional[str] = None,
        lock: bool = True,
    ):
        event_clause = "AND event_id = :event_id" if event_id else ""
        query = text(
            f"""
            SELECT *
            FROM event_messages
            WHERE contact_id IN :contact_ids
              AND message_type IN :message_types
              AND response = :attending
              AND awaiting_guest_count = :awaiting
              {event_clause}
            ORDER BY id DESC
            LIMIT 1{_lock_clause(session, lock)}
            """
        ).bindparams(
            bindparam("contact_ids", expanding=True),
            bindparam("message_types", expanding=True),
        )

        params: Dict[str, Any] = {
            "contact_ids": list(contact_ids),
            "message_types": MESSAGE_TYPES,
            "attending": RSVPResponse.ATTENDING.value,
            "awaiting": True,
        }
        if event_id:
            params["event_id"] = event_id
        return session.execute(query, params).mappings().first()

    def find_open_invitation(
        self,
        session,
        contact_ids: Sequence[int],
        event_id: Optional[str] = None,
        lock: bool = True,
    ):
        """Most recent Pending/NoAnswer invitation of the contacts (optionally per event)."""
        event_clause = "AND event_id = :event_id" if event_id else ""
        query = text(
            f"""
            SELECT *
            FROM event_messages
            WHERE contact_id IN :contact_ids
              AND message_type IN :message_types
              AND response IN :open_responses
              {event_clause}
            ORDER BY id DESC
            LIMIT 1{_lock_clause(session, lock)}
            """
        ).bindparams(
            bindparam("contact_ids", expanding=True),
            bindparam("message_types", expanding=True),
            bindparam("open_responses", expanding=True),
        )

        params: Dict[str, Any] = {
            "contact_ids": list(contact_ids),
            "message_types": MESSAGE_TYPES,
            "open_responses": list(OPEN_RESPONSES),
        }
        if event_id:
            params["event_id"] = event_id
        return session.execute(query, params).mappings().first()

    def find_latest_invitation(
        self,
        session,
        contact_ids: Sequence[int],
        event_id: Optional[str] = None,
        lock: bool = True,
    ):
        """Most recent invitation of the contacts regardless of its response."""
        event_clause = "AND em.event_id = :event_id" if event_id else ""
        query = text(
            f"""
            SELECT em.*, e.event_name, e.owner_email
            FROM event_messages em
            LEFT JOIN events e ON em.event_id = e.id
            WHERE em.contact_id IN :contact_ids
              AND em.message_type IN :message_types
              {event_clause}
            ORDER BY em.id DESC
            LIMIT 1{_lock_clause(session, lock, of="em")}
            """
        ).bindparams(
            bindparam("contact_ids", expanding=True),
            bindparam("message_types", expanding=True),
        )

        params: Dict[str, Any] = {
            "contact_ids": list(contact_ids),
            "message_types": MESSAGE_TYPES,
        }
        if event_id:
            params["event_id"] = event_id
        return session.execute(query, params).mappings().first()

    def find_latest_maybe(self, session, contact_ids: Sequence[int], lock: bool = True):
        query = text(
            f"""
            SELECT *
            FROM event_messages
            WHERE contact_id IN :contact_ids
              AND message_type IN :message_types
              AND response = :maybe
            ORDER BY id DESC
            LIMIT 1{_lock_clause(session, lock)}
            """
        ).bindparams(
            bindparam("contact_ids", expanding=True),
            bindparam("message_types", expanding=True),
        )

        return session.execute(
            query,
            {
                "contact_ids": list(contact_ids),
                "message_types": MESSAGE_TYPES,
                "maybe": RSVPResponse.MAYBE.value,
            },
        ).mappings().first()

    # --- mutations used inside the per-webhook transaction ---
    # reply_message_id: the inbound provider message that caused the change,
    # so a redelivered webhook can be recognised.

    def record_response(
        self,
        session,
        event_message_id: int,
        response: str,
        response_time: Optional[datetime],
        *,
        guests_coming: int,
        awaiting_guest_count: bool,
        reply_message_id: Optional[str] = None,
    ) -> None:
        query = text(
            """
            UPDATE event_messages
            SET response = :response,
                response_time = :response_time,
                guests_coming = :guests_coming,
                awaiting_guest_count = :awaiting_guest_count,
                last_reply_message_id = :reply_message_id
            WHERE id = :event_message_id
            """
        )
        session.execute(
            query,
            {
                "response": response,
                "response_time": response_time or now_utc(),
                "guests_coming": guests_coming,
                "awaiting_guest_count": awaiting_guest_count,
                "reply_message_id": reply_message_id,
                "event_message_id": event_message_id,
            },
        )

    def update_guest_count(
        self,
        session,
        event_message_id: int,
        guest_count: int,
        reply_message_id: Optional[str] = None,
    ) -> None:
        query = text(
            """
            UPDATE event_messages
            SET guests_coming = :guest_count,
                awaiting_guest_count = :awaiting,
                last_reply_message_id = :reply_message_id
            WHERE id = :event_message_id
            """
        )
        session.execute(
            query,
            {
                "guest_count": guest_count,
                "awaiting": False,
                "reply_message_id": reply_message_id,
                "event_message_id": event_message_id,
            },
        )

    def set_followup_date(
        self,
        session,
        event_message_id: int,
        followup_date: date,
        reply_message_id: Optional[str] = None,
    ) -> None:
        query = text(
            """
            UPDATE event_messages
            SET followup_date = :followup_date,
                followup_notification_dismissed = :dismissed,
                last_reply_message_id = :reply_message_id
            WHERE id = :event_message_id
            """
        )
        session.execute(
            query,
            {
                "followup_date": followup_date,
                "dismissed": False,
                "reply_message_id": reply_message_id,
                "event_message_id": event_message_id,
            },
        )

    def update_seen_at(self, session, event_message_id: int, seen_at: datetime) -> None:
        """Keep the latest read receipt; older or repeated receipts are no-ops."""
        query = text(
            """
            UPDATE event_messages
            SET seen_at = CASE
                    WHEN seen_at IS NULL OR seen_at < :seen_at THEN :seen_at
                    ELSE seen_at
                END
            WHERE id = :event_message_id
            """
        )
        session.execute(query, {"seen_at": seen_at, "event_message_id": event_message_id})

    def update_failure(self, session, event_message_id: int, failure_reason: str) -> None:
        query = text(
            """
            UPDATE event_messages
            SET failure_reason = :failure_reason
            WHERE id = :event_message_id
            """
        )
        session.execute(
            query, {"failure_reason": failure_reason, "event_message_id": event_message_id}
        )

    def attach_diagnostic_note(self, session, event_message_id: int, note: str) -> None:
        query = text(
            """
            UPDATE event_messages
            SET diagnostic_note = :note
            WHERE id = :event_message_id
            """
        )
        session.execute(query, {"note": note, "event_message_id": event_message_id})

    # --- organizer-facing operations (own transaction) ---

    def log_invitation(
        self,
        event_id: str,
        contact_id: int,
        message_type: str = "invitation",
        message_round: int = 1,
        provider_message_id: Optional[str] = None,
    ) -> int:
        """
        רישום הזמנה שנשלחה.
        If an open (Pending/NoAnswer) record already exists for the same
        (event, contact, round) it is refreshed instead of duplicated.
        Returns the event_message id.
        """
        with get_session() as session:
            existing = session.execute(
                text(
                    f"""
                    SELECT id
                    FROM event_messages
                    WHERE event_id = :event_id
                      AND contact_id = :contact_id
                      AND message_round = :message_round
                      AND response IN :open_responses
                    ORDER BY id DESC
                    LIMIT 1{_lock_clause(session, True)}
                    """
                ).bindparams(bindparam("open_responses", expanding=True)),
                {
                    "event_id": event_id,
                    "contact_id": contact_id,
                    "message_round": message_round,
                    "open_responses": list(OPEN_RESPONSES),
                },
            ).mappings().first()

            if existing:
                session.execute(
                    text(
                        """
                        UPDATE event_messages
                        SET provider_message_id = COALESCE(:provider_message_id, provider_message_id),
                            message_type = :message_type,
                            failure_reason = NULL
                        WHERE id = :event_message_id
                        """
                    ),
                    {
                        "provider_message_id": provider_message_id,
                        "message_type": message_type,
                        "event_message_id": existing["id"],
                    },
                )
                return existing["id"]

            result = session.execute(
                text(
                    """
                    INSERT INTO event_messages (
                        event_id, contact_id, message_type, message_round,
                        provider_message_id, response, guests_coming,
                        awaiting_guest_count, followup_notification_dismissed,
                        created_at
                    )
                    VALUES (
                        :event_id, :contact_id, :message_type, :message_round,
                        :provider_message_id, :response, 0,
                        :false_flag, :false_flag,
                        :now
                    )
                    RETURNING id
                    """
                ),
                {
                    "event_id": event_id,
                    "contact_id": contact_id,
                    "message_type": message_type,
                    "message_round": message_round,
                    "provider_message_id": provider_message_id,
                    "response": RSVPResponse.PENDING.value,
                    "false_flag": False,
                    "now": now_utc(),
                },
            )
            return result.scalar_one()

    def get_event_message(self, event_message_id: int):
        with get_session() as session:
            result = session.execute(
                text("SELECT * FROM event_messages WHERE id = :event_message_id"),
                {"event_message_id": event_message_id},
            )
            return result.mappings().first()

    def get_response_stats(self, event_id: str) -> dict:
        """Counts per response value and the confirmed guest total for an event."""
        with get_session() as session:
            rows = session.execute(
                text(
                    """
                    SELECT response,
                           COUNT(*) AS total,
                           COALESCE(SUM(guests_coming), 0) AS guests
                    FROM event_messages
                    WHERE event_id = :event_id
                    GROUP BY response
                    """
                ),
                {"event_id": event_id},
            ).mappings().all()

            seen = session.execute(
                text(
                    """
                    SELECT COUNT(*)
                    FROM event_messages
                    WHERE event_id = :event_id AND seen_at IS NOT NULL
                    """
                ),
                {"event_id": event_id},
            ).scalar_one()

            failed = session.execute(
                text(
                    """
                    SELECT COUNT(*)
                    FROM event_messages
                    WHERE event_id = :event_id AND failure_reason IS NOT NULL
                    """
                ),
                {"event_id": event_id},
            ).scalar_one()

        responses = {value.value: 0 for value in RSVPResponse}
        total_guests = 0
        for row in rows:
            responses[row["response"]] = int(row["total"])
            if row["response"] == RSVPResponse.ATTENDING.value:
                total_guests = int(row["guests"])

        return {
            "event_id": event_id,
            "responses": responses,
            "total_messages": sum(responses.values()),
            "total_guests": total_guests,
            "seen": int(seen),
            "failed": int(failed),
        }

    def list_followup_notifications(self, owner_email: str) -> List[dict]:
        query = text(
            """
            SELECT em.id, em.event_id, em.contact_id, em.followup_date, em.created_at,
                   c.display_name AS contact_name,
                   e.event_name, e.owner_email
            FROM event_messages em
            JOIN contacts c ON em.contact_id = c.id
            JOIN events e ON em.event_id = e.id
            WHERE e.owner_email = :owner_email
              AND em.response = :maybe
              AND em.followup_date IS NOT NULL
              AND em.followup_notification_dismissed = :dismissed
            ORDER BY em.followup_date ASC
            """
        )
        with get_session() as session:
            result = session.execute(
                query,
                {
                    "owner_email": owner_email,
                    "maybe": RSVPResponse.MAYBE.value,
                    "dismissed": False,
                },
            )
            return [dict(row) for row in result.mappings().all()]

    def dismiss_followup_notification(self, event_message_id: int) -> bool:
        query = text(
            """
            UPDATE event_messages
            SET followup_notification_dismissed = :dismissed
            WHERE id = :event_message_id
            """
        )
        with get_session() as session:
            result = session.execute(
                query, {"dismissed": True, "event_message_id": event_message_id}
            )
            return (result.rowcount or 0) > 0
