"""Utilities to ensure the RSVP database schema exists."""

from __future__ import annotations

import logging
from typing import Iterable

from sqlalchemy import inspect
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError

from rsvpbot.appdb import DATABASE_URL, engine
from rsvpbot.models import Base

logger = logging.getLogger(__name__)

REQUIRED_TABLES = ("events", "contacts", "event_contacts", "event_messages")

# Columns added to event_messages after the first deployments. Older databases
# get them through ALTER TABLE; fresh ones already have them from create_all.
LATE_EVENT_MESSAGE_COLUMNS: dict[str, str] = {
    "provider_message_id": "VARCHAR",
    "awaiting_guest_count": "BOOLEAN NOT NULL DEFAULT FALSE",
    "seen_at": "TIMESTAMP WITH TIME ZONE",
    "failure_reason": "TEXT",
    "followup_date": "DATE",
    "followup_notification_dismissed": "BOOLEAN NOT NULL DEFAULT FALSE",
    "diagnostic_note": "TEXT",
    "last_reply_message_id": "VARCHAR",
}


class SchemaMissingError(RuntimeError):
    """Raised when a required database table is missing."""


def database_label() -> str:
    """Return a safe, credential-free label for the configured database."""

    url = make_url(DATABASE_URL)
    host = url.host or "localhost"
    name = url.database or ""
    return f"{host}/{name}" if name else host


def _missing_tables() -> list[str]:
    existing = set(inspect(engine).get_table_names())
    return [name for name in REQUIRED_TABLES if name not in existing]


def _apply_late_columns() -> None:
    """Add event_messages columns that older databases do not have yet."""

    existing = {col["name"] for col in inspect(engine).get_columns("event_messages")}
    statements: Iterable[str] = (
        f"ALTER TABLE event_messages ADD COLUMN {name} {ddl}"
        for name, ddl in LATE_EVENT_MESSAGE_COLUMNS.items()
        if name not in existing
    )

    for stmt in statements:
        logger.info("Applying column migration: %s", stmt)
        # One transaction per statement: a failed ALTER must not poison the rest on Postgres.
        with engine.begin() as conn:
            try:
                conn.exec_driver_sql(stmt)
            except SQLAlchemyError as e:
                if "already exists" in str(e).lower() or "duplicate" in str(e).lower():
                    logger.info("Skipping statement (already applied): %s", stmt[:60])
                else:
                    raise


def ensure_schema() -> None:
    """Ensure the RSVP tables, late-added columns and indexes are present.

    Missing tables are created from the ORM metadata. If they are still
    missing afterwards, raise :class:`SchemaMissingError` so the app fails
    early with a clear message.
    """

    missing = _missing_tables()
    if missing:
        logger.info("Creating missing tables: %s", ", ".join(missing))
        Base.metadata.create_all(engine)
        missing = _missing_tables()

    if missing:
        raise SchemaMissingError(
            f"DB schema missing {', '.join(missing)}; run migrations for {database_label()}"
        )

    _apply_late_columns()
