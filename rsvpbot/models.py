"""SQLAlchemy ORM models for the RSVP tables.

Repositories talk to these tables with raw SQL; the models are the schema
definition used by ``db_schema.ensure_schema``.
"""
from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    Time,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# SQLite only auto-increments INTEGER PRIMARY KEY columns.
_Id = BigInteger().with_variant(Integer(), "sqlite")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Event(Base):
    __tablename__ = "events"

    id = Column(String, primary_key=True)
    event_name = Column(String, nullable=False)
    event_type = Column(String)
    event_date = Column(Date)
    event_time = Column(Time)
    venue_name = Column(String)
    venue_address = Column(String)
    celebrator1_name = Column(String)
    celebrator2_name = Column(String)
    owner_email = Column(String, nullable=False)
    image_url = Column(String)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Contact(Base):
    __tablename__ = "contacts"

    id = Column(_Id, primary_key=True, autoincrement=True)
    display_name = Column(String)
    canonical_form = Column(String)
    phone_number = Column(String, nullable=False)
    owner_email = Column(String, nullable=False)
    contact_source = Column(String)
    tags = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (Index("idx_contacts_phone_number", "phone_number"),)


class EventContact(Base):
    __tablename__ = "event_contacts"

    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"), primary_key=True)
    contact_id = Column(_Id, ForeignKey("contacts.id", ondelete="CASCADE"), primary_key=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class EventMessage(Base):
    __tablename__ = "event_messages"

    id = Column(_Id, primary_key=True, autoincrement=True)
    event_id = Column(String, ForeignKey("events.id", ondelete="CASCADE"), nullable=False)
    contact_id = Column(_Id, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False)
    message_type = Column(String, nullable=False, default="invitation")
    message_round = Column(Integer, nullable=False, default=1)
    provider_message_id = Column(String)
    response = Column(String, nullable=False, default="Pending")
    guests_coming = Column(Integer, nullable=False, default=0)
    awaiting_guest_count = Column(Boolean, nullable=False, default=False)
    response_time = Column(DateTime(timezone=True))
    seen_at = Column(DateTime(timezone=True))
    failure_reason = Column(Text)
    followup_date = Column(Date)
    followup_notification_dismissed = Column(Boolean, nullable=False, default=False)
    diagnostic_note = Column(Text)
    last_reply_message_id = Column(String)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("idx_event_messages_provider_message_id", "provider_message_id"),
        Index("idx_event_messages_event_contact", "event_id", "contact_id"),
        Index("idx_event_messages_contact_response", "contact_id", "response"),
    )
