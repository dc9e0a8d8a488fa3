import os
import sys
import tempfile
from datetime import datetime, timezone
from pathlib import Path

import pytest


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# File-backed SQLite: the webhook dispatcher touches the database from worker threads.
_DB_DIR = tempfile.mkdtemp(prefix="rsvpbot-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite+pysqlite:///{_DB_DIR}/rsvpbot.db")

# Set required 360dialog env vars for tests
os.environ.setdefault("D360_API_KEY", "test-key")
os.environ.setdefault("D360_BASE_URL", "https://waba.test.local")
os.environ.setdefault("DEFAULT_COUNTRY_CODE", "972")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def db():
    """Fresh RSVP tables for one test."""
    from rsvpbot.appdb import engine
    from rsvpbot.models import Base

    Base.metadata.create_all(engine)
    yield engine
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


class Seeder:
    """Small helpers to insert rows through the ORM models."""

    def __init__(self):
        from rsvpbot.appdb import SessionLocal

        self._session_factory = SessionLocal

    def _add(self, obj):
        session = self._session_factory()
        try:
            session.add(obj)
            session.commit()
            session.refresh(obj)
            return obj
        finally:
            session.close()

    def event(self, event_id="EVT-1", event_date=None, **fields):
        from rsvpbot.models import Event

        fields.setdefault("event_name", "Wedding")
        fields.setdefault("owner_email", "owner@example.com")
        return self._add(Event(id=event_id, event_date=event_date, **fields)).id

    def contact(self, phone_number, display_name="Guest", **fields):
        from rsvpbot.models import Contact

        fields.setdefault("owner_email", "owner@example.com")
        return self._add(
            Contact(phone_number=phone_number, display_name=display_name, **fields)
        ).id

    def link(self, event_id, contact_id, created_at=None):
        from rsvpbot.models import EventContact

        self._add(
            EventContact(
                event_id=event_id,
                contact_id=contact_id,
                created_at=created_at or datetime.now(timezone.utc),
            )
        )

    def invitation(self, event_id, contact_id, **fields):
        from rsvpbot.models import EventMessage

        fields.setdefault("message_type", "invitation")
        fields.setdefault("response", "Pending")
        return self._add(EventMessage(event_id=event_id, contact_id=contact_id, **fields)).id


@pytest.fixture
def seed(db):
    return Seeder()


@pytest.fixture
def outbox(monkeypatch):
    """Capture outbound 360dialog calls instead of hitting the network."""
    from rsvpbot import whatsapp_client

    sent = {"text": [], "buttons": [], "read": []}

    def fake_send_text(to, body):
        sent["text"].append((to, body))
        return {"messages": [{"id": f"wamid.text.{len(sent['text'])}"}]}

    def fake_send_buttons(to, body, buttons):
        sent["buttons"].append((to, body, buttons))
        return {"messages": [{"id": f"wamid.buttons.{len(sent['buttons'])}"}]}

    def fake_mark_as_read(message_id):
        sent["read"].append(message_id)
        return {"success": True}

    monkeypatch.setattr(whatsapp_client, "send_text", fake_send_text)
    monkeypatch.setattr(whatsapp_client, "send_buttons", fake_send_buttons)
    monkeypatch.setattr(whatsapp_client, "mark_as_read", fake_mark_as_read)
    return sent
