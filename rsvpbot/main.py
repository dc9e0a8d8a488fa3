import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rsvpbot.db_schema import SchemaMissingError, ensure_schema
from rsvpbot.routers import event_messages, followups, webhook

logger = logging.getLogger(__name__)

try:
    ensure_schema()
except SchemaMissingError as exc:
    raise RuntimeError(str(exc)) from exc
except Exception as exc:
    raise RuntimeError(f"Failed to validate database schema: {exc}") from exc

app = FastAPI(title="WhatsApp RSVP Bot")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(webhook.router)
app.include_router(event_messages.router)
app.include_router(followups.router)


@app.get("/health")
def health():
    return {"ok": True}
