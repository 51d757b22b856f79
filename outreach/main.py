"""
WhatsApp Property Outreach: FastAPI main
- Contacts admin API + WAHA webhook receiver
- Startup loads the property context (fatal when invalid), prepares the
  contacts table and wires the WhatsApp client, Gemini responder and
  autoresponder onto app.state
- Shutdown cancels pending debounce timers and closes HTTP clients
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI

from outreach.ai.responder import LanguageResponder
from outreach.autoresponder import AutoResponder
from outreach.config import settings
from outreach.datastore import ContactStore
from outreach.inbound_webhook import router as inbound_router
from outreach.property_context import PropertyContext, load_property_context
from outreach.routes.contacts import router as contacts_router
from outreach.runtime import get_logger
from outreach.whatsapp_client import WhatsAppClient

logger = get_logger("main")

VERSION = "1.0.0"


def create_app(
    *,
    store: Optional[ContactStore] = None,
    transport: Any = None,
    responder: Any = None,
    context: Optional[PropertyContext] = None,
) -> FastAPI:
    """Build the app. Collaborators passed in are used as-is and not closed on shutdown."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        property_context = context or load_property_context()
        contact_store = store or ContactStore()
        contact_store.init_db()
        owned = []
        chat = transport
        if chat is None:
            chat = WhatsAppClient()
            owned.append(chat)
        model = responder
        if model is None:
            model = LanguageResponder()
            owned.append(model)

        app.state.store = contact_store
        app.state.transport = chat
        app.state.property_context = property_context
        app.state.initial_message = property_context.initial_message
        app.state.autoresponder = AutoResponder(contact_store, chat, model, property_context)
        logger.info("🚀 Outreach engine started (WAHA=%s)", settings().WAHA_BASE_URL)
        try:
            yield
        finally:
            await app.state.autoresponder.shutdown()
            for client in owned:
                await client.aclose()
            if store is None:
                contact_store.dispose()
            logger.info("👋 Outreach engine stopped")

    app = FastAPI(title="WhatsApp Property Outreach", version=VERSION, lifespan=lifespan)
    app.include_router(contacts_router)  # → /api/...
    app.include_router(inbound_router)  # → /webhooks/whatsapp

    @app.get("/ping")
    async def ping():
        return {"ok": True, "pong": True}

    @app.get("/health")
    async def health():
        store_ = getattr(app.state, "store", None)
        return {
            "ok": True,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "database": store_.health() if store_ is not None else {"ok": False, "error": "not initialized"},
            "pending_chats": len(app.state.autoresponder.pending_chats()) if hasattr(app.state, "autoresponder") else 0,
            "version": VERSION,
        }

    return app


app = create_app()


def run() -> None:
    import uvicorn

    uvicorn.run("outreach.main:app", host="0.0.0.0", port=settings().PORT)


if __name__ == "__main__":
    run()
