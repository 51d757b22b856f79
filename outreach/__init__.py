"""
📲 WhatsApp Property Outreach Package
-------------------------------------
Contacts store, WAHA transport, Gemini responder and the message-coalescing
autoresponder behind a FastAPI service.
"""

from .config import settings

__all__ = ["settings"]
