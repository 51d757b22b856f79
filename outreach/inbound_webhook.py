from __future__ import annotations

from collections import OrderedDict
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Header, HTTPException, Query, Request

from outreach.config import settings
from outreach.runtime import get_logger
from outreach.whatsapp_client import parse_webhook_payload

logger = get_logger("inbound_webhook")

router = APIRouter()


# === AUTHENTICATION ===
def _is_authorized(header_token: Optional[str], query_token: Optional[str]) -> bool:
    """Check if request is authorized via header or query token."""
    token = settings().WEBHOOK_TOKEN
    if not token:
        return True  # auth disabled
    return (header_token == token) or (query_token == token)


# === IDEMPOTENCY STORE ===
class IdempotencyStore:
    """In-memory message-id deduplication (WAHA retries webhooks on timeouts)."""

    def __init__(self, max_size: int = 10000) -> None:
        self._mem: "OrderedDict[str, None]" = OrderedDict()
        self._max_mem_size = max_size

    def seen(self, msg_id: Optional[str]) -> bool:
        """Check if message ID has been seen before, mark as seen if not."""
        if not msg_id:
            return False
        key = f"inbound:msg:{msg_id}"
        if key in self._mem:
            return True
        # Drop the oldest 20% when full
        if len(self._mem) >= self._max_mem_size:
            for _ in range(max(1, self._max_mem_size // 5)):
                self._mem.popitem(last=False)
        self._mem[key] = None
        return False

    def __len__(self) -> int:
        return len(self._mem)


IDEM = IdempotencyStore()


@router.post("/webhooks/whatsapp")
async def whatsapp_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_webhook_token: Optional[str] = Header(None),
    token: Optional[str] = Query(None),
) -> Dict[str, Any]:
    """Receive WAHA events and hand new inbound messages to the autoresponder."""
    if not _is_authorized(x_webhook_token, token):
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        body = await request.json()
    except ValueError:
        raise HTTPException(status_code=422, detail="Invalid payload")

    message = parse_webhook_payload(body if isinstance(body, dict) else {})
    if message is None:
        return {"ok": True, "ignored": True, "event": (body or {}).get("event") if isinstance(body, dict) else None}
    if message.from_me:
        return {"ok": True, "ignored": True, "reason": "from_me"}
    if IDEM.seen(message.id):
        logger.info("🔁 Duplicate webhook for message %s", message.id)
        return {"ok": True, "duplicate": True}

    autoresponder = getattr(request.app.state, "autoresponder", None)
    if autoresponder is None:
        raise HTTPException(status_code=503, detail="Autoresponder not ready")

    logger.info("📨 Inbound message %s from %s", message.id, message.chat_id)
    background_tasks.add_task(autoresponder.handle_incoming, message)
    return {"ok": True, "queued": True, "id": message.id}
