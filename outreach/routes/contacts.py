# outreach/routes/contacts.py
"""
📇 Contacts Router
------------------
Admin API behind the contacts UI: list / create / delete contacts, manual
status override, initiate a conversation and trigger an on-demand reply.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, HTTPException, Request
from pydantic import BaseModel

from outreach.autoresponder import ContactNotFound, ContactUnregistered
from outreach.runtime import chat_id_for, get_logger, only_digits
from outreach.schema import ContactStatus, parse_status

log = get_logger("routes.contacts")

router = APIRouter(prefix="/api", tags=["contacts"])


class StatusUpdate(BaseModel):
    status: str


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------
def _state(request: Request, name: str) -> Any:
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialized")
    return value


def _row_id(value: str) -> int:
    try:
        row_id = int(value)
    except (TypeError, ValueError):
        row_id = 0
    if row_id <= 0:
        raise HTTPException(status_code=400, detail="Invalid contact id.")
    return row_id


# -------------------------------------------------------------------
# WhatsApp status
# -------------------------------------------------------------------
@router.get("/status")
async def whatsapp_status(request: Request) -> Dict[str, Any]:
    transport = _state(request, "transport")
    status = await transport.session_status()
    return {
        "whatsappReady": bool(status.get("ready")),
        "qr": status.get("qr"),
        "status": status.get("status"),
        "detail": status.get("detail"),
        "updatedAt": status.get("updatedAt"),
    }


# -------------------------------------------------------------------
# Contacts CRUD
# -------------------------------------------------------------------
@router.get("/contacts")
async def list_contacts(request: Request) -> Dict[str, Any]:
    store = _state(request, "store")
    try:
        contacts = await asyncio.to_thread(store.list_contacts)
    except Exception as e:
        log.error("Failed to load contacts: %s", e)
        raise HTTPException(status_code=500, detail="Failed to load contacts.")
    return {"contacts": [c.to_dict() for c in contacts]}


@router.get("/contacts/schema")
async def contacts_schema(request: Request) -> Dict[str, Any]:
    store = _state(request, "store")
    return {"columns": store.schema()}


@router.post("/contacts", status_code=201)
async def create_contact(request: Request, payload: Any = Body(None)) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Invalid payload.")
    store = _state(request, "store")
    try:
        contact = await asyncio.to_thread(store.create, payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error("Failed to create contact: %s", e)
        raise HTTPException(status_code=500, detail="Failed to create contact.")
    return {"rowid": contact.rowid}


@router.delete("/contacts/{rowid}")
async def delete_contact(rowid: str, request: Request) -> Dict[str, Any]:
    row_id = _row_id(rowid)
    store = _state(request, "store")
    if not await asyncio.to_thread(store.delete, row_id):
        raise HTTPException(status_code=404, detail="Contact not found.")
    return {"deleted": True}


@router.patch("/contacts/{rowid}/status")
async def update_status(rowid: str, update: StatusUpdate, request: Request) -> Dict[str, Any]:
    row_id = _row_id(rowid)
    try:
        status = parse_status(update.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    store = _state(request, "store")
    if not await asyncio.to_thread(store.set_status, row_id, status):
        raise HTTPException(status_code=404, detail="Contact not found.")
    return {"rowid": row_id, "status": status.value}


# -------------------------------------------------------------------
# Conversation actions
# -------------------------------------------------------------------
@router.post("/contacts/{rowid}/initiate")
async def initiate_conversation(rowid: str, request: Request) -> Dict[str, Any]:
    transport = _state(request, "transport")
    if not await transport.is_ready():
        raise HTTPException(status_code=503, detail="WhatsApp client not ready. Scan the QR code to link the session.")

    row_id = _row_id(rowid)
    store = _state(request, "store")
    contact = await asyncio.to_thread(store.get, row_id)
    if contact is None:
        raise HTTPException(status_code=404, detail="Contact not found.")

    number = (contact.clean_contact_number or "").strip()
    if not number:
        raise HTTPException(status_code=400, detail="Contact missing cleanContactNumber.")
    if not only_digits(number):
        raise HTTPException(status_code=400, detail="Contact number is invalid.")

    chat_id = chat_id_for(number)
    initial_message: Optional[str] = getattr(request.app.state, "initial_message", None)
    try:
        registered = await transport.is_registered(chat_id)
        log.info("isRegistered(%s) = %s", chat_id, registered)
        if not registered:
            await asyncio.to_thread(store.set_status, row_id, ContactStatus.UNREGISTERED)
            return {"status": ContactStatus.UNREGISTERED.value}

        if not initial_message:
            raise HTTPException(status_code=500, detail="Initial message is not configured.")
        await transport.send_message(chat_id, initial_message)
        await asyncio.to_thread(store.set_status, row_id, ContactStatus.ACTIVE)
    except HTTPException:
        raise
    except Exception as e:
        log.error("❌ Failed to initiate conversation %s: %s", row_id, e)
        raise HTTPException(status_code=500, detail="Failed to initiate conversation.")
    log.info("🚀 Conversation initiated with contact %s", row_id)
    return {"status": ContactStatus.ACTIVE.value}


@router.post("/contacts/{rowid}/respond")
async def respond_now(rowid: str, request: Request) -> Dict[str, Any]:
    row_id = _row_id(rowid)
    autoresponder = _state(request, "autoresponder")
    try:
        result = await autoresponder.respond_now(row_id)
    except ContactNotFound:
        raise HTTPException(status_code=404, detail="Contact not found.")
    except ContactUnregistered as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        log.error("❌ Manual respond failed for %s: %s", row_id, e)
        raise HTTPException(status_code=500, detail=f"Failed to respond: {e}")
    return result.as_dict()
