# outreach/whatsapp_client.py
"""
📡 WhatsApp Client: WAHA (WhatsApp HTTP API) transport
- Talks to a WAHA bridge over REST (httpx.AsyncClient, X-Api-Key auth)
- Exposes the capability surface the autoresponder needs:
  send text / media, fetch + clean history, typing, registration, reactions
- Normalizes webhook payloads into InboundMessage
- Session lifecycle (QR / ready / failed) is read-only from here
"""

from __future__ import annotations

import asyncio
import base64
import mimetypes
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable
from urllib.parse import quote

import httpx

from outreach.config import settings
from outreach.runtime import get_logger, is_group_chat, iso_now, only_digits

logger = get_logger("whatsapp_client")

TYPING_PRESENCE = "typing"
READY_STATUS = "WORKING"
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp"}


# =========================
# Errors
# =========================


class WhatsAppError(RuntimeError):
    """Transport error carrying HTTP metadata and the response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        endpoint: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.endpoint = endpoint

    def __str__(self) -> str:  # pragma: no cover - string formatting helper
        base = super().__str__()
        if self.body in (None, "", b""):
            return base
        body_repr = str(self.body).strip()
        if not body_repr or body_repr in base:
            return base
        return f"{base} | body={body_repr}"


# =========================
# Message shapes
# =========================


@dataclass
class ChatMessage:
    id: Optional[str]
    from_me: bool
    body: str = ""
    has_media: bool = False
    type: Optional[str] = None
    timestamp: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "ChatMessage":
        data = payload.get("_data") or {}
        return cls(
            id=_message_id(payload.get("id")),
            from_me=bool(payload.get("fromMe")),
            body=payload.get("body") if isinstance(payload.get("body"), str) else "",
            has_media=bool(payload.get("hasMedia")),
            type=payload.get("type") or data.get("type"),
            timestamp=payload.get("timestamp"),
        )


@dataclass
class InboundMessage:
    id: Optional[str]
    chat_id: str
    sender: str
    body: str = ""
    from_me: bool = False
    has_media: bool = False
    type: Optional[str] = None
    timestamp: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def is_group(self) -> bool:
        return is_group_chat(self.chat_id) or is_group_chat(self.sender)


def _message_id(value: Any) -> Optional[str]:
    if isinstance(value, dict):
        return value.get("_serialized") or value.get("id")
    return str(value) if value else None


def parse_webhook_payload(body: Dict[str, Any]) -> Optional[InboundMessage]:
    """Normalize a WAHA ``message`` webhook into InboundMessage (None for other events)."""
    if not isinstance(body, dict):
        return None
    event = str(body.get("event") or "")
    if event not in ("message", "message.any"):
        return None
    payload = body.get("payload") or {}
    if not isinstance(payload, dict):
        return None

    data = payload.get("_data") or {}
    chat_id = str(payload.get("from") or "")
    sender = str(payload.get("participant") or chat_id)
    return InboundMessage(
        id=_message_id(payload.get("id")),
        chat_id=chat_id,
        sender=sender,
        body=payload.get("body") if isinstance(payload.get("body"), str) else "",
        from_me=bool(payload.get("fromMe")),
        has_media=bool(payload.get("hasMedia")),
        type=payload.get("type") or data.get("type"),
        timestamp=payload.get("timestamp"),
        raw=payload,
    )


def build_clean_chatlog(messages: Iterable[ChatMessage]) -> str:
    """Two-party transcript: ``me: ...`` / ``them: ...``, media as ``[media:<type>]``."""
    lines: List[str] = []
    for message in messages or []:
        if message is None:
            continue
        speaker = "me" if message.from_me else "them"
        body = (message.body or "").strip()
        if body:
            lines.append(f"{speaker}: {body}")
        elif message.has_media:
            lines.append(f"{speaker}: [media:{message.type or 'media'}]")
    return "\n".join(lines)


# =========================
# Capability interface
# =========================


@runtime_checkable
class ChatTransport(Protocol):
    async def send_message(self, chat_id: str, text: str) -> Dict[str, Any]: ...

    async def send_media(self, chat_id: str, directory: str) -> bool: ...

    async def fetch_messages(self, chat_id: str, limit: int = 250) -> List[ChatMessage]: ...

    async def fetch_history(self, chat_id: str, limit: int = 250) -> str: ...

    async def is_typing(self, chat_id: str) -> bool: ...

    async def is_registered(self, chat_id: str) -> bool: ...

    async def react_to(self, message_id: str, emoji: str) -> None: ...

    async def mark_seen(self, chat_id: str, message_ids: Optional[List[str]] = None) -> None: ...

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]: ...


# =========================
# Small helpers
# =========================


def _extract_error_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except Exception:
        return (resp.text or "").strip()


def _summarize_error_body(body: Any) -> str:
    if isinstance(body, dict):
        for key in ("message", "error", "detail"):
            value = body.get(key)
            if value:
                return str(value)
    return str(body or "")


def _media_files(directory: str) -> List[str]:
    if not os.path.isdir(directory):
        raise WhatsAppError(f"Media directory not found: {directory}")
    names = [
        name
        for name in os.listdir(directory)
        if not name.startswith(".") and os.path.isfile(os.path.join(directory, name))
    ]
    return [os.path.join(directory, name) for name in sorted(names)]


def contact_number(contact: Optional[Dict[str, Any]]) -> str:
    """Digits-only phone number from a WAHA contact record."""
    if not contact:
        return ""
    number = contact.get("number") or contact.get("pn") or ""
    if not number:
        contact_id = contact.get("id")
        if isinstance(contact_id, dict):
            number = contact_id.get("user") or ""
        elif isinstance(contact_id, str) and contact_id.endswith("@c.us"):
            number = contact_id.split("@", 1)[0]
    return only_digits(number)


def contact_info_for_prompt(contact: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not contact:
        return None
    return {
        "number": contact_number(contact) or None,
        "name": contact.get("name") or None,
        "pushname": contact.get("pushname") or contact.get("pushName") or None,
        "shortName": contact.get("shortName") or None,
        "isMyContact": bool(contact.get("isMyContact")),
        "isBusiness": bool(contact.get("isBusiness")),
        "isWAContact": bool(contact.get("isWAContact", True)),
    }


# =========================
# WAHA client
# =========================


class WhatsAppClient:
    """Async WAHA REST client implementing ChatTransport."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        session: Optional[str] = None,
        api_key: Optional[str] = None,
        *,
        timeout: Optional[float] = None,
        send_delay: Optional[float] = None,
        media_delay: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        cfg = settings()
        self.base_url = (base_url or cfg.WAHA_BASE_URL).rstrip("/")
        self.session = session or cfg.WAHA_SESSION
        self.send_delay = cfg.WHATSAPP_SEND_DELAY_SEC if send_delay is None else send_delay
        self.media_delay = cfg.WHATSAPP_MEDIA_DELAY_SEC if media_delay is None else media_delay
        headers = {"Accept": "application/json"}
        key = api_key if api_key is not None else cfg.WAHA_API_KEY
        if key:
            headers["X-Api-Key"] = key
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout or cfg.WAHA_TIMEOUT,
            transport=transport,
        )
        self._presence_subscribed: set[str] = set()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -------------------------- HTTP core
    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise WhatsAppError(f"WAHA request failed: {exc}", endpoint=path) from exc

        if resp.is_error:
            body = _extract_error_body(resp)
            logger.error("WAHA %s %s → %s: %s", method, path, resp.status_code, body)
            summary = _summarize_error_body(body)
            message = f"WAHA HTTP {resp.status_code}"
            if summary:
                message = f"{message}: {summary}"
            raise WhatsAppError(message, status_code=resp.status_code, body=body, endpoint=path)

        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}

    def _chat_path(self, chat_id: str, suffix: str) -> str:
        return f"/api/{quote(self.session)}/chats/{quote(chat_id, safe='@')}/{suffix}"

    # -------------------------- sending
    async def start_typing(self, chat_id: str) -> None:
        await self._request("POST", "/api/startTyping", json={"session": self.session, "chatId": chat_id})

    async def send_message(self, chat_id: str, text: str) -> Dict[str, Any]:
        await asyncio.sleep(self.send_delay)
        try:
            await self.start_typing(chat_id)
        except WhatsAppError as exc:
            logger.warning("⚠️ Typing indicator failed for %s: %s", chat_id, exc)
        payload = {"session": self.session, "chatId": chat_id, "text": text}
        result = await self._request("POST", "/api/sendText", json=payload)
        logger.info("📤 Sent text → %s (%d chars)", chat_id, len(text or ""))
        return result

    async def send_media(self, chat_id: str, directory: str) -> bool:
        files = _media_files(directory)
        if not files:
            logger.warning("⚠️ No media files in %s", directory)
            return False

        for path in files:
            filename = os.path.basename(path)
            mimetype = mimetypes.guess_type(filename)[0] or "application/octet-stream"
            with open(path, "rb") as fh:
                data = base64.b64encode(fh.read()).decode("ascii")
            endpoint = "/api/sendImage" if os.path.splitext(filename)[1].lower() in IMAGE_EXTENSIONS else "/api/sendFile"
            await self._request(
                "POST",
                endpoint,
                json={
                    "session": self.session,
                    "chatId": chat_id,
                    "file": {"mimetype": mimetype, "filename": filename, "data": data},
                },
            )
            await asyncio.sleep(self.media_delay)
        logger.info("🖼️ Sent %d media files → %s", len(files), chat_id)
        return True

    async def react_to(self, message_id: str, emoji: str) -> None:
        await self._request(
            "PUT",
            "/api/reaction",
            json={"session": self.session, "messageId": message_id, "reaction": emoji},
        )

    async def mark_seen(self, chat_id: str, message_ids: Optional[List[str]] = None) -> None:
        payload: Dict[str, Any] = {"session": self.session, "chatId": chat_id}
        if message_ids:
            payload["messageIds"] = list(message_ids)
        await self._request("POST", "/api/sendSeen", json=payload)

    # -------------------------- reading
    async def fetch_messages(self, chat_id: str, limit: int = 250) -> List[ChatMessage]:
        data = await self._request(
            "GET",
            self._chat_path(chat_id, "messages"),
            params={"limit": limit, "downloadMedia": "false"},
        )
        items = data if isinstance(data, list) else []
        messages = [ChatMessage.from_payload(item) for item in items if isinstance(item, dict)]
        # WAHA returns newest first
        messages.sort(key=lambda m: m.timestamp or 0)
        return messages

    async def fetch_history(self, chat_id: str, limit: int = 250) -> str:
        return build_clean_chatlog(await self.fetch_messages(chat_id, limit))

    async def is_typing(self, chat_id: str) -> bool:
        path = f"/api/{quote(self.session)}/presence/{quote(chat_id, safe='@')}"
        if chat_id not in self._presence_subscribed:
            await self._request("POST", f"{path}/subscribe")
            self._presence_subscribed.add(chat_id)
        data = await self._request("GET", path)
        presences = (data or {}).get("presences") or []
        return any(
            str(p.get("lastKnownPresence") or "").lower() == TYPING_PRESENCE
            for p in presences
            if isinstance(p, dict)
        )

    async def is_registered(self, chat_id: str) -> bool:
        phone = only_digits(chat_id.split("@", 1)[0])
        data = await self._request(
            "GET",
            "/api/contacts/check-exists",
            params={"phone": phone, "session": self.session},
        )
        return bool((data or {}).get("numberExists"))

    async def get_contact(self, contact_id: str) -> Optional[Dict[str, Any]]:
        data = await self._request(
            "GET",
            "/api/contacts",
            params={"contactId": contact_id, "session": self.session},
        )
        return data if isinstance(data, dict) and data else None

    # -------------------------- session lifecycle
    async def session_status(self) -> Dict[str, Any]:
        try:
            data = await self._request("GET", f"/api/sessions/{quote(self.session)}")
        except WhatsAppError as exc:
            return {
                "ready": False,
                "status": "unreachable",
                "detail": str(exc),
                "qr": None,
                "updatedAt": iso_now(),
            }

        status = str((data or {}).get("status") or "unknown")
        qr = None
        if status == "SCAN_QR_CODE":
            try:
                qr_data = await self._request("GET", f"/api/{quote(self.session)}/auth/qr", params={"format": "raw"})
                qr = (qr_data or {}).get("value")
            except WhatsAppError as exc:
                logger.warning("⚠️ QR fetch failed: %s", exc)
        me = (data or {}).get("me") or {}
        return {
            "ready": status == READY_STATUS,
            "status": status.lower(),
            "detail": me.get("pushName") or me.get("id") or "",
            "qr": qr,
            "updatedAt": iso_now(),
        }

    async def is_ready(self) -> bool:
        return bool((await self.session_status()).get("ready"))
