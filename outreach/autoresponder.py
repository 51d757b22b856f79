# outreach/autoresponder.py
"""
Message-coalescing autoresponder.

Flow summary
------------
Admission:
  - Inbound WhatsApp messages from active contacts are appended to a per-chat
    inbox; self-sent, group and unknown-sender messages are dropped silently.

Debounce:
  - Each arrival (re)arms a quiet-window timer for its chat. Arrivals during a
    running drain only extend the buffer.

Drain:
  - Wait out live typing (bounded), take the whole buffer as one batch, fetch
    the clean transcript and ask the language model for one Action.
  - reply -> send text / media and continue with the next batch.
  - ack   -> react or mark seen and stop.
  - pause -> mark the contact paused and stop. Any exception is a pause.
  - Leftover buffer after a drain re-arms a fresh quiet window.

The manual "respond now" path runs the same batch primitive once over the
inbound messages that arrived after our last outbound message.

Shutdown cancels pending timers and waits for running drains to finish their
current batch before the transport and model clients are closed.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional

from outreach.ai.actions import ACK_THUMBS_UP, THUMBS_UP_EMOJI, Action
from outreach.config import settings
from outreach.runtime import chat_id_for, get_logger, is_linked_device_id, only_digits
from outreach.schema import ContactStatus, is_active_status, normalize_status
from outreach.whatsapp_client import (
    ChatMessage,
    ChatTransport,
    InboundMessage,
    contact_info_for_prompt,
    contact_number,
)

logger = get_logger(__name__)

TEXT_MESSAGE_TYPES = {"chat", "text"}


class ContactNotFound(LookupError):
    pass


class ContactUnregistered(RuntimeError):
    pass


# ---------------------------------------------------------------------------
# Inbox state
# ---------------------------------------------------------------------------
@dataclass
class PendingMessage:
    content: str
    message_id: Optional[str] = None


@dataclass
class InboxEntry:
    chat_id: str
    contact_rowid: int
    buffer: List[PendingMessage] = field(default_factory=list)
    contact_info: Optional[Dict[str, Any]] = None
    processing: bool = False
    timer: Optional[asyncio.Task] = None
    # task running the drain loop; cleared when the drain exits
    task: Optional[asyncio.Task] = None

    def cancel_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None


class InboxRegistry:
    """chat id -> InboxEntry. Owned by one AutoResponder."""

    def __init__(self) -> None:
        self._entries: Dict[str, InboxEntry] = {}

    def get(self, chat_id: str) -> Optional[InboxEntry]:
        return self._entries.get(chat_id)

    def for_contact(self, contact_rowid: int) -> Optional[InboxEntry]:
        return next((e for e in self._entries.values() if e.contact_rowid == contact_rowid), None)

    def create(self, chat_id: str, contact_rowid: int, contact_info: Optional[Dict[str, Any]] = None) -> InboxEntry:
        entry = InboxEntry(chat_id=chat_id, contact_rowid=contact_rowid, contact_info=contact_info)
        self._entries[chat_id] = entry
        return entry

    def discard(self, entry: InboxEntry) -> None:
        if self._entries.get(entry.chat_id) is entry:
            del self._entries[entry.chat_id]

    def __contains__(self, chat_id: object) -> bool:
        return chat_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[InboxEntry]:
        return iter(list(self._entries.values()))

    def clear(self) -> None:
        for entry in self:
            entry.cancel_timer()
        self._entries.clear()


@dataclass
class RespondResult:
    responded: int = 0
    paused: bool = False
    acked: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {"responded": self.responded, "paused": self.paused}


def message_content(body: Optional[str], has_media: bool, message_type: Optional[str]) -> str:
    """Trimmed body, else a placeholder for media / call events, else ''."""
    text = (body or "").strip()
    if text:
        return text
    if has_media or (message_type and message_type not in TEXT_MESSAGE_TYPES):
        return f"User sent media: {message_type or 'media'}"
    return ""


def unreplied_messages(messages: List[ChatMessage]) -> List[PendingMessage]:
    """Inbound messages after the most recent outbound one, oldest first."""
    pending: List[PendingMessage] = []
    for message in messages:
        if message.from_me:
            pending = []
            continue
        content = message_content(message.body, message.has_media, message.type)
        if content:
            pending.append(PendingMessage(content=content, message_id=message.id))
    return pending


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------
class AutoResponder:
    def __init__(
        self,
        store,
        transport: ChatTransport,
        responder,
        context: Any,
        *,
        registry: Optional[InboxRegistry] = None,
        image_directory: Optional[str] = None,
        quiet_window: Optional[float] = None,
        typing_poll: Optional[float] = None,
        typing_wait: Optional[float] = None,
        history_limit: Optional[int] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        cfg = settings()
        self.store = store
        self.transport = transport
        self.responder = responder
        self.context = context.as_prompt_dict() if hasattr(context, "as_prompt_dict") else dict(context or {})
        self.registry = registry if registry is not None else InboxRegistry()
        self.image_directory = image_directory or cfg.IMAGE_DIRECTORY
        self.quiet_window = cfg.QUIET_WINDOW_SEC if quiet_window is None else quiet_window
        self.typing_poll = cfg.TYPING_POLL_SEC if typing_poll is None else typing_poll
        self.typing_wait = cfg.TYPING_WAIT_SEC if typing_wait is None else typing_wait
        self.history_limit = history_limit or cfg.HISTORY_LIMIT
        self._sleep = sleep
        self._clock = clock
        self._closing = False

    # ------------------------------------------------------------------ admission
    async def handle_incoming(self, message: InboundMessage) -> None:
        if message is None or message.from_me:
            return
        if message.is_group:
            return

        sender_number = await self._resolve_sender_number(message)
        if not sender_number:
            logger.warning("Unable to resolve sender number for %s; skipping.", message.sender)
            return

        contact = None
        try:
            contact = await asyncio.to_thread(self.store.find_by_normalized_number, sender_number)
            if contact is None:
                logger.info("No contact for %s; skipping.", sender_number)
                return
            if not is_active_status(contact.conversation_started):
                logger.info("Contact %s is %s; skipping.", contact.rowid, contact.conversation_started)
                return

            content = message_content(message.body, message.has_media, message.type)
            if not content:
                logger.warning("Empty message content from %s; skipping.", message.chat_id)
                return

            chat_id = message.chat_id
            if not chat_id:
                logger.warning("Missing chat id; skipping.")
                return

            known = self.registry.get(chat_id)
            contact_info = None
            if known is None or known.contact_info is None:
                contact_info = await self._resolve_contact_info(message.sender)

            # no awaits from here on: get-or-create and append are atomic per chat
            entry = self.registry.get(chat_id)
            pending = PendingMessage(content=content, message_id=message.id)
            if entry is not None:
                entry.buffer.append(pending)
                if entry.contact_info is None and contact_info:
                    entry.contact_info = contact_info
                if not entry.processing:
                    self._arm_timer(entry)
                logger.info("📥 Buffered message for in-flight chat %s (%d pending)", chat_id, len(entry.buffer))
                return

            entry = self.registry.create(chat_id, contact.rowid, contact_info)
            entry.buffer.append(pending)
            self._arm_timer(entry)
            logger.info("📥 New inbox for chat %s (contact %s)", chat_id, contact.rowid)
        except Exception:
            logger.exception("Autoresponder admission failed")
            if contact is not None:
                await self._pause(contact.rowid, "admission_error")

    async def _resolve_sender_number(self, message: InboundMessage) -> str:
        sender = message.sender or message.chat_id
        if sender and not is_linked_device_id(sender):
            return only_digits(sender.split("@", 1)[0])
        try:
            return contact_number(await self.transport.get_contact(sender))
        except Exception as exc:
            logger.error("Failed to resolve sender number for %s: %s", sender, exc)
            return ""

    async def _resolve_contact_info(self, contact_id: str) -> Optional[Dict[str, Any]]:
        try:
            return contact_info_for_prompt(await self.transport.get_contact(contact_id))
        except Exception as exc:
            logger.warning("Failed to load contact info for %s: %s", contact_id, exc)
            return None

    # ------------------------------------------------------------------ debounce
    def _arm_timer(self, entry: InboxEntry) -> None:
        entry.cancel_timer()
        if self._closing:
            return
        entry.timer = asyncio.get_running_loop().create_task(self._drain_after_quiet_window(entry))

    async def _drain_after_quiet_window(self, entry: InboxEntry) -> None:
        await self._sleep(self.quiet_window)
        await self.process_chat_queue(entry)

    # ------------------------------------------------------------------ drain
    async def process_chat_queue(self, entry: InboxEntry) -> None:
        if entry.processing:
            return
        entry.processing = True
        entry.timer = None
        entry.task = asyncio.current_task()
        result = RespondResult()
        try:
            while entry.buffer and not self._closing:
                await self._wait_while_typing(entry.chat_id)
                batch = entry.buffer[:]
                del entry.buffer[:len(batch)]
                if not await self.drain_batch(entry, batch, result):
                    break
        except Exception:
            logger.exception("Autoresponder drain failed for %s", entry.chat_id)
            await self._pause(entry.contact_rowid, "drain_error")
        finally:
            entry.processing = False
            entry.task = None
            if self._closing:
                if entry.buffer:
                    logger.warning("Shutting down with %d unprocessed message(s) for %s", len(entry.buffer), entry.chat_id)
                self.registry.discard(entry)
            elif entry.buffer:
                self._arm_timer(entry)
            else:
                self.registry.discard(entry)

    async def _wait_while_typing(self, chat_id: str) -> None:
        try:
            start = self._clock()
            typing = await self.transport.is_typing(chat_id)
            while typing and self._clock() - start < self.typing_wait:
                logger.info("⌨️ User is typing in %s; waiting %.0fs before checking again.", chat_id, self.typing_poll)
                await self._sleep(self.typing_poll)
                typing = await self.transport.is_typing(chat_id)
            if typing:
                logger.info("Typing wait exceeded %.0fs for %s; proceeding.", self.typing_wait, chat_id)
        except Exception as exc:
            logger.warning("Failed to check typing state for %s: %s", chat_id, exc)

    async def _fetch_history(self, chat_id: str) -> str:
        try:
            return await self.transport.fetch_history(chat_id, self.history_limit)
        except Exception as exc:
            logger.warning("History fetch failed for %s: %s", chat_id, exc)
            return ""

    async def drain_batch(self, entry: InboxEntry, batch: List[PendingMessage], result: RespondResult) -> bool:
        """One model call for ``batch``. Returns True when the drain should continue."""
        content = "\n".join(m.content for m in batch if m.content)
        if not content:
            return True
        try:
            history = await self._fetch_history(entry.chat_id)
            logger.info("🧠 Sending %d message(s) to LLM for %s: %s", len(batch), entry.chat_id, content[:160])
            action = await self.responder.generate(self.context, content, history, entry.contact_info)
            return await self.apply_action(action, entry, batch, result)
        except Exception:
            logger.exception("Autoresponder failed for %s; pausing contact %s", entry.chat_id, entry.contact_rowid)
            await self._pause(entry.contact_rowid, "exception")
            result.paused = True
            return False

    async def apply_action(
        self,
        action: Action,
        entry: InboxEntry,
        batch: List[PendingMessage],
        result: RespondResult,
    ) -> bool:
        if action.is_reply:
            if action.text:
                await self.transport.send_message(entry.chat_id, action.text)
            if action.include_media:
                await self.transport.send_media(entry.chat_id, self.image_directory)
            if action.sends_anything:
                result.responded += 1
            logger.info("✅ Reply handled for %s (text=%s, media=%s)", entry.chat_id, bool(action.text), action.include_media)
            return True

        if action.is_ack:
            message_id = next((m.message_id for m in reversed(batch) if m.message_id), None)
            if action.ack == ACK_THUMBS_UP and message_id:
                await self.transport.react_to(message_id, THUMBS_UP_EMOJI)
            else:
                ids = [m.message_id for m in batch if m.message_id]
                await self.transport.mark_seen(entry.chat_id, ids or None)
            result.acked = action.ack
            logger.info("👍 Acknowledged %s (%s)", entry.chat_id, action.ack)
            return False

        logger.warning("⏸️ Pausing conversation %s (%s)", entry.chat_id, action.reason)
        await self._pause(entry.contact_rowid, action.reason or "pause")
        result.paused = True
        return False

    async def _pause(self, rowid: int, reason: str) -> None:
        try:
            await asyncio.to_thread(self.store.set_status, rowid, ContactStatus.PAUSED)
            logger.info("⏸️ Contact %s paused (%s)", rowid, reason)
        except Exception as exc:
            logger.error("Failed to pause contact %s: %s", rowid, exc)

    # ------------------------------------------------------------------ manual
    async def respond_now(self, rowid: int) -> RespondResult:
        contact = await asyncio.to_thread(self.store.get, rowid)
        if contact is None:
            raise ContactNotFound(f"Contact {rowid} not found.")
        if normalize_status(contact.conversation_started) is ContactStatus.UNREGISTERED:
            raise ContactUnregistered(f"Contact {rowid} is not registered on WhatsApp.")
        chat_id = chat_id_for(contact.clean_contact_number)
        if not chat_id:
            raise ValueError("Contact number is invalid.")

        # inbound chats are keyed by the transport's chat id, which can differ
        # from the stored number when the contact was matched by suffix
        known = self.registry.get(chat_id) or self.registry.for_contact(contact.rowid)
        if known is not None:
            chat_id = known.chat_id
            if known.processing:
                logger.info("Chat %s is already being drained; skipping manual respond.", chat_id)
                return RespondResult()

        messages = await self.transport.fetch_messages(chat_id, self.history_limit)
        batch = unreplied_messages(messages)
        result = RespondResult()
        if not batch:
            return result
        contact_info = None
        if known is None or known.contact_info is None:
            contact_info = await self._resolve_contact_info(chat_id)

        entry = self.registry.get(chat_id)
        if entry is not None and entry.processing:
            logger.info("Chat %s started draining; skipping manual respond.", chat_id)
            return result
        if entry is None:
            entry = self.registry.create(chat_id, contact.rowid, contact_info)
        elif entry.contact_info is None and contact_info:
            entry.contact_info = contact_info
        entry.cancel_timer()
        # buffered inbound messages are part of the unreplied snapshot
        entry.buffer.clear()
        entry.processing = True
        try:
            await self.drain_batch(entry, batch, result)
        finally:
            entry.processing = False
            if entry.buffer:
                self._arm_timer(entry)
            else:
                self.registry.discard(entry)
        logger.info("🖐️ Manual respond for contact %s → %s", rowid, result.as_dict())
        return result

    # ------------------------------------------------------------------ teardown
    def pending_chats(self) -> List[str]:
        return [entry.chat_id for entry in self.registry]

    async def shutdown(self) -> None:
        """Cancel pending timers and wait for running drains to finish their current batch."""
        self._closing = True
        timers = [entry.timer for entry in self.registry if entry.timer is not None]
        drains = [entry.task for entry in self.registry if entry.task is not None and entry.task is not asyncio.current_task()]
        for task in timers:
            task.cancel()
        if drains:
            logger.info("⏳ Waiting for %d running drain(s) before shutdown", len(drains))
        if timers or drains:
            await asyncio.gather(*timers, *drains, return_exceptions=True)
        self.registry.clear()
