# outreach/ai/actions.py
"""
Action protocol returned by the language model.

The model answers with one JSON object, e.g.::

    {"action": "reply", "reply": "...", "media": "none"}
    {"action": "reply", "reply": "...", "media": "include"}
    {"action": "pause", "reply": "", "media": "none"}
    {"action": "ack", "ack": "thumbs_up"}

Anything that does not fit the protocol is turned into a pause so that a
broken conversation is stopped instead of answered.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

REPLY = "reply"
PAUSE = "pause"
ACK = "ack"

ACK_SEEN = "seen"
ACK_THUMBS_UP = "thumbs_up"
THUMBS_UP_EMOJI = "👍"

MEDIA_INCLUDE = "include"
MEDIA_NONE = "none"

_THUMBS_UP_ALIASES = {"thumbs_up", "thumbsup", "thumbs-up", "like", THUMBS_UP_EMOJI}


@dataclass(frozen=True)
class Action:
    kind: str
    text: str = ""
    include_media: bool = False
    reason: Optional[str] = None
    ack: Optional[str] = None

    @classmethod
    def reply(cls, text: str = "", include_media: bool = False) -> "Action":
        return cls(kind=REPLY, text=text or "", include_media=include_media)

    @classmethod
    def pause(cls, reason: str) -> "Action":
        return cls(kind=PAUSE, reason=reason)

    @classmethod
    def acknowledge(cls, kind: str = ACK_SEEN) -> "Action":
        return cls(kind=ACK, ack=kind if kind == ACK_THUMBS_UP else ACK_SEEN)

    @property
    def is_reply(self) -> bool:
        return self.kind == REPLY

    @property
    def is_pause(self) -> bool:
        return self.kind == PAUSE

    @property
    def is_ack(self) -> bool:
        return self.kind == ACK

    @property
    def sends_anything(self) -> bool:
        return self.is_reply and (bool(self.text.strip()) or self.include_media)


def extract_json(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Parse the outermost ``{...}`` span of a model response."""
    if not text:
        return None
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start:end + 1])
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_action(raw_text: Optional[str]) -> Action:
    parsed = extract_json(raw_text)
    if not parsed or not parsed.get("action"):
        return Action.pause("invalid_response")

    action = str(parsed.get("action")).strip().lower()

    if action == PAUSE:
        return Action.pause(str(parsed.get("reason") or "model_pause"))

    if action == ACK:
        raw_kind = parsed.get("ack") or parsed.get("kind") or ACK_SEEN
        kind = ACK_THUMBS_UP if str(raw_kind).strip().lower() in _THUMBS_UP_ALIASES else ACK_SEEN
        return Action.acknowledge(kind)

    if action != REPLY:
        return Action.pause("invalid_action")

    text = parsed.get("reply") if isinstance(parsed.get("reply"), str) else ""
    has_media_key = "media" in parsed
    media = parsed.get("media")
    if has_media_key:
        if not isinstance(media, str) or media.strip().lower() not in (MEDIA_INCLUDE, MEDIA_NONE):
            return Action.pause("invalid_media")
        media = media.strip().lower()

    include_media = media == MEDIA_INCLUDE
    if not text.strip() and not include_media and not has_media_key:
        return Action.pause("empty_reply")
    return Action.reply(text.strip(), include_media)
