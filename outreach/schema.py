"""
Canonical contact statuses and the transitions between them.

Contacts move ``pending -> active`` when the initiate flow reaches a
registered WhatsApp number, ``active -> paused`` when the autoresponder (or an
operator) stops the conversation, and ``paused -> active`` on manual resume.
``unregistered`` is set by the initiate flow and never cleared automatically.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ContactStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    PAUSED = "paused"
    UNREGISTERED = "unregistered"


# Rows written by older builds of the initiate flow.
LEGACY_STARTED = "started"

ALL_STATUSES = tuple(s.value for s in ContactStatus)


def normalize_status(value: Optional[str]) -> Optional[ContactStatus]:
    """Map a stored status string onto ``ContactStatus`` (``started`` -> active)."""
    text = str(value or "").strip().lower()
    if not text:
        return None
    if text == LEGACY_STARTED:
        return ContactStatus.ACTIVE
    try:
        return ContactStatus(text)
    except ValueError:
        return None


def is_active_status(value: Optional[str]) -> bool:
    return normalize_status(value) is ContactStatus.ACTIVE


def parse_status(value: Optional[str]) -> ContactStatus:
    """Strict variant used by the manual override route."""
    status = normalize_status(value)
    if status is None:
        raise ValueError(f"Invalid status {value!r}; expected one of {', '.join(ALL_STATUSES)}")
    return status
