"""
🧠 Outreach Runtime Core
------------------------
Centralized utilities for logging, retries, timestamps and
phone-number / chat-id normalization shared by every module.
"""

from __future__ import annotations
import asyncio
import logging
import os
import re
import sys
from datetime import datetime, timezone
from typing import Awaitable, Callable, Iterable, Optional, TypeVar

T = TypeVar("T")

# Internal state flags
_LOGGING_CONFIGURED = False
_GLOBAL_HOOK_INSTALLED = False
_CORE_ENV_LOGGED = False
_DIGIT_PATTERN = re.compile(r"\d+")


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    """Normalize string or int log level."""
    if value is None:
        env_level = os.getenv("OUTREACH_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "outreach") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


# ────────────────────────────────────────────────
# GLOBAL EXCEPTION HOOK
# ────────────────────────────────────────────────
def install_global_exception_hook() -> None:
    """Install a catch-all global exception hook (logs full traceback)."""
    global _GLOBAL_HOOK_INSTALLED
    if _GLOBAL_HOOK_INSTALLED:
        return

    def _hook(exc_type, exc, tb):
        logger = get_logger("uncaught")
        logger.error("Uncaught exception (%s): %s", exc_type.__name__, exc, exc_info=(exc_type, exc, tb))

    sys.excepthook = _hook
    _GLOBAL_HOOK_INSTALLED = True


# ────────────────────────────────────────────────
# CORE ENV LOGGING
# ────────────────────────────────────────────────
def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    _CORE_ENV_LOGGED = True
    logger = logging.getLogger("env")
    logger.info(
        "Core env summary:\n"
        "• Database=%s\n"
        "• WAHA=%s (session=%s, key=%s)\n"
        "• Gemini key=%s model=%s | AI_TEST_MODE=%s",
        (os.getenv("DATABASE_URL") or "<default sqlite>").split("@")[-1],
        os.getenv("WAHA_BASE_URL", "http://localhost:3000"),
        os.getenv("WAHA_SESSION", "default"),
        _mask_env_value(os.getenv("WAHA_API_KEY")),
        _mask_env_value(os.getenv("GEMINI_API_KEY")),
        os.getenv("GEMINI_MODEL", "gemini-1.5-flash"),
        os.getenv("AI_TEST_MODE", "false"),
    )


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return ISO8601 UTC timestamp (Z suffix)."""
    return utc_now().isoformat(timespec="seconds").replace("+00:00", "Z")


# ────────────────────────────────────────────────
# PHONE / CHAT ID UTILITIES
# ────────────────────────────────────────────────
def only_digits(value: str | None) -> str:
    """Extract all digits from a string."""
    if value is None:
        return ""
    return "".join(_DIGIT_PATTERN.findall(str(value)))


def normalize_number(value: str | None) -> str:
    """Digits-only form used to compare WhatsApp senders with stored contacts."""
    return only_digits(value)


def last_n_digits(value: str | None, n: int = 9) -> Optional[str]:
    """Return the last ``n`` digits, or None when the number is shorter."""
    digits = only_digits(value)
    return digits[-n:] if len(digits) >= n else None


def chat_id_for(number: str | None) -> str:
    """WhatsApp personal chat id (``<digits>@c.us``) for a phone number."""
    digits = only_digits(number)
    return f"{digits}@c.us" if digits else ""


def is_group_chat(chat_id: str | None) -> bool:
    return bool(chat_id) and "@g.us" in str(chat_id)


def is_linked_device_id(chat_id: str | None) -> bool:
    """Anonymized sender ids (``@lid``) carry no phone number."""
    return bool(chat_id) and str(chat_id).endswith("@lid")


# ────────────────────────────────────────────────
# RETRY UTILITIES
# ────────────────────────────────────────────────
async def retry_async(
    func: Callable[[], Awaitable[T]],
    *,
    retries: int = 3,
    base_delay: float = 0.5,
    backoff: float = 2.0,
    exceptions: Iterable[type[BaseException]] = (Exception,),
    logger: Optional[logging.Logger] = None,
) -> T:
    """Retry an async callable with exponential backoff."""
    log = logger or get_logger(__name__)
    exceptions = tuple(exceptions)
    attempt = 0
    while True:
        try:
            return await func()
        except exceptions as exc:
            if attempt >= retries:
                log.error("Async retry exhausted after %s attempts: %s", attempt + 1, exc)
                raise
            delay = base_delay * (backoff ** attempt)
            log.warning("Retryable async error (%s/%s): %s; sleeping %.2fs", attempt + 1, retries + 1, exc, delay)
            await asyncio.sleep(delay)
            attempt += 1


# ────────────────────────────────────────────────
# INIT (auto install global hook)
# ────────────────────────────────────────────────
install_global_exception_hook()
