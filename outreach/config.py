from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

# -----------------------------
# .env Loader
# -----------------------------
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ROOT_DIR = os.path.abspath(os.path.join(BASE_DIR, ".."))
ENV_PATH = os.path.join(ROOT_DIR, ".env")
load_dotenv(dotenv_path=ENV_PATH, override=True)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except Exception:
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except Exception:
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v if (v and str(v).strip() != "") else default


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    DATABASE_URL: str
    CONTACTS_TABLE: str
    PROPERTY_CONTEXT_PATH: str
    IMAGE_DIRECTORY: str
    WAHA_BASE_URL: str
    WAHA_SESSION: str
    WAHA_API_KEY: Optional[str]
    WAHA_TIMEOUT: float
    WHATSAPP_SEND_DELAY_SEC: float
    WHATSAPP_MEDIA_DELAY_SEC: float
    GEMINI_API_KEY: Optional[str]
    GEMINI_MODEL: str
    GEMINI_TEMPERATURE: float
    GEMINI_TIMEOUT: float
    GEMINI_MAX_RETRIES: int
    AI_TEST_MODE: bool
    QUIET_WINDOW_SEC: float
    TYPING_POLL_SEC: float
    TYPING_WAIT_SEC: float
    HISTORY_LIMIT: int
    WEBHOOK_TOKEN: Optional[str]
    PORT: int


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        DATABASE_URL=env_str("DATABASE_URL", f"sqlite:///{os.path.join(ROOT_DIR, 'seller_background.db')}"),
        CONTACTS_TABLE=env_str("CONTACTS_TABLE", "seller_background"),
        PROPERTY_CONTEXT_PATH=env_str("PROPERTY_CONTEXT_PATH", os.path.join(ROOT_DIR, "property_context.json")),
        IMAGE_DIRECTORY=env_str("IMAGE_DIRECTORY", os.path.join(ROOT_DIR, "SelectedHouseImages")),
        WAHA_BASE_URL=(env_str("WAHA_BASE_URL", "http://localhost:3000") or "").rstrip("/"),
        WAHA_SESSION=env_str("WAHA_SESSION", "default"),
        WAHA_API_KEY=env_str("WAHA_API_KEY"),
        WAHA_TIMEOUT=env_float("WAHA_TIMEOUT", 30.0),
        WHATSAPP_SEND_DELAY_SEC=env_float("WHATSAPP_SEND_DELAY_SEC", 0.5),
        WHATSAPP_MEDIA_DELAY_SEC=env_float("WHATSAPP_MEDIA_DELAY_SEC", 0.2),
        GEMINI_API_KEY=env_str("GEMINI_API_KEY"),
        GEMINI_MODEL=env_str("GEMINI_MODEL", "gemini-1.5-flash"),
        GEMINI_TEMPERATURE=env_float("GEMINI_TEMPERATURE", 0.2),
        GEMINI_TIMEOUT=env_float("GEMINI_TIMEOUT", 60.0),
        GEMINI_MAX_RETRIES=env_int("GEMINI_MAX_RETRIES", 2),
        AI_TEST_MODE=env_bool("AI_TEST_MODE", False),
        QUIET_WINDOW_SEC=env_float("QUIET_WINDOW_SEC", 25.0),
        TYPING_POLL_SEC=env_float("TYPING_POLL_SEC", 15.0),
        TYPING_WAIT_SEC=env_float("TYPING_WAIT_SEC", 4 * 60.0),
        HISTORY_LIMIT=env_int("HISTORY_LIMIT", 250),
        WEBHOOK_TOKEN=env_str("WEBHOOK_TOKEN") or env_str("WAHA_WEBHOOK_TOKEN"),
        PORT=env_int("PORT", 3300),
    )
