import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from outreach.config import settings
from outreach.datastore import ContactStore

_ENV_KEYS = [
    "WEBHOOK_TOKEN",
    "WAHA_WEBHOOK_TOKEN",
    "WAHA_API_KEY",
    "GEMINI_API_KEY",
    "AI_TEST_MODE",
    "DATABASE_URL",
    "PROPERTY_CONTEXT_PATH",
    "IMAGE_DIRECTORY",
]


@pytest.fixture(autouse=True)
def _reset_settings():
    for key in _ENV_KEYS:
        os.environ.pop(key, None)
    os.environ["WHATSAPP_SEND_DELAY_SEC"] = "0"
    os.environ["WHATSAPP_MEDIA_DELAY_SEC"] = "0"
    settings.cache_clear()
    yield
    settings.cache_clear()


@pytest.fixture
def store(tmp_path):
    s = ContactStore(f"sqlite:///{tmp_path / 'contacts.db'}")
    s.init_db()
    yield s
    s.dispose()


@pytest.fixture
def property_context_data():
    return {
        "description": "Two-storey house close to the lake.",
        "specs": {
            "price_lkr": 45000000,
            "bedrooms": 4,
            "bathrooms": 3,
            "house_size_sqft": 2400,
            "land_size_perches": 12.5,
        },
        "location": {
            "address": "12 Lake Road",
            "city": "Kandy",
            "maps_url": "https://maps.example.com/?q=12+Lake+Road",
            "flood_risk": "none",
        },
        "viewing_contact": {"name": "Nimal", "phone": "+94770000000"},
        "messages": {"initial": "Hello! We have a property in Kandy you may want to list."},
        "documents": ["deed", "survey plan"],
    }
