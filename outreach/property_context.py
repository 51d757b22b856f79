"""
🏠 Property Context
-------------------
Loads and validates the single property document the responder is allowed
to talk about. The full document (unknown keys included) is what gets
serialized into the model prompt.
"""

from __future__ import annotations

import json
import os
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from outreach.config import settings
from outreach.runtime import get_logger

logger = get_logger("property_context")


class PropertyContextError(RuntimeError):
    """Raised when the property context file is missing or invalid."""


def _require_value(value: Any) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ValueError("must not be empty")
    return value


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow")


class PropertySpecs(_Section):
    price_lkr: Any
    bedrooms: Any
    bathrooms: Any
    house_size_sqft: Any
    land_size_perches: Any

    @field_validator("*")
    @classmethod
    def check_not_null(cls, v):
        if v is None:
            raise ValueError("must not be null")
        return v


class PropertyLocation(_Section):
    address: Any
    city: Any
    maps_url: Any
    flood_risk: Any

    @field_validator("*")
    @classmethod
    def check_present(cls, v):
        return _require_value(v)


class ViewingContact(_Section):
    name: Any
    phone: Any

    @field_validator("*")
    @classmethod
    def check_present(cls, v):
        return _require_value(v)


class PropertyMessages(_Section):
    initial: str

    @field_validator("initial")
    @classmethod
    def check_present(cls, v):
        return _require_value(v)


class PropertyContext(_Section):
    description: Any
    specs: PropertySpecs
    location: PropertyLocation
    viewing_contact: ViewingContact
    messages: PropertyMessages

    @field_validator("description")
    @classmethod
    def check_present(cls, v):
        return _require_value(v)

    @property
    def initial_message(self) -> str:
        return self.messages.initial

    def as_prompt_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")


def _describe_error(exc: ValidationError) -> str:
    first = exc.errors()[0]
    loc = ".".join(str(part) for part in first.get("loc", ()))
    return f"Property context field {loc or '<root>'}: {first.get('msg')}"


def validate_property_context(data: Any) -> PropertyContext:
    if not isinstance(data, dict):
        raise PropertyContextError("Property context must be an object.")
    try:
        return PropertyContext.model_validate(data)
    except ValidationError as exc:
        raise PropertyContextError(_describe_error(exc)) from exc


def load_property_context(path: Optional[str] = None) -> PropertyContext:
    path = path or settings().PROPERTY_CONTEXT_PATH
    if not os.path.exists(path):
        raise PropertyContextError(f"Property context file not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as fh:
            raw = json.load(fh)
    except json.JSONDecodeError as exc:
        raise PropertyContextError(f"Property context is not valid JSON: {exc}") from exc

    context = validate_property_context(raw)
    logger.info("🏠 Property context loaded from %s", path)
    return context
