"""
Result validator: turns raw provider output into canonical photo metadata.

Accepted input shapes
---------------------
- a mapping (already-decoded JSON object)
- text or bytes holding a JSON object; Markdown code fences and prose around
  the object are tolerated

Field rules
-----------
- keywords: list of strings, or one comma-separated string
  ("a, b ,c" -> ["a", "b", "c"]); order is preserved, duplicates are kept
- caption / description: default to ""
- classification: bare label or {type, confidence, explanation}; null is fine
- poiAnalysis / collectibleInsights: open-ended objects, passed through
- unknown top-level fields: preserved in `extra_fields`

The validator is deliberately permissive. The only failure is a payload that
is not a JSON object at all.
"""

import json
import logging
import re
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from services.analysis.errors import MetadataValidationError

log = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```(?:json|JSON)?\s*|\s*```\s*$")
_SCALARS = (str, int, float)


class StructuredClassification(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str | None = None
    confidence: float | None = None
    explanation: str | None = None

    @field_validator("type", "explanation", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str | None:
        if v is None or isinstance(v, bool):
            return None
        return str(v) if isinstance(v, _SCALARS) else None

    @field_validator("confidence", mode="before")
    @classmethod
    def _numeric(cls, v: Any) -> float | None:
        if isinstance(v, bool):
            return None
        if isinstance(v, int | float):
            return float(v)
        if isinstance(v, str):
            try:
                return float(v.strip())
            except ValueError:
                return None
        return None


class CanonicalMetadata(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    caption: str = ""
    description: str = ""
    keywords: list[str] = Field(default_factory=list)
    classification: str | StructuredClassification | None = None
    poi_analysis: dict[str, Any] | None = Field(default=None, alias="poiAnalysis")
    collectible_insights: dict[str, Any] | None = Field(default=None, alias="collectibleInsights")

    @field_validator("caption", "description", mode="before")
    @classmethod
    def _text(cls, v: Any) -> str:
        if v is None or isinstance(v, bool):
            return ""
        if isinstance(v, _SCALARS):
            return str(v).strip()
        log.warning(f"Dropping non-text value of type {type(v).__name__}")
        return ""

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords(cls, v: Any) -> list[str]:
        return normalize_keywords(v)

    @field_validator("classification", mode="before")
    @classmethod
    def _classification(cls, v: Any) -> str | dict | None:
        match v:
            case None:
                return None
            case str():
                return v.strip() or None
            case Mapping():
                return dict(v)
            case _:
                log.warning(f"Ignoring classification of type {type(v).__name__}")
                return None

    @field_validator("poi_analysis", "collectible_insights", mode="before")
    @classmethod
    def _open_object(cls, v: Any) -> dict | None:
        if v is None:
            return None
        if isinstance(v, Mapping):
            return dict(v)
        log.warning(f"Ignoring non-object payload of type {type(v).__name__}")
        return None

    @property
    def extra_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})

    def classification_value(self) -> str | dict | None:
        """Classification in its stored form: a label or a plain dict."""
        if isinstance(self.classification, StructuredClassification):
            return self.classification.model_dump(exclude_none=True)
        return self.classification


def normalize_keywords(value: Any) -> list[str]:
    """Normalize either accepted keyword shape to an ordered list of strings."""
    match value:
        case None:
            return []
        case str():
            return [token.strip() for token in value.split(",") if token.strip()]
        case list() | tuple():
            out = []
            for item in value:
                if isinstance(item, bool) or not isinstance(item, _SCALARS):
                    continue
                token = str(item).strip()
                if token:
                    out.append(token)
            return out
        case _:
            log.warning(f"Ignoring keywords of type {type(value).__name__}")
            return []


def validate(raw: Any) -> CanonicalMetadata:
    """Validate one provider response. Raises MetadataValidationError."""
    payload = _as_object(raw)

    # snake_case spellings of the passthrough payloads are accepted too
    for snake, camel in (("poi_analysis", "poiAnalysis"), ("collectible_insights", "collectibleInsights")):
        if snake in payload and camel not in payload:
            payload[camel] = payload.pop(snake)

    try:
        return CanonicalMetadata.model_validate(payload)
    except PydanticValidationError as e:
        raise MetadataValidationError(f"Provider response rejected: {e}") from e


def _as_object(raw: Any) -> dict:
    if isinstance(raw, Mapping):
        return dict(raw)
    if isinstance(raw, bytes | bytearray):
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MetadataValidationError("Provider response is not UTF-8 text") from e
    if not isinstance(raw, str):
        raise MetadataValidationError(f"Unsupported provider response type: {type(raw).__name__}")

    text = _FENCE.sub("", raw.strip())
    if not text:
        raise MetadataValidationError("Provider response is empty")

    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = _extract_first_object(text)

    if not isinstance(data, dict):
        raise MetadataValidationError(f"Provider response is a JSON {type(data).__name__}, expected an object")
    return data


def _extract_first_object(text: str) -> Any:
    """Pull the first top-level {...} block out of text with surrounding prose."""
    decoder = json.JSONDecoder()
    start = text.find("{")
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(text, start)
            return obj
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
    raise MetadataValidationError("Provider response does not contain a JSON object")
