"""Parse provider output into an `AnalysisResult`.

Providers occasionally wrap the JSON payload in prose or markdown fences. The
parser scans for the first well-formed JSON object and defaults every field it
cannot use; only total unparseability is an error.
"""
from __future__ import annotations

import json
from typing import Any, Dict, List, Mapping

from docpipe.errors import MalformedResponseError
from docpipe.models.documents import (
    DETECTED_FIELD_NAMES,
    AnalysisResult,
    Confidence,
    DetectedFields,
    DocumentType,
)

_DECODER = json.JSONDecoder()

_KEY_ALIASES = {
    "document_type": ("document_type", "documentType", "type"),
    "summary": ("summary",),
    "extracted_text": ("extracted_text", "extractedText", "text"),
    "detected_fields": ("detected_fields", "detectedFields", "fields"),
    "confidence": ("confidence",),
}


def extract_json_object(text: str) -> Dict[str, Any]:
    """Return the first JSON object embedded in ``text``."""
    if not text:
        raise MalformedResponseError("Empty provider response")
    start = text.find("{")
    while start != -1:
        try:
            candidate, _ = _DECODER.raw_decode(text, start)
        except json.JSONDecodeError:
            start = text.find("{", start + 1)
            continue
        if isinstance(candidate, dict):
            return candidate
        start = text.find("{", start + 1)
    raise MalformedResponseError("No JSON object found in provider response")


def _lookup(payload: Mapping[str, Any], field: str) -> Any:
    for key in _KEY_ALIASES[field]:
        if key in payload:
            return payload[key]
    return None


def _coerce_enum(enum_cls, value: Any, default):
    if isinstance(value, str):
        try:
            return enum_cls(value.strip().lower())
        except ValueError:
            return default
    return default


def _coerce_text(value: Any, default: str) -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return default


def _coerce_string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    items: List[str] = []
    for item in value:
        if isinstance(item, bool) or item is None:
            continue
        if isinstance(item, (str, int, float)):
            text = str(item).strip()
            if text:
                items.append(text)
    return items


def _coerce_fields(value: Any) -> DetectedFields:
    if not isinstance(value, Mapping):
        return DetectedFields()
    return DetectedFields(**{name: _coerce_string_list(value.get(name)) for name in DETECTED_FIELD_NAMES})


def parse_analysis_response(
    text: str, *, model: str | None = None, strategy: str | None = None
) -> AnalysisResult:
    payload = extract_json_object(text)
    return AnalysisResult(
        document_type=_coerce_enum(DocumentType, _lookup(payload, "document_type"), DocumentType.UNKNOWN),
        summary=_coerce_text(_lookup(payload, "summary"), "No summary available"),
        extracted_text=_coerce_text(_lookup(payload, "extracted_text"), ""),
        detected_fields=_coerce_fields(_lookup(payload, "detected_fields")),
        confidence=_coerce_enum(Confidence, _lookup(payload, "confidence"), Confidence.MEDIUM),
        model=model,
        strategy=strategy,
    )


__all__ = ["extract_json_object", "parse_analysis_response"]
