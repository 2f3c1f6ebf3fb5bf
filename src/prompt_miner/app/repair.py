"""Turn untrusted model text into a list of raw prompt entries."""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Literal

from .errors import InvalidResponseError

logger = logging.getLogger(__name__)

SourceKind = Literal["file", "url", "text"]

FALLBACK_MIN_CHARS = 20
FALLBACK_CONTENT_CHARS = 500

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")


def strip_code_fences(text: str) -> str:
    clean = text.strip()
    if clean.startswith("```"):
        clean = _FENCE_OPEN.sub("", clean, count=1)
        clean = _FENCE_CLOSE.sub("", clean, count=1)
    return clean.strip()


def slice_json_array(text: str) -> str:
    """Keep the span from the first '[' to the last ']' when both exist."""
    first = text.find("[")
    last = text.rfind("]")
    if first != -1 and last > first:
        return text[first : last + 1]
    return text


def link_fallback_entry(raw_text: str) -> dict[str, Any]:
    return {
        "title": "Extracted from Link",
        "content": raw_text[:FALLBACK_CONTENT_CHARS],
        "tags": ["link-content"],
        "suggestedModel": "Unknown",
    }


def repair_and_parse(raw_text: str, source_kind: SourceKind) -> list[dict[str, Any]]:
    """Strip fences, slice to the array span, parse, and normalise to a list of dicts.

    Search-grounded URL answers that still fail to parse degrade to a single
    fallback entry built from the raw text instead of failing.
    """
    cleaned = slice_json_array(strip_code_fences(raw_text))
    try:
        parsed: Any = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        logger.warning(
            "repair event=parse_failed kind=%s chars=%d raw=%r",
            source_kind,
            len(raw_text),
            raw_text,
        )
        if source_kind == "url" and len(raw_text) > FALLBACK_MIN_CHARS:
            return [link_fallback_entry(raw_text)]
        raise InvalidResponseError("Invalid JSON response from model") from exc

    if isinstance(parsed, dict):
        parsed = [parsed]
    elif not isinstance(parsed, list):
        parsed = []

    entries = [item for item in parsed if isinstance(item, dict)]
    if len(entries) != len(parsed):
        logger.info(
            "repair event=skipped_entries kind=%s skipped=%d",
            source_kind,
            len(parsed) - len(entries),
        )
    return entries
