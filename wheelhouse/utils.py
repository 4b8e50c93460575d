"""Shared utility functions used across Wheelhouse modules."""
from __future__ import annotations

import json
import re
from datetime import UTC, datetime
from typing import Any

_MISSING = object()

_FENCED_JSON_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)
_BARE_JSON_RE = re.compile(r"\{.*\}", re.DOTALL)


def json_parse(value: str | None, default: Any = _MISSING) -> Any:
    """Safely parse a JSON string, returning *default* on failure.

    If no default is given, returns ``{}`` on parse error.
    """
    try:
        return json.loads(value or "")
    except (json.JSONDecodeError, TypeError):
        return {} if default is _MISSING else default


def extract_json_text(text: str) -> str:
    """Pull the JSON object out of an LLM reply that may wrap it in prose or fences."""
    m = _FENCED_JSON_RE.search(text)
    if m:
        return m.group(1)
    m = _BARE_JSON_RE.search(text)
    return m.group(0) if m else text


def as_utc(value: datetime | None) -> datetime | None:
    """SQLite drops tzinfo on round-trip; treat naive values as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)


def shorten(text: str, limit: int) -> str:
    text = text.strip()
    return text if len(text) <= limit else text[:limit].rstrip() + "..."
