"""Extraction helpers for raw model output.

All functions are pure: they never raise on malformed input and return
an empty value (``""`` / ``None``) when nothing usable is found.
"""

from __future__ import annotations

import json
import re
from typing import Any

_FENCED_BLOCK = re.compile(r"```[\w.+-]*[ \t]*\r?\n([\s\S]*?)```")
_LEADING_FENCE = re.compile(r"^\s*```[\w.+-]*[ \t]*\r?\n?")
_TRAILING_FENCE = re.compile(r"\r?\n?```\s*$")
_JSON_FENCE = re.compile(r"```(?:json)?\s*\r?\n([\s\S]*?)```", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Return the code inside markdown fences, or *text* trimmed.

    The longest fenced block wins when the model wraps prose around
    several snippets; a lone unterminated fence is also removed.
    """
    if not text:
        return ""
    blocks = _FENCED_BLOCK.findall(text)
    if blocks:
        return max(blocks, key=len).strip()
    cleaned = _LEADING_FENCE.sub("", text.strip())
    cleaned = _TRAILING_FENCE.sub("", cleaned)
    return cleaned.strip()


def extract_fenced_block(text: str) -> str:
    """Longest fenced block in *text*, or ``""`` when there is none."""
    blocks = _FENCED_BLOCK.findall(text or "")
    return max(blocks, key=len).strip() if blocks else ""


def extract_xml_tag(text: str, tag: str) -> str:
    """Lenient ``<tag>…</tag>`` extraction (CDATA wrappers removed)."""
    if not text:
        return ""
    match = re.search(rf"<{tag}\b[^>]*>([\s\S]*?)</{tag}\s*>", text, re.IGNORECASE)
    if not match:
        return ""
    value = match.group(1).strip()
    cdata = re.fullmatch(r"<!\[CDATA\[([\s\S]*?)\]\]>", value)
    if cdata:
        value = cdata.group(1).strip()
    return value


# ── JSON ─────────────────────────────────────────────────────────────

def sanitize_json_string(raw: str) -> str:
    """Repair the usual model mistakes: comments, trailing commas, single quotes."""
    text = re.sub(r"/\*[\s\S]*?\*/", "", raw)
    text = re.sub(r"(^|[^:\"'])//[^\n]*", r"\1", text)
    text = re.sub(r",\s*([}\]])", r"\1", text)
    if '"' not in text:
        text = text.replace("'", '"')
    return text.strip()


def _balanced_object(text: str) -> str:
    """First brace-balanced ``{...}`` span, honouring string literals."""
    start = text.find("{")
    if start == -1:
        return ""
    depth = 0
    in_string = False
    escaped = False
    quote = ""
    for idx in range(start, len(text)):
        ch = text[idx]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                in_string = False
            continue
        if ch in ("\"", "'"):
            in_string = True
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:idx + 1]
    return ""


def _loads_object(candidate: str) -> dict[str, Any] | None:
    for attempt in (candidate, sanitize_json_string(candidate)):
        try:
            value = json.loads(attempt)
        except (json.JSONDecodeError, ValueError):
            continue
        if isinstance(value, dict):
            return value
    return None


def extract_json(text: str) -> dict[str, Any] | None:
    """Parse a JSON object out of *text*.

    Chain: the whole text → a ```json fence → the first brace-balanced
    object, each tried strict and then sanitised.
    """
    if not text or not text.strip():
        return None
    parsed = _loads_object(text.strip())
    if parsed is not None:
        return parsed
    fence = _JSON_FENCE.search(text)
    if fence:
        parsed = _loads_object(fence.group(1).strip())
        if parsed is not None:
            return parsed
    candidate = _balanced_object(text)
    if candidate:
        return _loads_object(candidate)
    return None


def truncate(text: str, limit: int, marker: str = "\n... [truncated]") -> str:
    """Cap *text* at *limit* characters, appending *marker* when cut."""
    if text is None:
        return ""
    if len(text) <= limit:
        return text
    return text[:limit] + marker
