"""
Text utilities shared by request validation, prose accounting and LLM output
parsing.
"""

import json
import re
from typing import Any, Dict, Optional

# C0 controls except tab, newline and carriage return, plus DEL.
_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]")

_WHITESPACE_RE = re.compile(r"\s+")

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def sanitize_text(value: Optional[str]) -> Optional[str]:
    """
    Trim surrounding whitespace and drop control characters from user input.

    Tab, newline and carriage return are kept so prose formatting survives.
    ``None`` passes through unchanged.
    """
    if value is None:
        return None
    return _CONTROL_CHARS_RE.sub("", value).strip()


def count_words(text: Optional[str]) -> int:
    if not text:
        return 0
    return len([token for token in _WHITESPACE_RE.split(text) if token])


def slugify_filename(title: str, fallback: str = "manuscript") -> str:
    """
    Lowercase ``title`` and collapse every run of non ``[a-z0-9]`` characters
    into one hyphen, trimming hyphens at either end.

    Returns:
        The slug, or ``fallback`` when nothing survives.
    """
    slug = _SLUG_RE.sub("-", (title or "").lower()).strip("-")
    return slug or fallback


def strip_json_fence(text: str) -> str:
    payload = (text or "").strip()
    payload = re.sub(r"^```(?:json)?", "", payload).strip()
    payload = re.sub(r"```$", "", payload).strip()
    return payload


def extract_json_object(text: str) -> Optional[Dict[str, Any]]:
    """
    Parse the first JSON object out of an LLM response.

    Tries the whole (fence-stripped) payload first, then the widest
    ``{...}`` span. Non-object JSON counts as a failure.

    Returns:
        The parsed dict, or None when no candidate parses.
    """
    payload = strip_json_fence(text)
    if not payload:
        return None

    candidates = [payload]
    start = payload.find("{")
    end = payload.rfind("}")
    if start >= 0 and end > start:
        candidates.append(payload[start : end + 1])

    for candidate in candidates:
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None
