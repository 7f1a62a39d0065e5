"""Resilient JSON Extractor: turns LLM text into structured data.

Pipeline (first step that yields a value wins):
  1. Strip markdown code fences
  2. json.loads on the whole text
  3. Try each balanced {...} / [...] span in turn, raw then repaired
     (skips prose around it, including bracketed asides)
  4. Repair common defects and retry on the whole text:
       - invalid backslash escapes (LaTeX like "\\frac" inside strings)
       - raw control characters inside strings
       - trailing commas before } or ]
       - single-quoted keys/strings
  5. Give up → None

Never raises: callers substitute their own default content on None.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Iterator
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_OPEN = re.compile(r"```(?:json|JSON)?\s*")
_FENCE_CLOSE = re.compile(r"\s*```\s*$")
_ESCAPE_SEQUENCE = re.compile(r'\\(u[0-9a-fA-F]{4}|["\\/bfnrt])?')
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_SINGLE_QUOTED = re.compile(r"'((?:[^'\\\n]|\\.)*)'")


def strip_code_fences(text: str) -> str:
    cleaned = _FENCE_OPEN.sub("", text)
    cleaned = _FENCE_CLOSE.sub("", cleaned)
    return cleaned.strip()


def _loads(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (ValueError, RecursionError):
        return False, None


def _span_at(text: str, start: int) -> str | None:
    """Balanced object or array opening at ``text[start]``, string-literal aware."""
    stack: list[str] = []
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue

        if ch == '"':
            in_string = True
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]":
            if not stack or stack[-1] != ch:
                return None
            stack.pop()
            if not stack:
                return text[start : i + 1]
    return None  # truncated


def find_balanced_span(text: str) -> str | None:
    """First balanced JSON object or array in ``text``, string-literal aware."""
    for i, ch in enumerate(text):
        if ch in "{[":
            return _span_at(text, i)
    return None


def iter_balanced_spans(text: str) -> Iterator[str]:
    """Balanced spans opening at each ``{`` or ``[`` in turn, left to right.

    Spans may overlap: after ``{curly}`` come the spans opening later,
    including any nested inside it.
    """
    for i, ch in enumerate(text):
        if ch in "{[":
            span = _span_at(text, i)
            if span is not None:
                yield span


def _escape_control_chars_in_strings(text: str) -> str:
    out: list[str] = []
    in_string = False
    escaped = False
    for ch in text:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            elif ch == "\n":
                out.append("\\n")
                continue
            elif ch == "\r":
                out.append("\\r")
                continue
            elif ch == "\t":
                out.append("\\t")
                continue
            elif ord(ch) < 0x20:
                out.append(f"\\u{ord(ch):04x}")
                continue
        elif ch == '"':
            in_string = True
        out.append(ch)
    return "".join(out)


def _normalize_quotes(text: str) -> str:
    if '"' in text:
        # mixed quoting: only convert when no double quotes are in play
        return text
    return _SINGLE_QUOTED.sub(lambda m: '"' + m.group(1).replace('"', '\\"') + '"', text)


def repair_json_text(text: str) -> str:
    """Apply the common LLM-output repairs. Idempotent on valid JSON."""
    fixed = _ESCAPE_SEQUENCE.sub(lambda m: m.group(0) if m.group(1) else "\\\\", text)
    fixed = _escape_control_chars_in_strings(fixed)
    fixed = _TRAILING_COMMA.sub(r"\1", fixed)
    fixed = _normalize_quotes(fixed)
    return fixed


def parse_llm_json(raw: str | None) -> Any:
    """Best-effort parse of LLM output. Returns None when nothing usable is found."""
    if not raw or not isinstance(raw, str):
        return None

    cleaned = strip_code_fences(raw)
    if not cleaned:
        return None

    ok, value = _loads(cleaned)
    if ok:
        return value

    # prose around the JSON may carry brackets of its own ("[see note]", "{curly}")
    for span in iter_balanced_spans(cleaned):
        for candidate in (span, repair_json_text(span)):
            ok, value = _loads(candidate)
            if ok:
                return value

    repaired = repair_json_text(cleaned)
    ok, value = _loads(repaired)
    if ok:
        return value

    # repairs can make a span balanced that was not before (e.g. stray quote escapes)
    for span in iter_balanced_spans(repaired):
        ok, value = _loads(span)
        if ok:
            return value

    logger.warning("LLM JSON unrecoverable, raw[:200]=%r", raw[:200])
    return None


def find_context(obj: Any, keys: list[str]) -> Any:
    """Value of the first matching key in ``obj``.

    Tries exact keys, then case-insensitive keys, then the same two passes one
    level down. Returns None when nothing matches.
    """
    if not isinstance(obj, dict):
        return None

    for key in keys:
        if obj.get(key):
            return obj[key]

    lowered = {k.lower() for k in keys}
    for key, value in obj.items():
        if isinstance(key, str) and key.lower() in lowered and value:
            return value

    for value in obj.values():
        if not isinstance(value, dict):
            continue
        for key in keys:
            if value.get(key):
                return value[key]
        for sub_key, sub_value in value.items():
            if isinstance(sub_key, str) and sub_key.lower() in lowered and sub_value:
                return sub_value

    return None
