"""Response Normalizer: inspects OpenAI-compatible completion bodies.

Used by the gateway to decide whether a nominally successful upstream
response is actually usable, and by the client to pull out the text and the
web citations attached by the enrichment plugin.
"""

from __future__ import annotations

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

# URL pattern for extracting citations from response text
_URL_PATTERN = re.compile(r"https?://[^\s\)\]\}\"'<>,]+")


def _first_message(data: Any) -> dict | None:
    if not isinstance(data, dict):
        return None
    choices = data.get("choices")
    if not isinstance(choices, list) or not choices:
        return None
    choice = choices[0]
    if not isinstance(choice, dict):
        return None
    message = choice.get("message")
    return message if isinstance(message, dict) else None


def is_well_formed_completion(data: Any) -> bool:
    """True if the first choice carries an answer and there is no error payload.

    An answer is non-empty text, a non-empty ``tool_calls`` list (content is
    null on tool-call turns) or a ``refusal``. OpenRouter sometimes answers 200
    with ``{"error": {...}}`` or an empty choice list; both count as upstream
    failures.
    """
    if not isinstance(data, dict) or data.get("error"):
        return False
    message = _first_message(data)
    if message is None:
        return False
    if message.get("tool_calls") or message.get("refusal"):
        return True
    return bool(extract_message_text(data).strip())


def extract_message_text(data: Any) -> str:
    """Text content of the first choice ('' if absent)."""
    message = _first_message(data)
    if message is None:
        return ""
    content = message.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # content-part arrays: [{"type": "text", "text": "..."}]
        return "".join(
            part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
        )
    return ""


def extract_citations(data: Any) -> list[str]:
    """URLs cited by the response.

    Prefers native ``url_citation`` annotations (web plugin); falls back to
    URLs found in the message text.
    """
    message = _first_message(data)
    if message is None:
        return []

    urls: list[str] = []
    for annotation in message.get("annotations") or []:
        if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
            continue
        citation = annotation.get("url_citation") or {}
        url = citation.get("url") if isinstance(citation, dict) else None
        if url:
            urls.append(url)

    if not urls:
        urls = _extract_urls(extract_message_text(data))

    return _clean_urls(urls)


def _extract_urls(text: str) -> list[str]:
    """Extract URLs from response text."""
    if not text:
        return []
    return _URL_PATTERN.findall(text)


def _clean_urls(urls: list[str]) -> list[str]:
    """Clean and deduplicate a list of URLs."""
    seen: set[str] = set()
    result: list[str] = []
    for url in urls:
        cleaned = url.strip().rstrip(".,;:!?)")
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result
