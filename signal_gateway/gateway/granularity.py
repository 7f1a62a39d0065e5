"""Granularity Router: decides whether a request needs web enrichment.

Pure text heuristics, no network. The analogy *domain* is scanned for
specificity signals (years, episode numbers, finals, statistics, ...). A domain
that names a concrete real-world event needs grounding data, so the upstream
call gets the web-search plugin with a synthesized query.

The *topic* is scanned too, but topic signals alone never trigger enrichment:
topics are timeless concepts ("gradient descent"); only a specific analogy
domain ("1999 NFL Season") warrants fetching real-world facts.

Signals are an ordered list of (label, pattern) pairs, so adding or removing a
category is a data change.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from signal_gateway.gateway.types import RoutingAction, RoutingDecision

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GranularitySignal:
    """One category of specificity cue."""

    label: str
    pattern: re.Pattern

    def matches(self, text: str) -> bool:
        return bool(self.pattern.search(text))


# ---------------------------------------------------------------------------
# Signal catalogue (evaluated in order; labels are reported in this order)
# ---------------------------------------------------------------------------

SIGNALS: tuple[GranularitySignal, ...] = (
    GranularitySignal(
        "year",
        re.compile(r"\b(?:1[89]\d{2}|20\d{2})(?:s|['’]s)?\b"),
    ),
    GranularitySignal(
        "season_episode",
        re.compile(
            r"\b(?:season|episode|ep\.?|chapter|volume|vol\.?|book|part|series)\s*#?\d+\b"
            r"|\bs\d{1,2}\s*e\d{1,3}\b",
            re.IGNORECASE,
        ),
    ),
    GranularitySignal(
        "numbered_event",
        re.compile(
            r"\b(?:super\s+bowl|wrestlemania|world\s+cup|olympics|ufc|game|week|round|stage|match|grand\s+prix)"
            r"\s+(?:[ivxlcdm]+|\d+)\b"
            r"|\b\d+(?:st|nd|rd|th)\s+(?:annual|edition|season|game|round|episode|grand\s+prix)\b",
            re.IGNORECASE,
        ),
    ),
    GranularitySignal(
        "championship",
        re.compile(
            r"\b(?:championships?|finals?|playoffs?|world\s+series|grand\s+final|title\s+game|"
            r"tournament|finale|decider|derby)\b",
            re.IGNORECASE,
        ),
    ),
    GranularitySignal(
        "statistics",
        re.compile(
            r"\b(?:stats?|statistics|standings|box\s+score|batting\s+average|points\s+per\s+game|ppg|"
            r"rankings?|leaderboard|scoreline|win[-\s]loss|records?\s+(?:set|broken))\b",
            re.IGNORECASE,
        ),
    ),
    GranularitySignal(
        "recency",
        re.compile(
            r"\b(?:latest|recent|current|currently|upcoming|today|yesterday|"
            r"this\s+(?:year|season|week|month)|last\s+(?:night|week|month|season|year))\b",
            re.IGNORECASE,
        ),
    ),
    GranularitySignal(
        "biographical",
        re.compile(
            r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+['’]s?\s"
            r"|\b(?:[Bb]iography|[Cc]areer\s+of|[Ll]ife\s+of|[Mm]emoir)\b"
        ),
    ),
    GranularitySignal(
        "award",
        re.compile(
            r"\b(?:oscars?|academy\s+awards?|grammys?|emmys?|tonys?|golden\s+globes?|mvp|"
            r"ballon\s+d['’]or|nobel|pulitzer|heisman|cy\s+young)\b",
            re.IGNORECASE,
        ),
    ),
    GranularitySignal(
        "location",
        re.compile(r"\b(?:in|at|from)\s+(?:the\s+)?[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*"),
    ),
)

DOMAIN_QUERY_MAX_WORDS = 8
DEFAULT_MAX_RESULTS = 5

_BRACKETED = re.compile(r"\([^)]*\)|\[[^\]]*\]")
_WHITESPACE = re.compile(r"\s+")


def shorten_domain(domain: str, max_words: int = DOMAIN_QUERY_MAX_WORDS) -> str:
    """Domain without bracketed asides, trailing punctuation, capped at ``max_words`` words."""
    cleaned = _BRACKETED.sub(" ", domain)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip(" .,:;-")
    words = cleaned.split(" ")
    return " ".join(words[:max_words])


def _confidence(signal_count: int) -> float:
    # one signal → 0.6, each extra +0.1, capped
    return round(min(0.95, 0.5 + 0.1 * signal_count), 2)


class GranularityRouter:
    """Stateless classifier; safe to share across requests."""

    def __init__(self, signals: tuple[GranularitySignal, ...] = SIGNALS):
        self.signals = signals

    def detect(self, text: str) -> list[str]:
        """Labels of every signal category that matches ``text``."""
        if not text:
            return []
        return [signal.label for signal in self.signals if signal.matches(text)]

    def classify(self, topic: str, domain: str) -> RoutingDecision:
        topic = (topic or "").strip()
        domain = (domain or "").strip()

        domain_signals = self.detect(domain)
        if domain_signals:
            short = shorten_domain(domain)
            query = f"{short} {topic}".strip()
            decision = RoutingDecision(
                action=RoutingAction.ENRICH,
                query=query,
                reason=f"domain is specific ({', '.join(domain_signals)})",
                confidence=_confidence(len(domain_signals)),
                signals=domain_signals,
            )
            logger.debug("Enrichment for domain=%r topic=%r: %s", domain, topic, decision.reason)
            return decision

        topic_signals = self.detect(topic)
        if topic_signals:
            return RoutingDecision(
                action=RoutingAction.NONE,
                reason=f"only the topic is specific ({', '.join(topic_signals)}); topics are not enriched",
                confidence=0.7,
                signals=topic_signals,
            )

        return RoutingDecision(
            action=RoutingAction.NONE,
            reason="no granularity signals",
            confidence=0.9,
        )


def build_enrichment_directive(
    decision: RoutingDecision,
    max_results: int = DEFAULT_MAX_RESULTS,
    guidance: str = "",
) -> list[dict] | None:
    """Upstream ``plugins`` block for an ENRICH decision, else None.

    Uses the OpenRouter web plugin shape: ``{"id": "web", "max_results", "search_prompt"}``.
    """
    if not decision.should_enrich:
        return None

    plugin: dict = {"id": "web", "max_results": max_results}
    prompt = guidance.strip()
    if not prompt and decision.query:
        prompt = (
            f"Search results for \"{decision.query}\" follow. Use them only for concrete, "
            "verifiable facts (names, dates, scores, events) about the analogy domain."
        )
    if prompt:
        plugin["search_prompt"] = prompt
    return [plugin]
