"""Fallback Chain Selector: picks which model actually serves a call."""

from __future__ import annotations

import logging

from signal_gateway.gateway.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)


def build_model_chain(preferred: str, models: list[str]) -> list[str]:
    """Preferred model first, then every other model in declared order, without duplicates."""
    chain = [preferred]
    for model in models:
        if model not in chain:
            chain.append(model)
    return chain


class FallbackSelector:
    """Breaker-aware model selection.

    Deterministic for a fixed breaker snapshot: the same registry state and
    arguments always yield the same model.
    """

    def __init__(self, breakers: CircuitBreakerRegistry):
        self.breakers = breakers

    def select_model(self, preferred: str, fallbacks: list[str]) -> str:
        """Return the preferred model unless its breaker is open.

        Otherwise return the first fallback (in order, skipping the preferred
        model) whose breaker is closed. If every breaker is open, return the
        preferred model anyway.
        """
        if not self.breakers.is_open(preferred):
            return preferred

        for candidate in fallbacks:
            if candidate == preferred:
                continue
            if not self.breakers.is_open(candidate):
                logger.info("Breaker open for %s, routing to %s", preferred, candidate)
                return candidate

        logger.warning("All breakers open (preferred=%s), attempting it anyway", preferred)
        return preferred
