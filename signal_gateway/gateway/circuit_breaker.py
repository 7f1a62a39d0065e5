"""Per-model Circuit Breaker Registry.

Two observable states per model:
  - CLOSED: normal operation, calls pass through
  - OPEN: too many consecutive failures, calls are steered elsewhere

Half-open is optimistic: once the cooldown has elapsed, ``is_open`` resets the
model to CLOSED and lets the next call through as a trial. If the trial fails,
the failure counter starts from zero again and the breaker reopens once it
reaches the threshold. There is no single-probe guarantee: concurrent requests
crossing the cooldown boundary may all be admitted as trials. Each of them
still records its own outcome.

A single success fully heals a model (counter reset, not decrement).
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Collection

from signal_gateway.core.metrics import BREAKER_OPENED, OWN_KEY_MODEL_LABEL
from signal_gateway.gateway.types import BreakerState

logger = logging.getLogger(__name__)

# Defaults; overridden from settings by build_gateway()
FAILURE_THRESHOLD = 3  # Consecutive failures to open the breaker
COOLDOWN_SECONDS = 30.0  # Seconds an open breaker blocks before a trial call


class CircuitBreakerRegistry:
    """Process-lifetime map of model id → BreakerState.

    Usage:
        breakers = CircuitBreakerRegistry()

        if not breakers.is_open(model):
            ...call the model...

        breakers.record_success(model)   # after a good response
        breakers.record_failure(model)   # after retries are exhausted
    """

    def __init__(
        self,
        failure_threshold: int = FAILURE_THRESHOLD,
        cooldown_seconds: float = COOLDOWN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        metric_models: Collection[str] | None = None,
    ):
        if failure_threshold < 1:
            raise ValueError("failure_threshold must be >= 1")
        self.failure_threshold = failure_threshold
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock
        # None labels every model; otherwise the rest share OWN_KEY_MODEL_LABEL
        self.metric_models = frozenset(metric_models) if metric_models is not None else None
        self._states: dict[str, BreakerState] = {}
        self._lock = threading.Lock()

    def _get_state(self, model_id: str) -> BreakerState:
        # caller holds self._lock
        state = self._states.get(model_id)
        if state is None:
            state = BreakerState()
            self._states[model_id] = state
        return state

    def is_open(self, model_id: str) -> bool:
        """True if calls to the model should currently be avoided.

        Crossing the cooldown closes the breaker as a side effect (half-open trial).
        """
        with self._lock:
            state = self._get_state(model_id)
            if not state.is_open:
                return False

            last_failure = state.last_failure_time or 0.0
            if self._clock() - last_failure >= self.cooldown_seconds:
                state.is_open = False
                state.consecutive_failures = 0
                logger.info("Breaker for %s cooled down, admitting trial call", model_id)
                return False

            return True

    def record_success(self, model_id: str) -> None:
        """Record a successful call: full reset, breaker closes."""
        with self._lock:
            state = self._get_state(model_id)
            was_open = state.is_open or state.consecutive_failures > 0
            state.consecutive_failures = 0
            state.is_open = False

        if was_open:
            logger.info("Breaker for %s CLOSED (recovered)", model_id)

    def record_failure(self, model_id: str) -> bool:
        """Record a failed call. Returns True if this failure opened the breaker."""
        with self._lock:
            state = self._get_state(model_id)
            state.consecutive_failures += 1
            state.last_failure_time = self._clock()

            opened = False
            if state.consecutive_failures >= self.failure_threshold and not state.is_open:
                state.is_open = True
                opened = True
            failures = state.consecutive_failures

        if opened:
            BREAKER_OPENED.labels(model=self._metric_label(model_id)).inc()
            logger.warning(
                "Breaker for %s OPENED after %d consecutive failures",
                model_id,
                failures,
                extra={"model": model_id},
            )
        return opened

    def _metric_label(self, model_id: str) -> str:
        if self.metric_models is None or model_id in self.metric_models:
            return model_id
        return OWN_KEY_MODEL_LABEL

    def get_state(self, model_id: str) -> dict:
        """Snapshot of a model's breaker (does not trigger the half-open transition)."""
        with self._lock:
            state = self._get_state(model_id)
            return {
                "model": model_id,
                "is_open": state.is_open,
                "consecutive_failures": state.consecutive_failures,
                "last_failure_time": state.last_failure_time,
            }

    def open_models(self) -> list[str]:
        """Models whose breaker is currently flagged open."""
        with self._lock:
            return [model for model, state in self._states.items() if state.is_open]

    def reset(self, model_id: str) -> None:
        """Manually reset a model's breaker to CLOSED."""
        with self._lock:
            self._states[model_id] = BreakerState()
        logger.info("Breaker for %s manually RESET", model_id)
