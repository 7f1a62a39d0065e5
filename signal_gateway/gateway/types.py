"""Core types and DTOs for the resilient LLM gateway."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class RoutingAction(str, Enum):
    """What the Granularity Router decided for a request."""

    NONE = "none"
    ENRICH = "enrich"  # attach the web-search plugin upstream


class CallOutcome(str, Enum):
    """Final outcome of one model attempt (after transport retries)."""

    SUCCESS = "success"
    RETRY_EXHAUSTED = "retry_exhausted"
    MODEL_UNAVAILABLE = "model_unavailable"  # 402 / 404 from upstream
    MALFORMED = "malformed"  # 2xx with an unusable body
    REJECTED = "rejected"  # non-retryable upstream refusal


# ---------------------------------------------------------------------------
# Inbound request: what the client asked for
# ---------------------------------------------------------------------------


@dataclass
class ChatRequest:
    """A single chat completion request as received from the client.

    ``messages`` is opaque to the gateway; it is forwarded upstream as-is.
    """

    messages: Any = None
    model: str = ""
    response_format: dict[str, Any] | None = None
    plugins: list[dict[str, Any]] | None = None

    # Granularity Router inputs (optional)
    topic: str = ""
    domain: str = ""
    enrichment_guidance: str = ""

    # Supplementary calls (validation, definitions) never consume quota
    skip_usage_count: bool = False


@dataclass
class CallerContext:
    """Who is calling and with which credentials."""

    identity: str = "unknown"  # first X-Forwarded-For entry
    own_api_key: str | None = None  # caller-supplied upstream key

    @property
    def uses_own_key(self) -> bool:
        return bool(self.own_api_key)


# ---------------------------------------------------------------------------
# Gateway result: what goes back to the client
# ---------------------------------------------------------------------------


@dataclass
class GatewayResult:
    """Successful gateway response: upstream JSON plus quota headers."""

    body: dict[str, Any] = field(default_factory=dict)
    status_code: int = 200
    headers: dict[str, str] = field(default_factory=dict)
    model: str = ""  # model that actually served the request
    models_tried: list[str] = field(default_factory=list)
    enriched: bool = False

    @property
    def fallback_used(self) -> bool:
        return len(self.models_tried) > 1


# ---------------------------------------------------------------------------
# Routing decision
# ---------------------------------------------------------------------------


@dataclass
class RoutingDecision:
    """Output of the Granularity Router. Produced fresh per request."""

    action: RoutingAction = RoutingAction.NONE
    reason: str = ""
    confidence: float = 0.0  # 0.0 – 1.0
    query: str | None = None  # only set when action == ENRICH
    signals: list[str] = field(default_factory=list)

    @property
    def should_enrich(self) -> bool:
        return self.action == RoutingAction.ENRICH

    def to_dict(self) -> dict:
        data = {
            "action": self.action.value,
            "reason": self.reason,
            "confidence": self.confidence,
            "signals": list(self.signals),
        }
        if self.query is not None:
            data["query"] = self.query
        return data


# ---------------------------------------------------------------------------
# Per-key state records (held by their owning registries)
# ---------------------------------------------------------------------------


@dataclass
class BreakerState:
    """Health of a single model. Created lazily, never destroyed."""

    consecutive_failures: int = 0
    last_failure_time: float | None = None  # clock() value
    is_open: bool = False


@dataclass
class BurstRecord:
    """Fixed-window request counter for one caller."""

    count: int
    window_reset_at: float  # clock() value; record is void after this

    def expired(self, now: float) -> bool:
        return now > self.window_reset_at


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

DEFAULT_RETRYABLE_STATUSES: frozenset[int] = frozenset({429, 500, 502, 503, 504})


@dataclass
class RetryPolicy:
    """Retry and backoff configuration for the transport."""

    max_attempts: int = 3
    base_delay: float = 1.0  # seconds
    max_delay: float = 8.0  # cap on the exponential part
    jitter: float = 0.2  # ± fraction applied to each delay
    retryable_statuses: frozenset[int] = DEFAULT_RETRYABLE_STATUSES


# ---------------------------------------------------------------------------
# Free tier state (caller side)
# ---------------------------------------------------------------------------


@dataclass
class FreeTierState:
    """What the caller knows about its shared daily allowance.

    ``remaining is None`` means unknown or not applicable (own key in use).
    """

    remaining: int | None = None
    limit: int = 5
    is_exhausted: bool = False

    def update(self, remaining: int, limit: int | None = None) -> None:
        if limit is not None:
            self.limit = limit
        self.remaining = max(0, remaining)
        self.is_exhausted = self.remaining == 0

    def mark_exhausted(self, limit: int | None = None) -> None:
        self.update(0, limit)

    def reset(self) -> None:
        self.remaining = None
        self.is_exhausted = False
