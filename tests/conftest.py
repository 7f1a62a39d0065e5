import json
from unittest.mock import AsyncMock

import httpx
import pytest

from signal_gateway.core.config import settings

# Override settings for tests
settings.app_env = "test"
settings.openrouter_api_key = "test-shared-key"
settings.redis_url = ""

from signal_gateway.gateway.circuit_breaker import CircuitBreakerRegistry  # noqa: E402
from signal_gateway.gateway.gateway import ChatGateway  # noqa: E402
from signal_gateway.gateway.quota import MemoryQuotaStore, QuotaTracker  # noqa: E402
from signal_gateway.gateway.rate_limiter import BurstLimiter  # noqa: E402
from signal_gateway.gateway.transport import ResilientTransport  # noqa: E402
from signal_gateway.gateway.types import RetryPolicy  # noqa: E402

UPSTREAM_URL = "https://upstream.test/api/v1/chat/completions"
TEST_MODELS = ["model/primary", "model/cheap", "model/free"]


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeUpstream:
    """httpx.MockTransport handler scripted per model. Unscripted models answer 200."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.always: dict[str, int] = {}  # model → status returned on every call
        self.queued: dict[str, list[httpx.Response]] = {}  # model → one-shot responses
        self.reject_json_mode: set[str] = set()  # models answering 400 to response_format

    @staticmethod
    def completion(text: str = "ok") -> dict:
        return {"id": "gen-1", "choices": [{"message": {"role": "assistant", "content": text}}]}

    @property
    def payloads(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def calls_to(self, model: str) -> int:
        return sum(1 for p in self.payloads if p["model"] == model)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        payload = json.loads(request.content)
        model = payload["model"]

        if model in self.reject_json_mode and "response_format" in payload:
            return httpx.Response(400, json={"error": {"message": "JSON mode unsupported", "code": 400}})
        if self.queued.get(model):
            return self.queued[model].pop(0)
        if model in self.always:
            status = self.always[model]
            return httpx.Response(status, json={"error": {"message": f"HTTP {status}", "code": status}})
        return httpx.Response(200, json=self.completion(f"answer from {model}"))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def no_sleep() -> AsyncMock:
    """Stand-in for asyncio.sleep that returns immediately and records delays."""
    return AsyncMock(return_value=None)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_gateway(upstream, clock, no_sleep):
    """Factory for an isolated ChatGateway wired to the fake upstream."""

    def _make(*, api_key: str = "shared-key", max_attempts: int = 3, daily_limit: int = 5) -> ChatGateway:
        client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
        return ChatGateway(
            api_key=api_key,
            upstream_url=UPSTREAM_URL,
            models=TEST_MODELS,
            default_model=TEST_MODELS[0],
            breakers=CircuitBreakerRegistry(
                failure_threshold=3,
                cooldown_seconds=30,
                clock=clock,
                metric_models=TEST_MODELS,
            ),
            transport=ResilientTransport(
                policy=RetryPolicy(max_attempts=max_attempts, jitter=0.0),
                client=client,
                sleep=no_sleep,
            ),
            burst_limiter=BurstLimiter(window_seconds=60, max_per_window=10, clock=clock),
            quota=QuotaTracker(MemoryQuotaStore(clock=clock), daily_limit=daily_limit),
            no_json_mode_models=frozenset({"model/free"}),
            enrichment_max_results=4,
            referer="https://signal-app.com",
            title="Signal Analogy Engine",
        )

    return _make
