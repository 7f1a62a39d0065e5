"""Tests for the HTTP surface: /api/chat, /api/health, /metrics."""

from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient

from signal_gateway.api.chat import get_caller_identity, get_gateway, get_own_api_key
from signal_gateway.main import app

MESSAGES = [{"role": "user", "content": "Explain recursion"}]
FORWARDED = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}


@pytest.fixture
def gateway(make_gateway):
    return make_gateway()


@pytest.fixture
async def api(gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


class _FakeRequest:
    def __init__(self, headers: dict[str, str]):
        self.headers = {k.lower(): v for k, v in headers.items()}


class TestCallerExtraction:
    def test_first_forwarded_entry(self):
        assert get_caller_identity(_FakeRequest(FORWARDED)) == "203.0.113.7"

    def test_missing_header_falls_back(self):
        assert get_caller_identity(_FakeRequest({})) == "unknown"
        assert get_caller_identity(_FakeRequest({"X-Forwarded-For": " "})) == "unknown"

    def test_bearer_key(self):
        assert get_own_api_key(_FakeRequest({"Authorization": "Bearer sk-or-abc"})) == "sk-or-abc"
        assert get_own_api_key(_FakeRequest({"Authorization": "bearer  sk-or-abc "})) == "sk-or-abc"

    @pytest.mark.parametrize("value", ["", "Bearer", "Bearer   ", "Basic dXNlcjpwYXNz"])
    def test_no_usable_key(self, value):
        assert get_own_api_key(_FakeRequest({"Authorization": value})) is None


class TestChatEndpoint:
    @pytest.mark.asyncio
    async def test_success(self, api, gateway, upstream):
        resp = await api.post("/api/chat", json={"model": "model/primary", "messages": MESSAGES}, headers=FORWARDED)

        assert resp.status_code == 200
        assert resp.json() == upstream.completion("answer from model/primary")
        assert resp.headers["X-Free-Remaining"] == "4"
        assert resp.headers["X-Free-Limit"] == "5"
        assert await gateway.quota.get_usage("203.0.113.7") == 1

    @pytest.mark.asyncio
    async def test_request_id_echoed(self, api):
        resp = await api.post("/api/chat", json={"messages": MESSAGES}, headers={"X-Request-ID": "abc123"})
        assert resp.headers["X-Request-ID"] == "abc123"

    @pytest.mark.asyncio
    async def test_missing_messages(self, api):
        resp = await api.post("/api/chat", json={"model": "model/primary"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing required field: messages"}

    @pytest.mark.asyncio
    async def test_unparsable_body(self, api):
        resp = await api.post("/api/chat", content=b"{not json", headers={"Content-Type": "application/json"})
        assert resp.status_code == 400
        assert resp.json() == {"error": "Missing required field: messages"}

    @pytest.mark.asyncio
    async def test_wrong_field_type(self, api):
        resp = await api.post("/api/chat", json={"messages": MESSAGES, "model": ["not", "a", "string"]})
        assert resp.status_code == 400
        assert resp.json()["error"].startswith("Invalid request body")

    @pytest.mark.asyncio
    async def test_premium_model(self, api):
        resp = await api.post("/api/chat", json={"model": "openai/gpt-4o", "messages": MESSAGES})
        assert resp.status_code == 403
        assert resp.json()["code"] == "PREMIUM_MODEL"

    @pytest.mark.asyncio
    async def test_free_tier_exhausted(self, api):
        for _ in range(5):
            assert (await api.post("/api/chat", json={"messages": MESSAGES})).status_code == 200

        resp = await api.post("/api/chat", json={"messages": MESSAGES})

        assert resp.status_code == 403
        body = resp.json()
        assert body["code"] == "FREE_TIER_EXHAUSTED"
        assert body["remaining"] == 0
        assert body["limit"] == 5
        assert isinstance(body["retryAfter"], int) and body["retryAfter"] >= 1
        assert resp.headers["X-Free-Remaining"] == "0"
        assert resp.headers["X-Free-Limit"] == "5"

    @pytest.mark.asyncio
    async def test_skip_usage_count_alias(self, api, gateway):
        resp = await api.post("/api/chat", json={"messages": MESSAGES, "skipUsageCount": True})
        assert resp.status_code == 200
        assert resp.headers["X-Free-Remaining"] == "5"
        assert await gateway.quota.get_usage("unknown") == 0

    @pytest.mark.asyncio
    async def test_burst_limited(self, api):
        for _ in range(10):
            await api.post("/api/chat", json={"messages": MESSAGES, "skipUsageCount": True})

        resp = await api.post("/api/chat", json={"messages": MESSAGES})

        assert resp.status_code == 429
        assert resp.json() == {
            "error": "Too many requests. Please slow down.",
            "code": "RATE_LIMITED",
            "retryAfter": 60,
        }

    @pytest.mark.asyncio
    async def test_all_models_failed(self, api, upstream):
        for model in ["model/primary", "model/cheap", "model/free"]:
            upstream.always[model] = 503

        resp = await api.post("/api/chat", json={"messages": MESSAGES})

        assert resp.status_code == 502
        assert resp.json()["code"] == "ALL_MODELS_FAILED"
        assert "X-Free-Remaining" not in resp.headers

    @pytest.mark.asyncio
    async def test_configuration_error_is_generic(self, api, make_gateway):
        unconfigured = make_gateway(api_key="")
        app.dependency_overrides[get_gateway] = lambda: unconfigured

        resp = await api.post("/api/chat", json={"messages": MESSAGES})

        assert resp.status_code == 500
        assert resp.json() == {"error": "Server not configured. Please add your own API key in Settings."}

    @pytest.mark.asyncio
    async def test_own_key(self, api, upstream):
        resp = await api.post(
            "/api/chat",
            json={"model": "anthropic/claude-sonnet-4", "messages": MESSAGES},
            headers={"Authorization": "Bearer sk-or-caller"},
        )

        assert resp.status_code == 200
        assert "X-Free-Remaining" not in resp.headers
        assert "X-Free-Limit" not in resp.headers
        assert upstream.requests[0].headers["Authorization"] == "Bearer sk-or-caller"

    @pytest.mark.asyncio
    async def test_enrichment_fields(self, api, upstream):
        resp = await api.post(
            "/api/chat",
            json={
                "messages": MESSAGES,
                "topic": "recursion",
                "domain": "1999 NFL Season",
                "enrichmentGuidance": "Use playoff results only.",
            },
        )

        assert resp.status_code == 200
        plugin = upstream.payloads[0]["plugins"][0]
        assert plugin["id"] == "web"
        assert plugin["search_prompt"] == "Use playoff results only."


class TestMethodsAndCors:
    @pytest.mark.asyncio
    async def test_options_preflight(self, api):
        resp = await api.options("/api/chat")
        assert resp.status_code == 200
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert resp.headers["Access-Control-Allow-Methods"] == "POST, OPTIONS"
        assert resp.headers["Access-Control-Allow-Headers"] == "Content-Type, Authorization"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE"])
    async def test_other_methods_not_allowed(self, api, method):
        resp = await api.request(method, "/api/chat")
        assert resp.status_code == 405
        assert resp.json() == {"error": "Method not allowed"}

    @pytest.mark.asyncio
    async def test_quota_headers_exposed_to_browsers(self, api):
        resp = await api.post("/api/chat", json={"messages": MESSAGES}, headers={"Origin": "https://signal-app.com"})
        exposed = resp.headers["Access-Control-Expose-Headers"]
        assert "X-Free-Remaining" in exposed
        assert "X-Free-Limit" in exposed


class TestOperationalEndpoints:
    @pytest.mark.asyncio
    async def test_health(self, api):
        resp = await api.get("/api/health")
        assert resp.status_code == 200
        assert resp.json() == {"status": "ok", "quota_backend": "memory", "open_breakers": []}

    @pytest.mark.asyncio
    async def test_metrics(self, api):
        await api.post("/api/chat", json={"messages": MESSAGES})

        resp = await api.get("/metrics")

        assert resp.status_code == 200
        assert "gateway_upstream_calls_total" in resp.text
        assert "http_requests_total" in resp.text

    @pytest.mark.asyncio
    async def test_own_key_models_share_one_metric_label(self, api, upstream):
        model = "acme/model-9f3c2a"
        upstream.always[model] = 503
        own_key = {"Authorization": "Bearer sk-or-caller", **FORWARDED}

        for _ in range(3):
            resp = await api.post("/api/chat", json={"model": model, "messages": MESSAGES}, headers=own_key)
            assert resp.status_code == 502

        text = (await api.get("/metrics")).text

        assert model not in text
        assert 'gateway_upstream_calls_total{model="own_key",outcome="retry_exhausted"}' in text
        assert 'gateway_breaker_opened_total{model="own_key"}' in text
