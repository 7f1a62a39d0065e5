"""Async client for the Signal gateway.

Keeps the process-wide ``FreeTierState`` in sync with the quota headers the
gateway returns, so a UI can show "3 of 5 free searches left" without asking.

Usage:
    async with GatewayClient("https://signal-app.com") as client:
        data = await client.complete(messages, topic="recursion", domain="1999 NFL Season")
        print(client.free_tier.remaining)

        analogy = await client.complete_json(messages)   # parsed JSON or None

        client.use_own_key("sk-or-...")                  # unlimited, no quota headers
"""

from __future__ import annotations

import logging
from typing import Any

import httpx

from signal_gateway.gateway.errors import FREE_LIMIT_HEADER, FREE_REMAINING_HEADER
from signal_gateway.gateway.json_extractor import parse_llm_json
from signal_gateway.gateway.normalizer import extract_message_text
from signal_gateway.gateway.types import FreeTierState

logger = logging.getLogger(__name__)

CHAT_PATH = "/api/chat"
JSON_RESPONSE_FORMAT = {"type": "json_object"}

# One allowance per process, shared by every client instance
FREE_TIER_STATE = FreeTierState()


class GatewayClientError(Exception):
    """Error body returned by the gateway."""

    def __init__(
        self,
        status_code: int,
        message: str,
        code: str | None = None,
        retry_after: int | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.retry_after = retry_after

    @property
    def is_quota_exhausted(self) -> bool:
        return self.code == "FREE_TIER_EXHAUSTED"

    @property
    def is_retryable(self) -> bool:
        return self.status_code == 429 or self.code == "ALL_MODELS_FAILED"


def _int_header(response: httpx.Response, name: str) -> int | None:
    value = response.headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None


class GatewayClient:
    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        state: FreeTierState | None = None,
        timeout: float = 90.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.free_tier = state if state is not None else FREE_TIER_STATE
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self) -> GatewayClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    # --- Credentials ---

    def use_own_key(self, api_key: str) -> None:
        """Switch to caller-supplied credentials. The shared allowance no longer applies."""
        self.api_key = api_key
        self.free_tier.reset()

    def use_shared_quota(self) -> None:
        self.api_key = None

    @property
    def uses_own_key(self) -> bool:
        return bool(self.api_key)

    # --- Requests ---

    async def complete(
        self,
        messages: list[dict[str, Any]],
        *,
        model: str = "",
        response_format: dict[str, Any] | None = None,
        plugins: list[dict[str, Any]] | None = None,
        topic: str = "",
        domain: str = "",
        enrichment_guidance: str = "",
        skip_usage_count: bool = False,
    ) -> dict[str, Any]:
        """POST one chat request. Returns the upstream completion document."""
        body: dict[str, Any] = {"messages": messages}
        if model:
            body["model"] = model
        if response_format is not None:
            body["response_format"] = response_format
        if plugins is not None:
            body["plugins"] = plugins
        if topic:
            body["topic"] = topic
        if domain:
            body["domain"] = domain
        if enrichment_guidance:
            body["enrichmentGuidance"] = enrichment_guidance
        if skip_usage_count:
            body["skipUsageCount"] = True

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        response = await self._post(body, headers)
        self._track_quota(response)

        try:
            data = response.json()
        except ValueError:
            data = None

        if not response.is_success:
            raise self._error_from(response, data)
        if not isinstance(data, dict):
            raise GatewayClientError(response.status_code, "Invalid response from gateway")
        return data

    async def complete_json(self, messages: list[dict[str, Any]], **kwargs: Any) -> Any:
        """Request JSON mode and parse the first choice. None when nothing usable came back."""
        kwargs.setdefault("response_format", JSON_RESPONSE_FORMAT)
        data = await self.complete(messages, **kwargs)
        return parse_llm_json(extract_message_text(data))

    async def _post(self, body: dict[str, Any], headers: dict[str, str]) -> httpx.Response:
        url = f"{self.base_url}{CHAT_PATH}"
        if self._client is not None:
            return await self._client.post(url, json=body, headers=headers)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=body, headers=headers)

    # --- Response handling ---

    def _track_quota(self, response: httpx.Response) -> None:
        if self.uses_own_key:
            return
        remaining = _int_header(response, FREE_REMAINING_HEADER)
        if remaining is not None:
            self.free_tier.update(remaining, _int_header(response, FREE_LIMIT_HEADER))

    def _error_from(self, response: httpx.Response, data: Any) -> GatewayClientError:
        if not isinstance(data, dict):
            return GatewayClientError(response.status_code, f"Gateway returned HTTP {response.status_code}")

        error = GatewayClientError(
            response.status_code,
            str(data.get("error") or f"Gateway returned HTTP {response.status_code}"),
            code=data.get("code"),
            retry_after=data.get("retryAfter"),
        )
        if error.is_quota_exhausted and not self.uses_own_key:
            limit = data.get("limit")
            self.free_tier.mark_exhausted(limit if isinstance(limit, int) else None)
        logger.warning("Gateway error %d (%s): %s", error.status_code, error.code, error.message)
        return error
