"""Chat Gateway: orchestrator integrating all gateway components.

Handles one inbound chat request end to end:
  1. Burst Limiter (per caller, before anything else)
  2. Configuration and input validation
  3. Shared-tier model allow-list and daily quota check
  4. Granularity Router → optional web enrichment directive
  5. Fallback chain: Circuit Breaker-aware model selection, Resilient Transport
     per model, breaker bookkeeping after each model attempt resolves
  6. Quota increment (only on success, only when the call counts)

Usage:
    gateway = build_gateway(settings)

    result = await gateway.handle(
        ChatRequest(messages=[...], model="google/gemini-2.5-flash-lite"),
        CallerContext(identity="203.0.113.7"),
    )
"""

from __future__ import annotations

import logging
from typing import Any

from signal_gateway.core.config import Settings
from signal_gateway.core.metrics import FALLBACKS, OWN_KEY_MODEL_LABEL, REJECTIONS, UPSTREAM_CALLS
from signal_gateway.gateway.circuit_breaker import CircuitBreakerRegistry
from signal_gateway.gateway.errors import (
    FREE_LIMIT_HEADER,
    FREE_REMAINING_HEADER,
    AllModelsFailedError,
    BurstLimitError,
    ConfigurationError,
    FreeTierExhaustedError,
    GatewayError,
    InvalidRequestError,
    PremiumModelError,
    UpstreamRejectedError,
)
from signal_gateway.gateway.fallback import FallbackSelector, build_model_chain
from signal_gateway.gateway.granularity import GranularityRouter, build_enrichment_directive
from signal_gateway.gateway.normalizer import is_well_formed_completion
from signal_gateway.gateway.quota import QuotaTracker, build_quota_store
from signal_gateway.gateway.rate_limiter import BurstLimiter
from signal_gateway.gateway.transport import ResilientTransport, RetryObserver, TransportError
from signal_gateway.gateway.types import (
    CallerContext,
    CallOutcome,
    ChatRequest,
    GatewayResult,
    RetryPolicy,
)

logger = logging.getLogger(__name__)

# Upstream statuses meaning "this model cannot serve you", worth trying another
MODEL_UNAVAILABLE_STATUSES = frozenset({402, 404})


class ChatGateway:
    """Main gateway orchestrator.

    Owns every piece of process-wide mutable state (breakers, burst records,
    quota store) so tests can build an isolated instance per case.
    """

    def __init__(
        self,
        *,
        api_key: str,
        upstream_url: str,
        models: list[str],
        default_model: str,
        breakers: CircuitBreakerRegistry,
        transport: ResilientTransport,
        burst_limiter: BurstLimiter,
        quota: QuotaTracker,
        router: GranularityRouter | None = None,
        no_json_mode_models: frozenset[str] = frozenset(),
        enrichment_max_results: int = 5,
        referer: str = "",
        title: str = "",
    ):
        self.api_key = api_key
        self.upstream_url = upstream_url
        self.models = list(models)
        self.default_model = default_model
        self.breakers = breakers
        self.selector = FallbackSelector(breakers)
        self.transport = transport
        self.burst_limiter = burst_limiter
        self.quota = quota
        self.router = router or GranularityRouter()
        self.no_json_mode_models = no_json_mode_models
        self.enrichment_max_results = enrichment_max_results
        self.referer = referer
        self.title = title

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, request: ChatRequest, caller: CallerContext) -> GatewayResult:
        """Run one request through the full pipeline.

        Raises a GatewayError subclass for every caller-visible failure.
        """
        try:
            return await self._handle(request, caller)
        except GatewayError as e:
            REJECTIONS.labels(code=e.code or type(e).__name__).inc()
            raise

    async def _handle(self, request: ChatRequest, caller: CallerContext) -> GatewayResult:
        identity = caller.identity

        if not self.burst_limiter.allow(identity):
            raise BurstLimitError(retry_after=self.burst_limiter.retry_after(identity))

        own_key = caller.uses_own_key
        api_key = caller.own_api_key if own_key else self.api_key
        if not api_key:
            error = ConfigurationError("OPENROUTER_API_KEY is not set")
            logger.error(
                "Rejecting shared-tier request from %s: %s",
                identity,
                error.detail,
                extra={"caller": identity},
            )
            raise error

        if request.messages is None:
            raise InvalidRequestError("Missing required field: messages")

        model = (request.model or "").strip() or self.default_model

        if own_key:
            chain = [model]
        else:
            if model not in self.models:
                raise PremiumModelError(model)
            usage = await self.quota.get_usage(identity)
            if self.quota.is_exhausted(usage):
                logger.info(
                    "Free tier exhausted for %s (%d/%d)",
                    identity,
                    usage,
                    self.quota.daily_limit,
                    extra={"caller": identity},
                )
                raise FreeTierExhaustedError(
                    self.quota.daily_limit,
                    retry_after=self.quota.seconds_until_reset(),
                )
            chain = build_model_chain(model, self.models)

        plugins, enriched = self._resolve_plugins(request)

        result = await self._run_chain(chain, request, plugins, api_key)
        result.enriched = enriched

        if not own_key:
            result.headers.update(await self._settle_quota(identity, request.skip_usage_count))

        if result.fallback_used:
            logger.info(
                "Request from %s served by %s after trying %s",
                identity,
                result.model,
                ", ".join(result.models_tried[:-1]),
            )
        return result

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _resolve_plugins(self, request: ChatRequest) -> tuple[list[dict] | None, bool]:
        """Explicit plugins win; otherwise ask the Granularity Router."""
        if request.plugins is not None:
            return request.plugins, bool(request.plugins)

        if not (request.topic or request.domain):
            return None, False

        decision = self.router.classify(request.topic, request.domain)
        directive = build_enrichment_directive(
            decision,
            max_results=self.enrichment_max_results,
            guidance=request.enrichment_guidance,
        )
        if directive:
            logger.info("Enriching request (query=%r): %s", decision.query, decision.reason)
        return directive, directive is not None

    async def _run_chain(
        self,
        chain: list[str],
        request: ChatRequest,
        plugins: list[dict] | None,
        api_key: str,
    ) -> GatewayResult:
        """Try chain candidates until one answers with a usable completion."""
        headers = self._upstream_headers(api_key)
        remaining = list(chain)
        tried: list[str] = []
        json_mode = bool(request.response_format)
        last_status: int | None = None

        while remaining:
            model = self.selector.select_model(remaining[0], remaining)
            remaining.remove(model)

            if tried:
                FALLBACKS.inc()
                logger.warning("Falling back from %s to %s", tried[-1], model, extra={"model": model})
            tried.append(model)

            while True:
                payload = self._build_payload(model, request, plugins, json_mode)
                outcome, data, status = await self._call_model(model, payload, headers)

                if outcome is CallOutcome.REJECTED and status == 400 and "response_format" in payload:
                    logger.warning("Upstream 400 with JSON mode (%s), retrying without response_format", model)
                    json_mode = False
                    continue
                break

            UPSTREAM_CALLS.labels(model=self._metric_label(model), outcome=outcome.value).inc()

            if outcome is CallOutcome.SUCCESS:
                self.breakers.record_success(model)
                return GatewayResult(body=data, model=model, models_tried=tried)

            if outcome is CallOutcome.REJECTED:
                logger.error("Upstream rejected request to %s with HTTP %s", model, status, extra={"model": model})
                message, code = _upstream_error(data)
                raise UpstreamRejectedError(status or 502, message, code)

            # RETRY_EXHAUSTED, MODEL_UNAVAILABLE, MALFORMED: the model is unhealthy
            self.breakers.record_failure(model)
            last_status = status
            logger.warning(
                "Model %s failed (%s, status=%s)",
                model,
                outcome.value,
                status,
                extra={"model": model, "outcome": outcome.value},
            )

        logger.error("All models failed (%s), last status %s", ", ".join(tried), last_status)
        raise AllModelsFailedError(tried, last_status)

    async def _call_model(
        self,
        model: str,
        payload: dict,
        headers: dict[str, str],
    ) -> tuple[CallOutcome, Any, int | None]:
        """One model attempt (transport retries included) → (outcome, body, status)."""
        try:
            response = await self.transport.send(
                self.upstream_url,
                payload,
                headers,
                on_retry=_retry_logger(model),
            )
        except TransportError as e:
            if e.status_code in MODEL_UNAVAILABLE_STATUSES:
                return CallOutcome.MODEL_UNAVAILABLE, e.body, e.status_code
            if e.retryable:
                return CallOutcome.RETRY_EXHAUSTED, e.body, e.status_code
            return CallOutcome.REJECTED, e.body, e.status_code

        try:
            data = response.json()
        except ValueError:
            logger.warning("Unparsable body from %s (HTTP %d)", model, response.status_code)
            return CallOutcome.MALFORMED, None, response.status_code

        if not is_well_formed_completion(data):
            logger.warning("Malformed completion from %s (HTTP %d)", model, response.status_code)
            return CallOutcome.MALFORMED, data, response.status_code

        return CallOutcome.SUCCESS, data, response.status_code

    async def _settle_quota(self, identity: str, skip_usage_count: bool) -> dict[str, str]:
        """Count the call (unless exempt) and return the quota headers."""
        if skip_usage_count:
            usage = await self.quota.get_usage(identity)
        else:
            usage = await self.quota.increment_usage(identity)
        return {
            FREE_REMAINING_HEADER: str(self.quota.remaining(usage)),
            FREE_LIMIT_HEADER: str(self.quota.daily_limit),
        }

    def _build_payload(
        self,
        model: str,
        request: ChatRequest,
        plugins: list[dict] | None,
        json_mode: bool,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {"model": model, "messages": request.messages}
        if request.response_format and json_mode and model not in self.no_json_mode_models:
            payload["response_format"] = request.response_format
        if plugins:
            payload["plugins"] = plugins
        return payload

    def _metric_label(self, model: str) -> str:
        return model if model in self.models else OWN_KEY_MODEL_LABEL

    def _upstream_headers(self, api_key: str) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {api_key}",
        }
        if self.referer:
            headers["HTTP-Referer"] = self.referer
        if self.title:
            headers["X-Title"] = self.title
        return headers

    # ------------------------------------------------------------------
    # Introspection / lifecycle
    # ------------------------------------------------------------------

    def health(self) -> dict:
        return {
            "status": "ok",
            "quota_backend": self.quota.backend,
            "open_breakers": self.breakers.open_models(),
        }

    async def close(self) -> None:
        await self.quota.store.close()


def _retry_logger(model: str) -> RetryObserver:
    def log_retry(attempt: int, max_attempts: int, wait_ms: int, reason: str) -> None:
        logger.info(
            "Retrying %s (attempt %d/%d) in %dms: %s",
            model,
            attempt,
            max_attempts,
            wait_ms,
            reason,
        )

    return log_retry


def _upstream_error(data: Any) -> tuple[str, str | None]:
    """(message, code) from an OpenAI-style error body."""
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict):
            code = error.get("code")
            return str(error.get("message") or "API request failed"), (str(code) if code is not None else None)
        if isinstance(error, str) and error:
            return error, None
    return "API request failed", None


def build_gateway(config: Settings) -> ChatGateway:
    """Assemble a gateway from settings. Called once at startup."""
    policy = RetryPolicy(
        max_attempts=config.retry_max_attempts,
        base_delay=config.retry_base_delay,
        max_delay=config.retry_max_delay,
        jitter=config.retry_jitter,
        retryable_statuses=config.retryable_status_set,
    )
    return ChatGateway(
        api_key=config.openrouter_api_key,
        upstream_url=config.openrouter_url,
        models=config.free_tier_model_list,
        default_model=config.free_tier_default_model,
        breakers=CircuitBreakerRegistry(
            failure_threshold=config.breaker_failure_threshold,
            cooldown_seconds=config.breaker_cooldown_seconds,
            metric_models=config.free_tier_model_list,
        ),
        transport=ResilientTransport(policy=policy, timeout=config.upstream_timeout_seconds),
        burst_limiter=BurstLimiter(
            window_seconds=config.burst_window_seconds,
            max_per_window=config.burst_max_requests,
        ),
        quota=QuotaTracker(
            build_quota_store(config.redis_url, timeout_seconds=config.redis_timeout_seconds),
            daily_limit=config.free_tier_daily_limit,
        ),
        no_json_mode_models=config.no_json_mode_model_set,
        enrichment_max_results=config.enrichment_max_results,
        referer=config.upstream_referer,
        title=config.upstream_title,
    )
