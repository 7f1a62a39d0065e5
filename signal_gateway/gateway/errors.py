"""Gateway error taxonomy.

Every error the caller can see is a ``GatewayError`` carrying the HTTP status,
a human-readable message and, where the client can act on it, a stable code:

  - ConfigurationError      500  (shared upstream key missing)
  - InvalidRequestError     400
  - PremiumModelError       403  PREMIUM_MODEL
  - BurstLimitError         429  RATE_LIMITED (+ retryAfter)
  - FreeTierExhaustedError  403  FREE_TIER_EXHAUSTED (+ retryAfter, remaining, limit)
  - UpstreamRejectedError   <upstream status>, non-retryable upstream refusal
  - AllModelsFailedError    502  ALL_MODELS_FAILED
"""

from __future__ import annotations

from typing import Any

FREE_REMAINING_HEADER = "X-Free-Remaining"
FREE_LIMIT_HEADER = "X-Free-Limit"


class GatewayError(Exception):
    """Base class for errors surfaced to the caller."""

    status_code: int = 500
    code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        code: str | None = None,
        retry_after: int | None = None,
        extra: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if code is not None:
            self.code = code
        self.retry_after = retry_after
        self.extra = extra or {}
        self.headers = headers or {}

    def to_body(self) -> dict[str, Any]:
        """Serialize to the wire shape ``{error, code?, retryAfter?, ...}``."""
        body: dict[str, Any] = {"error": self.message}
        if self.code:
            body["code"] = self.code
        if self.retry_after is not None:
            body["retryAfter"] = self.retry_after
        body.update(self.extra)
        return body


class ConfigurationError(GatewayError):
    """Gateway instance is misconfigured. Detail is logged, never returned."""

    status_code = 500

    def __init__(self, detail: str):
        super().__init__("Server not configured. Please add your own API key in Settings.")
        self.detail = detail


class InvalidRequestError(GatewayError):
    status_code = 400


class PremiumModelError(GatewayError):
    status_code = 403
    code = "PREMIUM_MODEL"

    def __init__(self, model: str):
        super().__init__(
            f'Model "{model}" requires your own API key. Add it in Settings for unlimited access.'
        )
        self.model = model


class BurstLimitError(GatewayError):
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(self, retry_after: int):
        super().__init__("Too many requests. Please slow down.", retry_after=retry_after)


class FreeTierExhaustedError(GatewayError):
    """Daily allowance used up. 403 rather than 429 so clients do not auto-retry."""

    status_code = 403
    code = "FREE_TIER_EXHAUSTED"

    def __init__(self, limit: int, retry_after: int | None = None):
        super().__init__(
            f"You've used your {limit} free searches for today. "
            "Add your own API key for unlimited access!",
            retry_after=retry_after,
            extra={"remaining": 0, "limit": limit},
            headers={FREE_REMAINING_HEADER: "0", FREE_LIMIT_HEADER: str(limit)},
        )
        self.limit = limit


class UpstreamRejectedError(GatewayError):
    """Upstream refused the request for a reason another model would not fix."""

    def __init__(self, status_code: int, message: str, code: str | None = None):
        super().__init__(message or "API request failed", status_code=status_code, code=code)


class AllModelsFailedError(GatewayError):
    status_code = 502
    code = "ALL_MODELS_FAILED"

    def __init__(self, models_tried: list[str], last_status: int | None = None):
        super().__init__(
            "All models are temporarily unavailable. Please try again in a moment. "
            "This attempt was not counted against your free searches."
        )
        self.models_tried = models_tried
        self.last_status = last_status
