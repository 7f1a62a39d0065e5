"""Resilient Transport: one upstream HTTP call with retry on transient failure.

Retries only on retryable HTTP statuses (429, 5xx by default) and on
network-level failures (connect errors, resets, timeouts). Any other non-2xx
status fails immediately.

Backoff strategy (attempt n is 1-based):
  delay = min(max_delay, base * 2^(n-1)) * (1 ± jitter)

Delays are awaited inline on the calling task; nothing runs in the background,
so cancelling the caller also abandons a pending retry wait.
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from signal_gateway.gateway.types import RetryPolicy

logger = logging.getLogger(__name__)

# (attempt_number, max_attempts, wait_ms, reason)
RetryObserver = Callable[[int, int, int, str], None]


class TransportError(Exception):
    """Raised when an upstream call finally fails.

    Carries the last HTTP status (None for network failures) and the decoded
    response body so callers can branch on structured upstream error codes.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
        attempts: int = 1,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.attempts = attempts
        self.retryable = retryable


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 8.0,
    jitter: float = 0.2,
) -> float:
    """Delay in seconds before retry number ``attempt`` (1-based).

    Formula: min(max_delay, base * 2^(attempt-1)), then scaled by a random
    factor in [1 - jitter, 1 + jitter].
    """
    exponential = min(max_delay, base_delay * (2 ** (attempt - 1)))
    factor = 1.0 + random.uniform(-jitter, jitter)
    return max(0.0, exponential * factor)


def _decode_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class ResilientTransport:
    """POSTs JSON upstream with bounded retries.

    Usage:
        transport = ResilientTransport(policy=RetryPolicy(max_attempts=3))
        response = await transport.send(url, payload, headers, on_retry=log_retry)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        timeout: float = 60.0,
        client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.timeout = timeout
        self._client = client  # injected clients are owned by the caller
        self._sleep = sleep

    async def _post(self, url: str, payload: dict, headers: dict[str, str]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, json=payload, headers=headers)

    async def send(
        self,
        url: str,
        payload: dict,
        headers: dict[str, str],
        *,
        on_retry: RetryObserver | None = None,
    ) -> httpx.Response:
        """Send the request, retrying transient failures.

        Returns the first 2xx response. Raises TransportError on a
        non-retryable status or once attempts are exhausted.
        """
        max_attempts = max(1, self.policy.max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                response = await self._post(url, payload, headers)
            except httpx.TransportError as e:
                reason = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                if attempt >= max_attempts:
                    raise TransportError(
                        f"Network error reaching upstream after {attempt} attempts ({reason})",
                        attempts=attempt,
                        retryable=True,
                    ) from e
            else:
                if response.is_success:
                    return response

                status = response.status_code
                body = _decode_body(response)
                retryable = status in self.policy.retryable_statuses

                if not retryable:
                    raise TransportError(
                        f"Upstream returned HTTP {status}",
                        status_code=status,
                        body=body,
                        attempts=attempt,
                        retryable=False,
                    )
                if attempt >= max_attempts:
                    raise TransportError(
                        f"Upstream returned HTTP {status} after {attempt} attempts",
                        status_code=status,
                        body=body,
                        attempts=attempt,
                        retryable=True,
                    )
                reason = f"HTTP {status}"

            delay = calculate_backoff(
                attempt=attempt,
                base_delay=self.policy.base_delay,
                max_delay=self.policy.max_delay,
                jitter=self.policy.jitter,
            )
            self._notify(on_retry, attempt, max_attempts, delay, reason)
            await self._sleep(delay)

        # range() always ends in a return or raise above
        raise TransportError("Retry loop exited unexpectedly", attempts=max_attempts)

    @staticmethod
    def _notify(
        observer: RetryObserver | None,
        attempt: int,
        max_attempts: int,
        delay: float,
        reason: str,
    ) -> None:
        if observer is None:
            return
        try:
            observer(attempt, max_attempts, int(delay * 1000), reason)
        except Exception:
            # observers are a logging side-channel
            logger.exception("Retry observer raised; ignoring")
