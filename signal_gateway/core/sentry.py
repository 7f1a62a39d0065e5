"""Sentry error tracking for the gateway.

Only unhandled exceptions are reported; no performance tracing. A no-op when
SENTRY_DSN is empty, so it is safe to call unconditionally at startup.
"""

import logging

from signal_gateway import __version__
from signal_gateway.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry() -> bool:
    """Initialize Sentry if SENTRY_DSN is configured. Returns True when enabled."""
    if not settings.sentry_dsn:
        logger.debug("Sentry DSN not configured, skipping")
        return False

    import sentry_sdk
    from sentry_sdk.integrations.fastapi import FastApiIntegration

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.app_env,
        release=f"signal-gateway@{__version__}",
        # caller IPs are quota keys; keep them out of events
        send_default_pii=False,
        integrations=[FastApiIntegration(transaction_style="endpoint")],
    )
    logger.info("Sentry initialized (env=%s)", settings.app_env)
    return True
