"""
Sentry Error Tracking
=====================

Error tracking for the delivery workers and the monitoring app.

Related files:
- conversion_relay/workers/arq_worker.py: Initializes Sentry on worker startup
- conversion_relay/main.py: Initializes Sentry for the monitoring app
- conversion_relay/workers/delivery_worker.py: Captures unexpected adapter errors
- conversion_relay/workers/dispatch_queue.py: Reports exhausted deliveries

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
- RELEASE_VERSION: Release tag set by CI/CD

NOTE: `send_default_pii` stays False and `scrub_event` drops credential-looking
extras before anything leaves the process. Callers pass job ids and error
codes only.
"""

from __future__ import annotations

import os
import logging
from typing import Any, Dict, Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)

SENSITIVE_EXTRA_KEYS = frozenset({
    "access_token",
    "accessToken",
    "refresh_token",
    "refreshToken",
    "credentials",
    "client_secret",
    "hashed_user_data",
    "user_data",
})
FILTERED = "[Filtered]"


def scrub_event(event: Dict[str, Any], hint: Optional[dict] = None) -> Dict[str, Any]:
    """before_send hook: mask extras whose key names a credential or user data."""
    extra = event.get("extra")
    if extra:
        event["extra"] = {
            key: FILTERED if key in SENSITIVE_EXTRA_KEYS else value
            for key, value in extra.items()
        }
    return event


def init_sentry(component: str = "conversion-relay") -> bool:
    """
    Initialize the Sentry SDK once per process.

    Args:
        component: Tag identifying the process, e.g. "worker:META_CAPI"

    Returns:
        True if Sentry was initialized, False when no DSN is configured
        or initialization failed.
    """
    dsn = os.environ.get("SENTRY_DSN")
    if not dsn:
        logger.debug("[SENTRY] SENTRY_DSN not set, error tracking disabled")
        return False

    environment = os.environ.get("ENVIRONMENT", "development")

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,         # breadcrumbs
                    event_level=logging.ERROR,  # events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            before_send=scrub_event,
            release=os.environ.get("RELEASE_VERSION"),
        )
        sentry_sdk.set_tag("component", component)

        logger.info(f"[SENTRY] Initialized for {component} ({environment})")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def _apply_extras(scope, extra: Optional[dict]) -> None:
    for key, value in (extra or {}).items():
        scope.set_extra(key, value)


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """Report a handled exception (e.g. an attempt turned into a retry)."""
    try:
        with sentry_sdk.new_scope() as scope:
            _apply_extras(scope, extra)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """Report a notable condition that is not an exception (e.g. retries exhausted)."""
    try:
        with sentry_sdk.new_scope() as scope:
            _apply_extras(scope, extra)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture message: {e}")
