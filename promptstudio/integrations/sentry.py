# =============================================================================
# Sentry Error Tracking Integration
# =============================================================================
#
# Setup:
#   1. Create a Python project at sentry.io
#   2. Copy DSN to .env: SENTRY_DSN=https://...@sentry.io/...
#
# Usage:
#   init_sentry(settings) runs at app startup (promptstudio/api/app.py) with
#   the settings the app was created with.
#   capture_message() is the side channel for failures that must not reach
#   the caller, such as an asset reclaim after a successful record update.
#
# =============================================================================

import logging
from typing import Any

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from promptstudio.config import Settings, get_settings
from promptstudio.core.errors import ServiceError

logger = logging.getLogger(__name__)


def init_sentry(settings: Settings | None = None) -> bool:
    """
    Initialize Sentry error tracking.

    Returns True if initialized, False if skipped.
    """
    settings = settings or get_settings()

    if not settings.sentry_dsn:
        logger.info("SENTRY_DSN not set - error tracking disabled")
        return False

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,

        # Performance monitoring (sample 10% of transactions in prod)
        traces_sample_rate=0.1 if settings.is_production else 1.0,

        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            StarletteIntegration(transaction_style="endpoint"),
            LoggingIntegration(
                level=logging.INFO,
                event_level=logging.ERROR,
            ),
        ],

        # Don't send PII by default
        send_default_pii=False,

        before_send=_filter_events,
        before_send_transaction=_filter_transactions,
    )

    logger.info(f"Sentry initialized for {settings.environment}")
    return True


def _filter_events(event: dict, hint: dict) -> dict | None:
    """Filter out expected errors and scrub session data."""
    if "exc_info" in hint:
        _, exc_value, _ = hint["exc_info"]

        # Expected client errors (auth, quota, validation, not found)
        if isinstance(exc_value, ServiceError) and exc_value.status_code < 500:
            return None

    if "request" in event:
        request = event["request"]
        if "headers" in request:
            headers = request["headers"]
            for key in list(headers.keys()):
                if key.lower() in ("authorization", "cookie", "set-cookie"):
                    headers[key] = "[Filtered]"
        if "cookies" in request:
            request["cookies"] = "[Filtered]"

    return event


def _filter_transactions(event: dict, hint: dict) -> dict | None:
    """Skip health checks and asset reads."""
    transaction = event.get("transaction", "")

    if transaction in ("/health", "/healthz", "/ready"):
        return None
    if transaction.startswith("/api/assets"):
        return None

    return event


def capture_message(message: str, level: str = "info", **context: Any) -> str | None:
    """
    Capture a message to Sentry, or log it when Sentry is off.

    Levels: fatal, error, warning, info, debug
    """
    if not sentry_sdk.get_client().is_active():
        logger.log(getattr(logging, level.upper(), logging.INFO), "%s %s", message, context or "")
        return None

    with sentry_sdk.new_scope() as scope:
        for key, value in context.items():
            scope.set_extra(key, value)
        return sentry_sdk.capture_message(message, level=level)


def set_user(user_id: str, username: str | None = None, **extra: Any) -> None:
    """Set the current user context for error reports."""
    if sentry_sdk.get_client().is_active():
        sentry_sdk.set_user({"id": user_id, "username": username, **extra})
