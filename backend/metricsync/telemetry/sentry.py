"""
Sentry Error Tracking
=====================

Centralized error tracking for the refresh worker and the diagnostics API.

Related files:
- metricsync/workers/arq_worker.py: Initializes Sentry on worker startup
- metricsync/main.py: Initializes Sentry on API startup
- metricsync/services/*.py: Caught-and-handled errors are reported here

Environment Variables:
- SENTRY_DSN: Sentry project DSN (required for Sentry to work)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.arq import ArqIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from metricsync.config import get_settings

logger = logging.getLogger(__name__)

_initialized = False


def init_sentry() -> bool:
    """
    Initialize Sentry SDK.

    Should be called once per process (worker startup or app factory).

    Returns:
        True if Sentry was initialized successfully, False otherwise.
    """
    global _initialized

    settings = get_settings()
    if not settings.SENTRY_DSN:
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENVIRONMENT,
            integrations=[
                ArqIntegration(),
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # Capture INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # Send ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            send_default_pii=False,
            release=settings.RELEASE_VERSION,
        )
        _initialized = True
        logger.debug("[SENTRY] Initialized for %s environment", settings.ENVIRONMENT)
        return True

    except Exception as e:
        logger.error("[SENTRY] Failed to initialize: %s", e)
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Manually capture an exception to Sentry.

    Use this for exceptions that are caught and handled but should still
    be tracked for monitoring purposes.

    Args:
        exception: The exception to capture
        extra: Additional context to attach to the event

    Example:
        try:
            persist_mismatch_events(...)
        except SQLAlchemyError as e:
            capture_exception(e, extra={"operation": "persist_mismatch_events"})
    """
    if not _initialized:
        logger.error("Exception (Sentry disabled): %s", exception)
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture exception: %s", e)


def capture_message(message: str, level: str = "info", extra: Optional[dict] = None) -> None:
    """
    Capture a message to Sentry.

    Used for notable non-exception events, e.g. hierarchy mismatches found
    after a refresh.
    """
    if not _initialized:
        logger.log(
            logging.getLevelName(level.upper()),
            "Message (Sentry disabled): %s", message
        )
        return

    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_message(message, level=level)
    except Exception as e:
        logger.error("[SENTRY] Failed to capture message: %s", e)
