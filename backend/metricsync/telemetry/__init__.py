"""
Telemetry Module
================

Observability for the refresh pipeline.

Components:
- sentry.py: Error tracking for the worker and diagnostics API

Environment Variables:
- SENTRY_DSN: Sentry project DSN
- ENVIRONMENT: Environment name

Usage:
    from metricsync.telemetry import init_observability, capture_exception

    init_observability()
"""

from metricsync.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)


def init_observability() -> dict:
    """
    Initialize all observability tools.

    Returns:
        Dict with status of each tool initialization, e.g. {"sentry": False}
    """
    return {
        "sentry": init_sentry(),
    }


__all__ = [
    "init_observability",
    "init_sentry",
    "capture_exception",
    "capture_message",
]
