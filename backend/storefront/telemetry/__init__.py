"""
Telemetry Module
================

Error tracking for the storefront tracking service.

Usage:
    from storefront.telemetry import init_sentry, capture_exception

    init_sentry()  # once, on app startup
"""

from storefront.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
)

__all__ = ["init_sentry", "capture_exception", "capture_message"]
