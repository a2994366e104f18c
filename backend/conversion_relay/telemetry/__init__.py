"""
Telemetry Module
================

Sentry error tracking shared by the delivery workers and the monitoring app.

Usage:
    from conversion_relay.telemetry import init_sentry, capture_exception

    init_sentry(component="worker:META_CAPI")  # once per process
    capture_exception(e, extra={"job_id": job_id})
"""

from conversion_relay.telemetry.sentry import (
    init_sentry,
    capture_exception,
    capture_message,
    scrub_event,
)


__all__ = [
    "init_sentry",
    "capture_exception",
    "capture_message",
    "scrub_event",
]
