"""
Telemetry Module
================

Observability for StorePulse.

Components:
- sentry.py: Error tracking for the API and worker

Usage:
    from storepulse.telemetry import init_sentry, capture_exception
"""

from storepulse.telemetry.sentry import (
    init_sentry,
    capture_exception,
)

__all__ = [
    "init_sentry",
    "capture_exception",
]
