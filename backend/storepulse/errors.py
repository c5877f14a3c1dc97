"""Error taxonomy.

WHAT:
    Exceptions for the failure classes of the ingestion and admin paths:
    - AuthenticationFailure: inbound webhook rejected before any mutation
    - ValidationFailure: administrative request missing a precondition
    - UpstreamFailure: Shopify API unreachable or erroring during backfill
    - ProcessingFailure: a webhook body could not be handled

WHY:
    Webhook processing failures are masked behind a 200 so Shopify does not
    retry-storm us; everything else surfaces as a structured 4xx/5xx via the
    handler registered in storepulse/main.py. Cache failures never become
    exceptions at all (see storepulse/cache.py).
"""

from typing import Optional


class StorePulseError(Exception):
    """Base class carrying the HTTP status used when it reaches a router."""

    status_code: int = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class AuthenticationFailure(StorePulseError):
    """Missing headers, unknown shop, or bad HMAC on an inbound webhook."""

    status_code = 401


class UnknownTenant(AuthenticationFailure):
    status_code = 404


class ValidationFailure(StorePulseError):
    status_code = 400


class UpstreamFailure(StorePulseError):
    status_code = 502


class ProcessingFailure(StorePulseError):
    status_code = 500
