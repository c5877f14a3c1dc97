"""
Sentry Error Tracking
=====================

Error tracking for the API and the arq worker.

Related files:
- storepulse/main.py: Initializes Sentry in create_app()
- storepulse/workers/arq_worker.py: Initializes Sentry on worker startup
- storepulse/routers/shopify_webhooks.py: Captures masked webhook failures

Environment Variables:
- SENTRY_DSN: Sentry project DSN (Sentry stays disabled without it)
- ENVIRONMENT: Environment name (production, staging, development)
"""

from __future__ import annotations

import logging
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.redis import RedisIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

logger = logging.getLogger(__name__)


def init_sentry(dsn: Optional[str], environment: str = "development") -> bool:
    """
    Initialize the Sentry SDK.

    Call once per process, before the FastAPI app handles requests.

    Returns:
        True if Sentry was initialized, False if no DSN is configured
        or initialization failed.
    """
    if not dsn:
        return False

    try:
        sentry_sdk.init(
            dsn=dsn,
            environment=environment,
            integrations=[
                FastApiIntegration(transaction_style="endpoint"),
                SqlalchemyIntegration(),
                RedisIntegration(),
                LoggingIntegration(
                    level=logging.INFO,        # INFO+ as breadcrumbs
                    event_level=logging.ERROR,  # ERROR+ as events
                ),
            ],
            traces_sample_rate=0.1,
            # Webhook bodies carry customer PII
            send_default_pii=False,
        )
        logger.debug(f"[SENTRY] Initialized for {environment} environment")
        return True

    except Exception as e:
        logger.error(f"[SENTRY] Failed to initialize: {e}")
        return False


def capture_exception(exception: Exception, extra: Optional[dict] = None) -> None:
    """
    Capture a handled exception to Sentry.

    Use for errors that are caught and masked (webhook processing, per-tenant
    job failures) but should still be tracked. A no-op when Sentry is not
    initialized.

    Example:
        try:
            dispatch_event(db, tenant_id, event)
        except Exception as e:
            capture_exception(e, extra={"topic": topic})
            return masked_response()
    """
    try:
        with sentry_sdk.new_scope() as scope:
            if extra:
                for key, value in extra.items():
                    scope.set_extra(key, value)
            sentry_sdk.capture_exception(exception)
    except Exception as e:
        logger.error(f"[SENTRY] Failed to capture exception: {e}")
