"""Shopify webhook ingestion endpoint.

WHAT:
    Single endpoint receiving every subscribed Shopify topic for every
    tenant: POST /api/v1/webhook/shopify

    Flow:
    1. Read the raw body (before any JSON parsing)
    2. Resolve the tenant from X-Shopify-Shop-Domain and verify
       X-Shopify-Hmac-Sha256 with its secret
    3. Parse the body into the topic's event variant
    4. Dispatch (upsert / checkout state machine) and invalidate cache

WHY:
    - Authentication failures (missing headers, unknown shop, bad HMAC) are
      rejected with 4xx before any write
    - Any failure after authentication is logged, sent to Sentry and
      acknowledged with 200 {"success": false}. Shopify retries non-2xx
      responses and eventually disables the subscription, so processing
      errors are masked; the event is lost and the backfill sync is the
      recovery path.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https
    - storepulse/webhooks/ (verification, payloads, dispatcher)
"""

import json
import logging

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from storepulse.context import AppContext
from storepulse.database import get_db
from storepulse.deps import get_context
from storepulse.telemetry import capture_exception
from storepulse.webhooks.dispatcher import dispatch_event
from storepulse.webhooks.payloads import parse_event
from storepulse.webhooks.verification import (
    HMAC_HEADER,
    SHOP_DOMAIN_HEADER,
    TOPIC_HEADER,
    authenticate_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhook", tags=["Shopify Webhooks"])


@router.post("/shopify")
async def receive_shopify_webhook(
    request: Request,
    db: Session = Depends(get_db),
    context: AppContext = Depends(get_context),
):
    """Receive, authenticate and apply one Shopify webhook.

    RESPONSE:
        200 {"success": true}                       processed
        200 {"success": false, "error": ...}        processing failed (masked)
        400 / 401 / 404                             authentication failure
    """
    raw_body = await request.body()
    topic = request.headers.get(TOPIC_HEADER)
    shop_domain = request.headers.get(SHOP_DOMAIN_HEADER)

    # Raises AuthenticationFailure -> 4xx via the app exception handler
    tenant = authenticate_webhook(
        db,
        raw_body,
        signature=request.headers.get(HMAC_HEADER),
        topic=topic,
        shop_domain=shop_domain,
    )
    tenant_id = tenant.id

    try:
        body = json.loads(raw_body)
        event = parse_event(topic, body)
        dispatch_event(db, tenant_id, event, cache=context.cache)
    except Exception as e:
        logger.exception(f"[WEBHOOK] Failed to process {topic} for {shop_domain}: {e}")
        capture_exception(e, extra={
            "operation": "shopify_webhook",
            "topic": topic,
            "shop_domain": shop_domain,
        })
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"success": False, "error": "Processing error logged"},
        )

    return JSONResponse(status_code=status.HTTP_200_OK, content={"success": True})
