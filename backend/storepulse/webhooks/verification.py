"""Shopify webhook authentication.

WHAT:
    HMAC-SHA256 signing/verification over the raw request body and tenant
    resolution from the X-Shopify-Shop-Domain header.

WHY:
    Each tenant registers its own webhook secret. A webhook is accepted only
    if its signature was produced with the secret of the tenant it claims to
    come from. Verification must run on the exact bytes received, before the
    body is parsed as JSON.

REFERENCES:
    - https://shopify.dev/docs/apps/build/webhooks/subscribe/https#step-5-verify-the-webhook
"""

import base64
import hashlib
import hmac
import logging
from typing import Optional

from sqlalchemy.orm import Session

from storepulse.errors import AuthenticationFailure, UnknownTenant
from storepulse.models import Tenant

logger = logging.getLogger(__name__)

HMAC_HEADER = "X-Shopify-Hmac-Sha256"
TOPIC_HEADER = "X-Shopify-Topic"
SHOP_DOMAIN_HEADER = "X-Shopify-Shop-Domain"


def compute_signature(raw_body: bytes, secret: str) -> str:
    """Base64-encoded HMAC-SHA256 of raw_body, as sent by Shopify."""
    return base64.b64encode(
        hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).digest()
    ).decode("utf-8")


def verify_signature(raw_body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Verify that raw_body was signed with secret.

    WHAT: Recompute the HMAC and compare in constant time
    WHY: Prevent forged webhooks; never raises on mismatch

    Returns:
        True if signature is valid, False otherwise
    """
    if not signature or not secret:
        return False

    expected = compute_signature(raw_body, secret)
    # Compare bytes: compare_digest rejects non-ASCII str input
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


def authenticate_webhook(
    db: Session,
    raw_body: bytes,
    signature: Optional[str],
    topic: Optional[str],
    shop_domain: Optional[str],
) -> Tenant:
    """Resolve and authenticate the tenant behind an inbound webhook.

    Raises:
        AuthenticationFailure: 400 if a required header is missing,
            401 if the signature does not verify
        UnknownTenant: 404 if no tenant owns shop_domain
    """
    if not signature or not topic or not shop_domain:
        logger.warning("[WEBHOOK] Missing required Shopify headers (domain=%s, topic=%s)", shop_domain, topic)
        raise AuthenticationFailure("Missing required headers", status_code=400)

    tenant = db.query(Tenant).filter(Tenant.shop_domain == shop_domain).first()
    if not tenant:
        logger.warning("[WEBHOOK] Unknown shop domain %s", shop_domain)
        raise UnknownTenant("Tenant not found")

    if not verify_signature(raw_body, signature, tenant.webhook_secret):
        logger.warning("[WEBHOOK] Invalid HMAC signature for %s (topic=%s)", shop_domain, topic)
        raise AuthenticationFailure("Invalid signature")

    return tenant
