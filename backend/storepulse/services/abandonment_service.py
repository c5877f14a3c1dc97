"""Abandonment sweeper.

WHAT:
    Transitions PENDING checkouts older than the threshold (60 minutes from
    creation by default) to ABANDONED, stamping abandoned_at.

WHY:
    Shopify sends no "abandoned" event; abandonment is inferred from age.
    This is the only code path that produces ABANDONED checkouts.

CONCURRENCY:
    One conditional UPDATE per tenant (WHERE status='PENDING' AND
    created_at < cutoff). The scheduled sweep and a manual per-tenant run
    can overlap safely: a row can only match once.

REFERENCES:
    - storepulse/workers/arq_worker.py (every 15 minutes)
    - storepulse/routers/analytics.py (manual trigger)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Optional
from uuid import UUID

from sqlalchemy import update
from sqlalchemy.orm import Session

from storepulse.cache import MetricsCache
from storepulse.models import Checkout, CheckoutStatusEnum, Tenant, utcnow

logger = logging.getLogger(__name__)

ABANDONMENT_THRESHOLD_MINUTES = 60


@dataclass
class SweepSummary:
    """Result of a sweep across all tenants."""
    total_abandoned: int = 0
    tenant_stats: Dict[str, int] = field(default_factory=dict)
    failed_tenants: Dict[str, str] = field(default_factory=dict)


def detect_abandoned_checkouts(
    db: Session,
    tenant_id: UUID,
    threshold_minutes: int = ABANDONMENT_THRESHOLD_MINUTES,
    now: Optional[datetime] = None,
    cache: Optional[MetricsCache] = None,
) -> int:
    """Abandon a tenant's stale PENDING checkouts and commit.

    Args:
        db: Database session
        tenant_id: Tenant to sweep
        threshold_minutes: Age (from created_at) after which PENDING is abandoned
        now: Reference time (naive UTC); defaults to the current time
        cache: Metrics cache to invalidate when rows changed

    Returns:
        Number of checkouts transitioned
    """
    now = now or utcnow()
    cutoff = now - timedelta(minutes=threshold_minutes)

    try:
        result = db.execute(
            update(Checkout)
            .where(
                Checkout.tenant_id == tenant_id,
                Checkout.status == CheckoutStatusEnum.pending,
                Checkout.created_at < cutoff,
            )
            .values(status=CheckoutStatusEnum.abandoned, abandoned_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        raise

    abandoned = result.rowcount or 0
    if abandoned:
        logger.info(f"[ABANDONMENT] Tenant {tenant_id}: {abandoned} checkouts marked abandoned")
        if cache is not None:
            cache.invalidate_tenant(tenant_id)
    return abandoned


def detect_all_abandoned_checkouts(
    db: Session,
    threshold_minutes: int = ABANDONMENT_THRESHOLD_MINUTES,
    now: Optional[datetime] = None,
    cache: Optional[MetricsCache] = None,
) -> SweepSummary:
    """Sweep every tenant; one tenant's failure does not stop the batch."""
    now = now or utcnow()
    summary = SweepSummary()

    tenant_ids = [row[0] for row in db.query(Tenant.id).all()]
    for tenant_id in tenant_ids:
        try:
            count = detect_abandoned_checkouts(
                db, tenant_id, threshold_minutes=threshold_minutes, now=now, cache=cache,
            )
        except Exception as e:
            logger.exception(f"[ABANDONMENT] Sweep failed for tenant {tenant_id}: {e}")
            summary.failed_tenants[str(tenant_id)] = str(e)
            continue

        summary.tenant_stats[str(tenant_id)] = count
        summary.total_abandoned += count

    logger.info(
        f"[ABANDONMENT] Sweep complete: {summary.total_abandoned} abandoned across "
        f"{len(tenant_ids)} tenants ({len(summary.failed_tenants)} failed)"
    )
    return summary
