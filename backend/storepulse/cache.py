"""Best-effort Redis lookaside cache for tenant metrics.

WHAT:
    JSON get/set with TTL and per-tenant invalidation on top of redis-py.

WHY:
    Dashboard and analytics reads are aggregate queries; caching them for a
    short TTL keeps the read path cheap. Every mutation of tenant data
    invalidates the tenant's entries, so the TTL only bounds staleness for
    changes made outside the ingestion path.

KEYS:
    metrics:<tenant_id>                          dashboard, no date range
    metrics:<tenant_id>:<start>:<end>            dashboard, date range
    metrics:<tenant_id>:checkouts:<start>:<end>  checkout analytics
    metrics:<tenant_id>:refunds:<start>:<end>    refund analytics

FAILURE POLICY:
    Redis errors are logged and swallowed. A get that fails is a miss, a
    set or delete that fails is skipped. With no REDIS_URL the cache is
    disabled and every get is a miss.

REFERENCES:
    - https://redis.io/docs/latest/commands/scan/
    - storepulse/services/metrics_service.py (reader)
    - storepulse/webhooks/dispatcher.py (invalidator)
"""

import json
import logging
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)

KEY_PREFIX = "metrics"
DEFAULT_TTL_SECONDS = 120


def tenant_key(tenant_id: Any, *parts: Optional[str]) -> str:
    """Build a cache key under the tenant's metrics namespace.

    tenant_key(t) -> "metrics:<t>"
    tenant_key(t, "2024-01-01", "") -> "metrics:<t>:2024-01-01:"
    """
    if not parts:
        return f"{KEY_PREFIX}:{tenant_id}"
    return ":".join([KEY_PREFIX, str(tenant_id)] + [p or "" for p in parts])


class MetricsCache:
    """Lookaside cache wrapper around a redis.Redis client.

    Usage:
        cache = MetricsCache.from_url(settings.REDIS_URL)
        cached = cache.get_json(key)
        if cached is None:
            cached = compute()
            cache.set_json(key, cached)
    """

    def __init__(self, client: Optional[redis.Redis], ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self.client = client
        self.ttl_seconds = ttl_seconds

    @classmethod
    def from_url(cls, redis_url: Optional[str], ttl_seconds: int = DEFAULT_TTL_SECONDS) -> "MetricsCache":
        """Create a cache from a redis URL; empty URL means disabled."""
        if not redis_url:
            logger.info("[CACHE] REDIS_URL not set - metrics caching disabled")
            return cls(None, ttl_seconds)

        pool = redis.ConnectionPool.from_url(
            redis_url,
            decode_responses=True,
            max_connections=20,
            socket_timeout=2,
            socket_connect_timeout=2,
        )
        return cls(redis.Redis(connection_pool=pool), ttl_seconds)

    @property
    def enabled(self) -> bool:
        return self.client is not None

    def get_json(self, key: str) -> Optional[Any]:
        if self.client is None:
            return None
        try:
            raw = self.client.get(key)
        except redis.RedisError as e:
            logger.warning(f"[CACHE] GET {key} failed: {e}")
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"[CACHE] Dropping undecodable value at {key}")
            return None

    def set_json(self, key: str, value: Any, ttl_seconds: Optional[int] = None) -> None:
        if self.client is None:
            return
        try:
            self.client.set(key, json.dumps(value), ex=ttl_seconds or self.ttl_seconds)
        except redis.RedisError as e:
            logger.warning(f"[CACHE] SET {key} failed: {e}")

    def invalidate_tenant(self, tenant_id: Any) -> int:
        """Delete the bare tenant key and every range-qualified variant.

        Returns:
            Number of keys deleted (0 when disabled)
        """
        if self.client is None:
            return 0

        base_key = tenant_key(tenant_id)
        deleted = 0
        try:
            deleted += self.client.delete(base_key)
            batch = []
            for key in self.client.scan_iter(match=f"{base_key}:*", count=100):
                batch.append(key)
                if len(batch) >= 100:
                    deleted += self.client.delete(*batch)
                    batch = []
            if batch:
                deleted += self.client.delete(*batch)
        except redis.RedisError as e:
            logger.warning(f"[CACHE] Invalidation for tenant {tenant_id} failed: {e}")
            return deleted

        if deleted:
            logger.debug(f"[CACHE] Invalidated {deleted} keys for tenant {tenant_id}")
        return deleted

    def close(self) -> None:
        if self.client is None:
            return
        try:
            self.client.close()
            self.client.connection_pool.disconnect()
        except redis.RedisError as e:
            logger.warning(f"[CACHE] Close failed: {e}")
