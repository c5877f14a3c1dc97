"""Pytest configuration for StorePulse tests

WHAT: Shared fixtures for service-level and HTTP endpoint tests
WHY: Every test gets an isolated in-memory SQLite database, an in-process
     fake Redis, and an app wired to both through a test AppContext
REFERENCES:
    - storepulse/main.py: create_app
    - storepulse/context.py: AppContext
    - storepulse/cache.py: MetricsCache
"""

import fnmatch
import json
import os
from datetime import datetime
from typing import Generator

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Set test environment before any storepulse module builds settings
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("SENTRY_DSN", "")


# ============================================================================
# Fake Redis
# ============================================================================

class _FakeConnectionPool:
    def disconnect(self):
        pass


class _FakeRedis:
    """Minimal in-memory stand-in for the redis.Redis calls MetricsCache makes."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.connection_pool = _FakeConnectionPool()

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    def delete(self, *keys):
        deleted = 0
        for key in keys:
            if key in self.store:
                del self.store[key]
                deleted += 1
        return deleted

    def scan_iter(self, match=None, count=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatchcase(key, match):
                yield key

    def close(self):
        pass


class _BrokenRedis(_FakeRedis):
    """Every call fails the way a dropped connection does."""

    def _fail(self, *args, **kwargs):
        import redis
        raise redis.ConnectionError("connection refused")

    get = set = delete = scan_iter = _fail


@pytest.fixture
def fake_redis():
    return _FakeRedis()


@pytest.fixture
def broken_redis():
    return _BrokenRedis()


@pytest.fixture
def metrics_cache(fake_redis):
    from storepulse.cache import MetricsCache
    return MetricsCache(fake_redis, ttl_seconds=120)


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """Create in-memory test database engine."""
    from storepulse.database import Base, build_engine

    engine = build_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def test_db_session(test_db_engine) -> Generator[Session, None, None]:
    """Create test database session."""
    from storepulse.database import build_session_factory

    session = build_session_factory(test_db_engine)()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Application & Client Fixtures
# ============================================================================

@pytest.fixture
def test_settings():
    from storepulse.deps import Settings
    return Settings(DATABASE_URL="sqlite:///:memory:", REDIS_URL="", SENTRY_DSN=None)


@pytest.fixture
def test_context(test_settings, test_db_engine, metrics_cache):
    from storepulse.context import AppContext
    from storepulse.database import build_session_factory

    return AppContext(
        settings=test_settings,
        engine=test_db_engine,
        session_factory=build_session_factory(test_db_engine),
        cache=metrics_cache,
    )


@pytest.fixture
def app(test_context, test_db_session):
    """Create FastAPI test application."""
    from storepulse.database import get_db
    from storepulse.main import create_app

    test_app = create_app(context=test_context)

    def override_get_db():
        yield test_db_session

    test_app.dependency_overrides[get_db] = override_get_db
    return test_app


@pytest.fixture
def client(app) -> TestClient:
    """Create TestClient for HTTP testing."""
    return TestClient(app)


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def test_tenant(test_db_session):
    """Create test tenant."""
    from storepulse.models import Tenant

    tenant = Tenant(
        name="Test Store",
        shop_domain="test-store.myshopify.com",
        webhook_secret="test-webhook-secret",
        access_token="shpat_test",
        created_at=datetime.utcnow(),
    )
    test_db_session.add(tenant)
    test_db_session.commit()
    test_db_session.refresh(tenant)
    return tenant


@pytest.fixture
def test_tenant_b(test_db_session):
    """Create second test tenant (for isolation tests)."""
    from storepulse.models import Tenant

    tenant = Tenant(
        name="Other Store",
        shop_domain="other-store.myshopify.com",
        webhook_secret="other-webhook-secret",
        created_at=datetime.utcnow(),
    )
    test_db_session.add(tenant)
    test_db_session.commit()
    test_db_session.refresh(tenant)
    return tenant


# ============================================================================
# Webhook helpers
# ============================================================================

@pytest.fixture
def signed_webhook():
    """Build (body, headers) for a webhook signed with the given secret."""
    from storepulse.webhooks.verification import compute_signature

    def _build(topic: str, payload, shop_domain: str, secret: str):
        body = json.dumps(payload).encode("utf-8")
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Topic": topic,
            "X-Shopify-Shop-Domain": shop_domain,
            "X-Shopify-Hmac-Sha256": compute_signature(body, secret),
        }
        return body, headers

    return _build
