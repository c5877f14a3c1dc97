"""Process-wide application context.

WHAT:
    AppContext bundles the storage handle (engine + session factory) and the
    cache handle, built once per process and passed down explicitly.

WHY:
    Replaces module-level engine/Redis singletons. The API builds one in
    create_app() and keeps it on app.state; the arq worker builds one in its
    startup hook and keeps it in the worker ctx. Tests build their own
    against in-memory SQLite and a fake Redis.

REFERENCES:
    - storepulse/main.py (API owner)
    - storepulse/workers/arq_worker.py (worker owner)
"""

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .cache import MetricsCache
from .database import build_engine, build_session_factory
from .deps import Settings

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    cache: MetricsCache

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Yield a session that is always closed on exit."""
        db = self.session_factory()
        try:
            yield db
        finally:
            db.close()

    def close(self) -> None:
        self.cache.close()
        self.engine.dispose()


def build_context(settings: Settings) -> AppContext:
    """Construct the storage and cache handles for this process."""
    engine = build_engine(settings.DATABASE_URL)
    cache = MetricsCache.from_url(settings.REDIS_URL, ttl_seconds=settings.METRICS_CACHE_TTL_SECONDS)
    logger.info(
        "[CONTEXT] Built application context (db=%s, cache=%s)",
        engine.dialect.name,
        "redis" if cache.enabled else "disabled",
    )
    return AppContext(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        cache=cache,
    )
