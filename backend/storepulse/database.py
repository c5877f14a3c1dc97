"""Database engine and session configuration.

WHAT:
    Builds SQLAlchemy engines and session factories from a DATABASE_URL and
    exposes the FastAPI dependency for request-scoped sessions.

WHY:
    - No module-level engine: the AppContext (storepulse/context.py) builds
      exactly one engine per process and passes it down explicitly
    - The API and the arq worker share the same construction logic
    - Tests can point everything at an in-memory SQLite database

ARCHITECTURE:
    ┌──────────────────┐
    │  build_engine()  │  postgresql / sqlite
    └────────┬─────────┘
             │
    ┌────────▼──────────────────┐
    │  build_session_factory()  │
    └────────┬──────────────────┘
             │  held by AppContext
    ┌────────▼─────────┐
    │  get_db()        │  FastAPI dependency
    └──────────────────┘

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/core/pooling.html
    - storepulse/context.py (owner of the engine)
"""

from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base  # noqa: F401


# =============================================================================
# ENGINE CONSTRUCTION
# =============================================================================

def normalize_database_url(database_url: str) -> str:
    """Accept Heroku-style postgres:// URLs."""
    if database_url.startswith("postgres://"):
        return database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def build_engine(database_url: str) -> Engine:
    """Create the SQLAlchemy engine for a DATABASE_URL.

    Connection pool configuration for production:
    - pool_size / max_overflow: persistent connections plus burst headroom
    - pool_recycle: recreate connections after 1 hour
    - pool_pre_ping: check connection health before use

    SQLite engines (tests/dev) do not support pool sizing. In-memory SQLite
    uses a StaticPool so every session sees the same database.
    """
    database_url = normalize_database_url(database_url)

    if database_url.startswith("sqlite"):
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite+pysqlite://"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,
        pool_pre_ping=True,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    """Session factory bound to engine."""
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


# =============================================================================
# FASTAPI DEPENDENCY
# =============================================================================

def get_db(request: Request) -> Generator[Session, None, None]:
    """Yield a session from the application's AppContext."""
    session_factory = request.app.state.context.session_factory
    db = session_factory()
    try:
        yield db
    finally:
        db.close()
