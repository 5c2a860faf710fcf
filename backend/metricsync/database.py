"""Database engine and session construction.

WHAT:
    Builds SQLAlchemy engines and session factories from an explicit URL.
    Exposes a FastAPI dependency bound to the app's session factory.

WHY:
    - The worker and the API each construct their store client once at
      startup and pass it down, instead of opening connections at import time
    - Tests build an in-memory SQLite engine the same way production builds
      a PostgreSQL one

USAGE:
    # Worker startup
    engine = build_engine(settings.DATABASE_URL)
    session_factory = build_session_factory(engine)

    # Scripts
    with session_scope(session_factory) as db:
        db.query(MetricsFact).count()

REFERENCES:
    - https://docs.sqlalchemy.org/en/20/orm/session_basics.html
    - metricsync/workers/arq_worker.py (consumer of these factories)
"""

from contextlib import contextmanager
from typing import Generator

from fastapi import Request
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker


# =============================================================================
# ENGINE / SESSION FACTORIES
# =============================================================================

def build_engine(database_url: str) -> Engine:
    """Create a sync engine for the given URL.

    NOTE: SQLite engines (tests/dev) do not support pool_size/max_overflow.
    """
    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
        )

    return create_engine(
        database_url,
        pool_size=5,            # Workers are sequential; small pool is plenty
        max_overflow=10,
        pool_recycle=3600,      # Recycle connections every hour
        pool_pre_ping=True,     # Validate connections before use
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


# =============================================================================
# BASE MODEL (imported from models for single registry)
# =============================================================================

from .models import Base  # noqa: E402


def create_all(engine: Engine) -> None:
    """Create tables directly (dev/tests). Production uses alembic."""
    Base.metadata.create_all(bind=engine)


# =============================================================================
# CONTEXT MANAGERS / DEPENDENCIES
# =============================================================================

@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for sessions outside FastAPI.

    Example:
        with session_scope(session_factory) as db:
            rows = db.query(RefreshJobLog).all()
    """
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


def get_db(request: Request) -> Generator[Session, None, None]:
    """Yield a session from the factory stored on app.state.

    Example:
        @router.get("/jobs")
        def list_jobs(db: Session = Depends(get_db)):
            return db.query(RefreshJobLog).all()
    """
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()
