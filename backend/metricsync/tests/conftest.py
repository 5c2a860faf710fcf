"""Pytest configuration for metricsync integration tests

WHAT: Shared fixtures for store, worker and HTTP endpoint tests
WHY: Every test gets an isolated in-memory database and a scripted gateway
REFERENCES:
    - metricsync/database.py: engine / session factory construction
    - metricsync/services/refresh_worker.py: RefreshWorker
    - metricsync/main.py: FastAPI application
"""

import os
from datetime import date
from typing import Generator
from unittest.mock import Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Set test environment before settings are cached
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/0")
os.environ.setdefault("ADMIN_SECRET", "test-admin-secret")

from metricsync.database import create_all  # noqa: E402
from metricsync.models import Base  # noqa: E402
from metricsync.schemas import RefreshJob  # noqa: E402


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session (StaticPool = one connection)."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    create_all(engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine) -> sessionmaker:
    return sessionmaker(bind=test_db_engine, autocommit=False, autoflush=False)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Gateway / Job Fixtures
# ============================================================================

@pytest.fixture
def fake_gateway():
    """Gateway double; every fetch returns [] unless a test scripts it."""
    gateway = Mock()
    gateway.fetch_campaigns.return_value = []
    gateway.fetch_ad_groups.return_value = []
    gateway.fetch_keywords.return_value = []
    gateway.fetch_ads.return_value = []
    gateway.fetch_daily_metrics.return_value = []
    return gateway


@pytest.fixture
def make_job():
    """Build a RefreshJob with sensible defaults for C1 / 2025-01-01."""
    def _make(**overrides) -> RefreshJob:
        fields = {
            "type": "refresh-campaigns",
            "customer_id": "C1",
            "account_id": "acct-1",
            "refresh_token": "refresh-token",
            "start_date": date(2025, 1, 1),
            "end_date": date(2025, 1, 1),
        }
        fields.update(overrides)
        return RefreshJob(**fields)

    return _make


def campaign_row(cid="camp1", spend=100.0, clicks=50, impressions=1000, conversions=2, **extra):
    row = {
        "id": cid,
        "name": f"Campaign {cid}",
        "status": "ENABLED",
        "type": "SEARCH",
        "spend": spend,
        "clicks": clicks,
        "impressions": impressions,
        "conversions": conversions,
        "conversion_value": 0,
    }
    row.update(extra)
    return row
