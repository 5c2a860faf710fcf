"""
Manual Refresh API Tests
========================

WHAT: Manual refresh trigger (validation, priority, queue outcomes), last
      refresh times and per-job status, against a mocked Redis client.

REFERENCES:
- backend/metricsync/routers/refresh.py
- backend/metricsync/workers/arq_enqueue.py
"""

from datetime import date, datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from metricsync.config import Settings, get_settings
from metricsync.main import create_app
from metricsync.services.job_log import log_job_complete, log_job_start
from metricsync.services.refresh_worker import generate_job_id
from metricsync.workers.arq_enqueue import REFRESH_JOB_FUNCTION

SECRET = "test-admin-secret"
HEADERS = {"X-Admin-Secret": SECRET}

BODY = {
    "type": "refresh-campaigns",
    "account_id": "acct-1",
    "refresh_token": "refresh-token",
    "start_date": "2025-01-01",
    "end_date": "2025-01-07",
}


@pytest.fixture
def redis():
    redis = AsyncMock()
    redis.keys.return_value = []
    redis.zcard.return_value = 2
    redis.enqueue_job.return_value = Mock()
    return redis


def _app(session_factory, redis):
    app = create_app(session_factory=session_factory, redis=redis)
    app.dependency_overrides[get_settings] = lambda: Settings(ADMIN_SECRET=SECRET)
    return app


@pytest.fixture
def app(session_factory, redis):
    return _app(session_factory, redis)


@pytest.fixture
def client(app):
    return TestClient(app)


# ============================================================================
# POST /customers/{id}/refresh
# ============================================================================

def test_manual_refresh_is_queued_without_defer(client, redis):
    response = client.post("/customers/C1/refresh", json=BODY, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "queued"
    assert body["job_id"].startswith("refresh-campaigns_C1_")
    assert body["date_range"] == {"start": "2025-01-01", "end": "2025-01-07"}
    assert body["queue_position"] == 2

    args, kwargs = redis.enqueue_job.call_args
    assert args[0] == REFRESH_JOB_FUNCTION
    assert args[1]["priority"] == "high"
    assert args[1]["customer_id"] == "C1"
    assert kwargs["_defer_by"] is None


def test_manual_refresh_defaults_to_last_30_days(client, redis):
    body = {k: v for k, v in BODY.items() if k not in ("start_date", "end_date")}

    response = client.post("/customers/C1/refresh", json=body, headers=HEADERS)

    window = response.json()["date_range"]
    end = date.fromisoformat(window["end"])
    assert end == datetime.now(timezone.utc).date()
    assert date.fromisoformat(window["start"]) == end - timedelta(days=30)


def test_manual_refresh_ignores_cooldown(client, redis):
    other_slice = dict(BODY, end_date="2025-01-08")

    first = client.post("/customers/C1/refresh", json=BODY, headers=HEADERS).json()
    second = client.post("/customers/C1/refresh", json=other_slice, headers=HEADERS).json()

    assert first["status"] == "queued"
    assert second["status"] == "queued"
    assert redis.enqueue_job.await_count == 2


def test_invalid_type_is_rejected(client, redis):
    response = client.post("/customers/C1/refresh", json=dict(BODY, type="refresh-everything"), headers=HEADERS)

    assert response.status_code == 422
    redis.enqueue_job.assert_not_called()


@pytest.mark.parametrize("job_type", ["refresh-ad-groups", "refresh-keywords", "refresh-ads"])
def test_drill_down_without_parent_is_rejected(client, redis, job_type):
    response = client.post("/customers/C1/refresh", json=dict(BODY, type=job_type), headers=HEADERS)

    assert response.status_code == 400
    assert "parent_entity_id" in response.json()["detail"]
    redis.enqueue_job.assert_not_called()


def test_drill_down_with_parent_is_queued(client, redis):
    body = dict(BODY, type="refresh-keywords", parent_entity_id="ag1")

    response = client.post("/customers/C1/refresh", json=body, headers=HEADERS)

    assert response.json()["parent_entity_id"] == "ag1"
    assert redis.enqueue_job.call_args.args[1]["parent_entity_id"] == "ag1"


def test_parent_is_dropped_for_root_types(client, redis):
    response = client.post("/customers/C1/refresh", json=dict(BODY, parent_entity_id="camp1"), headers=HEADERS)

    assert response.json()["parent_entity_id"] is None
    assert redis.enqueue_job.call_args.args[1]["parent_entity_id"] is None


def test_inverted_window_is_rejected(client, redis):
    body = dict(BODY, start_date="2025-01-07", end_date="2025-01-01")

    assert client.post("/customers/C1/refresh", json=body, headers=HEADERS).status_code == 422
    redis.enqueue_job.assert_not_called()


def test_slice_already_in_queue_reports_pending(client, redis):
    redis.enqueue_job.return_value = None

    body = client.post("/customers/C1/refresh", json=BODY, headers=HEADERS).json()

    assert body["status"] == "already_pending"
    assert body["job_id"] is None


def test_missing_redis_returns_503(session_factory):
    client = TestClient(_app(session_factory, redis=None))

    assert client.post("/customers/C1/refresh", json=BODY, headers=HEADERS).status_code == 503


def test_enqueue_failure_returns_503(client, redis):
    redis.enqueue_job.side_effect = ConnectionError("redis down")

    assert client.post("/customers/C1/refresh", json=BODY, headers=HEADERS).status_code == 503


def test_refresh_requires_admin_secret(client, redis):
    assert client.post("/customers/C1/refresh", json=BODY).status_code == 401
    redis.enqueue_job.assert_not_called()


# ============================================================================
# Refresh times / job status
# ============================================================================

def test_refresh_times(client, session_factory, make_job):
    job = make_job()
    job_id = generate_job_id(job)
    with session_factory() as db:
        log_job_start(db, job_id, job, 1)
        log_job_complete(db, job_id, duration_ms=10, entity_count=1, api_calls=1)

    body = client.get("/customers/C1/refresh-times", headers=HEADERS).json()

    assert list(body) == ["refresh-campaigns"]


def test_job_status(client, app):
    app.state.refresh_queue.get_job_status = AsyncMock(
        return_value={"job_id": "refresh-campaigns_C1_abc", "status": "in_progress"}
    )

    response = client.get("/admin/jobs/refresh-campaigns_C1_abc/status", headers=HEADERS)

    assert response.json() == {"job_id": "refresh-campaigns_C1_abc", "status": "in_progress"}
    app.state.refresh_queue.get_job_status.assert_awaited_once_with("refresh-campaigns_C1_abc")


def test_job_status_without_redis_returns_503(session_factory):
    client = TestClient(_app(session_factory, redis=None))

    assert client.get("/admin/jobs/x/status", headers=HEADERS).status_code == 503
