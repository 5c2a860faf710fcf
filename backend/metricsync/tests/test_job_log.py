"""
Job Outcome Log Tests
=====================

WHAT: One row per job id across attempts, status transitions and the
      diagnostics queries built on the log.

REFERENCES:
- backend/metricsync/services/job_log.py
"""

from datetime import datetime, timedelta, timezone

from metricsync.models import JobStatusEnum, RefreshJobLog
from metricsync.services.job_log import (
    job_status_counts,
    last_refresh_times,
    log_job_complete,
    log_job_failed,
    log_job_start,
    recent_job_logs,
)
from metricsync.services.refresh_worker import generate_job_id


def _start(db, job, attempt=1):
    job_id = generate_job_id(job)
    log_job_start(db, job_id, job, attempt)
    return job_id


def test_start_creates_processing_row(test_db_session, make_job):
    job = make_job()
    job_id = _start(test_db_session, job)

    row = test_db_session.query(RefreshJobLog).one()
    assert row.id == job_id
    assert row.status == JobStatusEnum.processing
    assert row.attempt_number == 1
    assert row.start_date == "2025-01-01"
    assert row.completed_at is None


def test_restart_clears_previous_outcome(test_db_session, make_job):
    job = make_job()
    job_id = _start(test_db_session, job)
    log_job_failed(
        test_db_session, job_id, "Retry in 30 seconds", 120,
        next_retry_at=datetime.now(timezone.utc) + timedelta(seconds=30),
    )

    _start(test_db_session, job, attempt=2)

    test_db_session.expire_all()
    row = test_db_session.query(RefreshJobLog).one()
    assert row.status == JobStatusEnum.processing
    assert row.attempt_number == 2
    assert row.error_message is None
    assert row.next_retry_at is None


def test_failed_without_retry_is_terminal(test_db_session, make_job):
    job_id = _start(test_db_session, make_job())

    log_job_failed(test_db_session, job_id, "PERMISSION_DENIED", 40)

    row = test_db_session.query(RefreshJobLog).one()
    assert row.status == JobStatusEnum.failed
    assert row.completed_at is not None
    assert row.duration_ms == 40


def test_complete_records_counts(test_db_session, make_job):
    job_id = _start(test_db_session, make_job())

    log_job_complete(test_db_session, job_id, duration_ms=250, entity_count=12, api_calls=1)

    row = test_db_session.query(RefreshJobLog).one()
    assert row.status == JobStatusEnum.completed
    assert row.entity_count == 12
    assert row.api_calls == 1


def test_status_counts_are_zero_filled(test_db_session, make_job):
    done = _start(test_db_session, make_job())
    log_job_complete(test_db_session, done, 10, 1, 1)
    _start(test_db_session, make_job(type="refresh-ad-groups", parent_entity_id="camp1"))
    _start(test_db_session, make_job(customer_id="C2"))

    assert job_status_counts(test_db_session) == {
        "processing": 2, "completed": 1, "failed": 0, "retrying": 0,
    }
    assert job_status_counts(test_db_session, customer_id="C2")["processing"] == 1


def test_recent_job_logs_filters_and_limits(test_db_session, make_job):
    for day in range(1, 5):
        _start(test_db_session, make_job(start_date=f"2025-01-0{day}", end_date=f"2025-01-0{day}"))
    _start(test_db_session, make_job(customer_id="C2"))

    assert len(recent_job_logs(test_db_session, limit=3)) == 3
    assert {row.customer_id for row in recent_job_logs(test_db_session, customer_id="C1", limit=10)} == {"C1"}


def test_last_refresh_times_keys(test_db_session, make_job):
    campaigns = _start(test_db_session, make_job())
    ad_groups = _start(test_db_session, make_job(type="refresh-ad-groups", parent_entity_id="camp1"))
    _start(test_db_session, make_job(type="refresh-keywords", parent_entity_id="ag1"))
    log_job_complete(test_db_session, campaigns, 10, 1, 1)
    log_job_complete(test_db_session, ad_groups, 10, 1, 1)

    times = last_refresh_times(test_db_session, "C1")

    assert set(times) == {"refresh-campaigns", "refresh-ad-groups/camp1"}


def test_restart_after_completion_clears_counts(test_db_session, make_job):
    job = make_job()
    job_id = _start(test_db_session, job)
    log_job_complete(test_db_session, job_id, duration_ms=80, entity_count=12, api_calls=1)

    _start(test_db_session, job, attempt=1)
    log_job_failed(test_db_session, job_id, "customer not enabled", 15)

    test_db_session.expire_all()
    row = test_db_session.query(RefreshJobLog).one()
    assert row.status == JobStatusEnum.failed
    assert row.entity_count is None
    assert row.api_calls is None
