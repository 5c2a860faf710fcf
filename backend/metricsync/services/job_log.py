"""Job Outcome Log: audit trail of refresh job attempts.

WHAT:
    Writes and reads RefreshJobLog rows. One row per deterministic job id,
    updated in place across attempts (processing -> completed | failed |
    retrying -> processing ...).

WHY:
    Job errors are never surfaced to whoever enqueued the job. This table is
    the only place an operator can see failures, retry schedules and
    throughput, so the writes are idempotent upserts keyed by the job id:
    re-delivery never creates a second row.

REFERENCES:
    - metricsync/services/refresh_worker.py (writer)
    - metricsync/routers/diagnostics.py (reader)
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from metricsync.models import JobStatusEnum, RefreshJobLog
from metricsync.schemas import RefreshJob
from metricsync.services.store_writers import upsert_rows

logger = logging.getLogger(__name__)

_START_UPDATE_FIELDS = (
    "status",
    "attempt_number",
    "started_at",
    "completed_at",
    "duration_ms",
    "entity_count",
    "api_calls",
    "error_message",
    "next_retry_at",
    "updated_at",
)


def log_job_start(db: Session, job_id: str, job: RefreshJob, attempt: int) -> None:
    """Upsert the row to `processing` for this attempt and clear the last outcome."""
    now = datetime.now(timezone.utc)
    upsert_rows(
        db,
        RefreshJobLog,
        [{
            "id": job_id,
            "customer_id": job.customer_id,
            "account_id": job.account_id,
            "job_type": job.type,
            "parent_entity_id": job.parent_entity_id,
            "start_date": job.start_date.isoformat(),
            "end_date": job.end_date.isoformat(),
            "priority": job.priority,
            "status": JobStatusEnum.processing,
            "attempt_number": attempt,
            "enqueued_at": job.enqueued_at,
            "started_at": now,
            "completed_at": None,
            "duration_ms": None,
            "entity_count": None,
            "api_calls": None,
            "error_message": None,
            "next_retry_at": None,
            "created_at": now,
            "updated_at": now,
        }],
        ["id"],
        _START_UPDATE_FIELDS,
    )
    db.commit()


def _update(db: Session, job_id: str, **fields) -> None:
    fields["updated_at"] = datetime.now(timezone.utc)
    updated = db.query(RefreshJobLog).filter(RefreshJobLog.id == job_id).update(fields)
    db.commit()
    if not updated:
        logger.warning("[JOBLOG] No log row for job %s", job_id)


def log_job_complete(
    db: Session,
    job_id: str,
    duration_ms: int,
    entity_count: int,
    api_calls: int,
) -> None:
    _update(
        db,
        job_id,
        status=JobStatusEnum.completed,
        completed_at=datetime.now(timezone.utc),
        duration_ms=duration_ms,
        entity_count=entity_count,
        api_calls=api_calls,
        error_message=None,
        next_retry_at=None,
    )


def log_job_failed(
    db: Session,
    job_id: str,
    error_message: str,
    duration_ms: int,
    next_retry_at: Optional[datetime] = None,
) -> None:
    """`retrying` when a re-delivery is scheduled, else terminal `failed`."""
    status = JobStatusEnum.retrying if next_retry_at is not None else JobStatusEnum.failed
    _update(
        db,
        job_id,
        status=status,
        completed_at=None if next_retry_at is not None else datetime.now(timezone.utc),
        duration_ms=duration_ms,
        error_message=error_message,
        next_retry_at=next_retry_at,
    )


# =============================================================================
# QUERIES
# =============================================================================

def recent_job_logs(db: Session, customer_id: Optional[str] = None, limit: int = 10) -> List[RefreshJobLog]:
    query = db.query(RefreshJobLog)
    if customer_id:
        query = query.filter(RefreshJobLog.customer_id == customer_id)
    return query.order_by(RefreshJobLog.created_at.desc()).limit(limit).all()


def job_status_counts(db: Session, customer_id: Optional[str] = None) -> Dict[str, int]:
    """Row count per status, zero-filled for every status."""
    query = db.query(RefreshJobLog.status, func.count(RefreshJobLog.id))
    if customer_id:
        query = query.filter(RefreshJobLog.customer_id == customer_id)
    counts = {s.value: 0 for s in JobStatusEnum}
    for status, count in query.group_by(RefreshJobLog.status).all():
        counts[status.value] = count
    return counts


def last_refresh_times(db: Session, customer_id: str) -> Dict[str, datetime]:
    """Latest completion per job type (and parent entity for drill-down jobs).

    Keys look like "refresh-campaigns" or "refresh-ad-groups/<campaign id>".
    """
    rows = (
        db.query(
            RefreshJobLog.job_type,
            RefreshJobLog.parent_entity_id,
            func.max(RefreshJobLog.completed_at),
        )
        .filter(
            RefreshJobLog.customer_id == customer_id,
            RefreshJobLog.status == JobStatusEnum.completed,
        )
        .group_by(RefreshJobLog.job_type, RefreshJobLog.parent_entity_id)
        .all()
    )
    out: Dict[str, datetime] = {}
    for job_type, parent_id, completed_at in rows:
        key = job_type.value if not parent_id else f"{job_type.value}/{parent_id}"
        out[key] = completed_at
    return out
