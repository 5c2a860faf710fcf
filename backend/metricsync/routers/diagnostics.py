"""Operational diagnostics endpoints.

WHAT: Read APIs for queue backlog, job outcomes, worker liveness and
      hierarchy mismatch history, plus acknowledge and manual validation.
WHY: Job failures never reach whoever enqueued the job; operators and the
     dashboard's diagnostics panel read them here.

SECURITY: Protected by ADMIN_SECRET (X-Admin-Secret header)
"""

import logging
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from ..config import Settings, get_settings
from ..database import get_db
from ..models import ValidationTriggerEnum
from ..schemas import (
    JobLogOut,
    JobsResponse,
    MismatchEventOut,
    MismatchHistoryResponse,
    MismatchHistorySummary,
    QueueStats,
    ValidationRequest,
    WorkerHeartbeatOut,
)
from ..services.heartbeat import list_worker_heartbeats
from ..services.hierarchy_validation import (
    acknowledge_mismatch,
    get_mismatch_history,
    validate_campaign_hierarchy,
)
from ..services.job_log import job_status_counts, recent_job_logs

logger = logging.getLogger(__name__)


def verify_admin_secret(
    x_admin_secret: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
):
    """Verify admin secret header for protected endpoints."""
    if not settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Admin endpoints not configured"
        )
    if x_admin_secret != settings.ADMIN_SECRET:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid admin secret"
        )
    return True


router = APIRouter(
    tags=["Diagnostics"],
    dependencies=[Depends(verify_admin_secret)],
)


@router.get("/admin/queue", response_model=QueueStats)
async def queue_stats(request: Request):
    """Queued / in-progress counts from Redis plus this process's pending set."""
    queue = request.app.state.refresh_queue
    return await queue.get_queue_stats()


@router.get("/admin/jobs", response_model=JobsResponse)
def list_jobs(
    customer_id: Optional[str] = None,
    limit: int = Query(10, ge=1, le=100),
    db: Session = Depends(get_db),
):
    jobs = recent_job_logs(db, customer_id=customer_id, limit=limit)
    return JobsResponse(
        jobs=[JobLogOut.model_validate(j) for j in jobs],
        status_counts=job_status_counts(db, customer_id=customer_id),
    )


@router.get("/admin/workers", response_model=List[WorkerHeartbeatOut])
async def list_workers(request: Request, settings: Settings = Depends(get_settings)):
    redis = request.app.state.redis
    if redis is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Redis not configured")
    return await list_worker_heartbeats(
        redis,
        stale_seconds=settings.HEARTBEAT_STALE_SECONDS,
        dead_seconds=settings.HEARTBEAT_DEAD_SECONDS,
    )


@router.get("/customers/{customer_id}/hierarchy-mismatches", response_model=MismatchHistoryResponse)
def mismatch_history(
    customer_id: str,
    days: int = Query(30, ge=1, le=365),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
):
    history = get_mismatch_history(db, customer_id, days=days, limit=limit)
    return MismatchHistoryResponse(
        events=[MismatchEventOut.model_validate(e) for e in history["events"]],
        summary=MismatchHistorySummary(**history["summary"]),
    )


@router.post("/hierarchy-mismatches/{event_id}/acknowledge")
def acknowledge(event_id: UUID, db: Session = Depends(get_db)):
    if not acknowledge_mismatch(db, event_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Mismatch event not found")
    logger.info("[VALIDATION] Acknowledged mismatch event %s", event_id)
    return {"id": str(event_id), "acknowledged": True}


@router.post("/customers/{customer_id}/hierarchy-validation")
def run_validation(customer_id: str, payload: ValidationRequest, db: Session = Depends(get_db)):
    """Manual consistency check over the requested window."""
    if payload.end_date < payload.start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end_date must not be before start_date",
        )
    result = validate_campaign_hierarchy(
        db,
        customer_id,
        payload.start_date,
        payload.end_date,
        tolerance=payload.tolerance,
        trigger=ValidationTriggerEnum.manual,
        timezone_name=payload.timezone,
    )
    return result.to_dict()
