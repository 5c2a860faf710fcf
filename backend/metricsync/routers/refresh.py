"""Manual refresh endpoints.

WHAT:
    Thin HTTP wrappers over RefreshQueue: trigger a high-priority refresh
    for one slice, read the last completion times, read one job's status.

WHY:
    - "Refresh now" in the dashboard must jump ahead of background refreshes
      and is not subject to the per-customer cooldown.
    - Routers focus on auth and request parsing; enqueue guardrails live in
      the queue wrapper.

REFERENCES:
    - backend/metricsync/workers/arq_enqueue.py
    - backend/metricsync/services/job_log.py:last_refresh_times
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..database import get_db
from ..models import JobPriorityEnum
from ..schemas import DateRange, JobStatusOut, RefreshRequest, RefreshResponse
from ..services.job_log import last_refresh_times
from ..services.refresh_worker import DRILL_DOWN_TYPES
from ..workers.arq_enqueue import DUPLICATE, RATE_LIMITED
from .diagnostics import verify_admin_secret

logger = logging.getLogger(__name__)

DEFAULT_WINDOW_DAYS = 30

router = APIRouter(
    tags=["Refresh"],
    dependencies=[Depends(verify_admin_secret)],
)


@router.post("/customers/{customer_id}/refresh", response_model=RefreshResponse)
async def trigger_refresh(customer_id: str, payload: RefreshRequest, request: Request):
    """Enqueue one high-priority refresh job.

    Drill-down types need the parent id (campaign for ad groups, ad group
    for keywords and ads). Other types ignore it.
    """
    parent_entity_id = payload.parent_entity_id
    if payload.type in DRILL_DOWN_TYPES:
        if not parent_entity_id:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"parent_entity_id is required for {payload.type.value}",
            )
    else:
        parent_entity_id = None

    end_date = payload.end_date or datetime.now(timezone.utc).date()
    start_date = payload.start_date or end_date - timedelta(days=DEFAULT_WINDOW_DAYS)
    if end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="end_date must not be before start_date",
        )

    queue = request.app.state.refresh_queue
    outcome = await queue.enqueue_refresh_job(
        JobPriorityEnum.high,
        type=payload.type,
        customer_id=customer_id,
        account_id=payload.account_id,
        refresh_token=payload.refresh_token,
        manager_id=payload.manager_id,
        parent_entity_id=parent_entity_id,
        start_date=start_date,
        end_date=end_date,
        timezone=payload.timezone,
        request_id=f"manual-{int(time.time() * 1000)}",
    )
    if outcome is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Refresh queue unavailable. Please try again later.",
        )

    window = DateRange(start=start_date, end=end_date)
    if outcome == DUPLICATE:
        return RefreshResponse(
            status="already_pending",
            type=payload.type,
            parent_entity_id=parent_entity_id,
            date_range=window,
            message="A refresh for this data is already in progress",
        )
    if outcome == RATE_LIMITED:
        return RefreshResponse(
            status="rate_limited",
            type=payload.type,
            parent_entity_id=parent_entity_id,
            date_range=window,
            message="Too many refresh requests. Please wait a moment.",
        )

    stats = await queue.get_queue_stats()
    logger.info("[REFRESH] Manual %s refresh queued for %s: %s", payload.type.value, customer_id, outcome)
    return RefreshResponse(
        status="queued",
        job_id=outcome,
        type=payload.type,
        parent_entity_id=parent_entity_id,
        date_range=window,
        queue_position=stats["queued"],
    )


@router.get("/customers/{customer_id}/refresh-times", response_model=Dict[str, datetime])
def refresh_times(customer_id: str, db: Session = Depends(get_db)):
    """Latest completed refresh per job type (and parent for drill-downs)."""
    return last_refresh_times(db, customer_id)


@router.get("/admin/jobs/{job_id}/status", response_model=JobStatusOut)
async def job_status(job_id: str, request: Request):
    queue = request.app.state.refresh_queue
    if queue.pool is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Redis not configured")
    return await queue.get_job_status(job_id)
