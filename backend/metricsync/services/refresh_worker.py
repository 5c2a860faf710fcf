"""Refresh Worker: processes one refresh job end to end.

WHAT:
    process_job(job) -> JobResult
        1. Upsert the job's outcome log row to `processing`
        2. Dispatch by job type: gateway fetch -> store writer
        3. Write `completed` / `retrying` / `failed`

WHY:
    The transport (arq) only knows "raised" vs "returned". The retry policy
    is expressed through that split:
        - rate limited / quota exhausted -> RetryableJobError is raised and
          the adapter turns it into a delayed re-delivery
        - anything else -> `failed` is logged and JobResult(success=False)
          is returned, so the transport does not retry it
    On the last allowed attempt a transient error is also terminal.

    The worker is synchronous. The arq adapter runs it via asyncio.to_thread
    with max_jobs=1, so one worker process handles one job at a time.

REFERENCES:
    - metricsync/services/retry_policy.py (classification + backoff)
    - metricsync/services/store_writers.py (idempotent writes)
    - metricsync/workers/arq_worker.py (transport adapter)
"""

from __future__ import annotations

import hashlib
import logging
import random
import time
from dataclasses import asdict, dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, Dict, Optional
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session, sessionmaker

from metricsync.models import RefreshJobTypeEnum, ValidationTriggerEnum
from metricsync.schemas import RefreshJob
from metricsync.services import store_writers
from metricsync.services.google_ads_gateway import AdsDataGateway
from metricsync.services.hierarchy_validation import validate_campaign_hierarchy
from metricsync.services.job_log import log_job_complete, log_job_failed, log_job_start
from metricsync.services.prewarm_progress import NullPrewarmObserver, PrewarmObserver
from metricsync.services.retry_policy import (
    ErrorClass,
    ErrorClassification,
    classify_error,
    retry_delay_for,
)
from metricsync.telemetry import capture_exception, capture_message

logger = logging.getLogger(__name__)

JOB_ID_DIGEST_LENGTH = 16
DEFAULT_VALIDATION_SAMPLE_RATE = 0.10
DEFAULT_VALIDATION_TOLERANCE = 0.05

DRILL_DOWN_TYPES = {
    RefreshJobTypeEnum.ad_groups,
    RefreshJobTypeEnum.keywords,
    RefreshJobTypeEnum.ads,
}


# =============================================================================
# RESULT / ERRORS
# =============================================================================

@dataclass
class JobResult:
    success: bool
    duration_ms: int
    entity_count: Optional[int] = None
    api_calls: int = 0
    error: Optional[str] = None

    def to_dict(self) -> Dict:
        return asdict(self)


class RetryableJobError(Exception):
    """Transient failure; the transport should re-deliver after the delay."""

    def __init__(self, message: str, retry_after_seconds: int, kind: ErrorClass):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds
        self.kind = kind


class MissingParentEntityError(ValueError):
    """Ad-group / keyword / ad job without a parent entity id."""


def generate_job_id(job: RefreshJob) -> str:
    """Deterministic id: same payload slice -> same id (no colons).

    Example:
        refresh-campaigns_1234567890_3f9a0c1d2e4b5a67
    """
    parts = [
        job.type.value,
        job.customer_id,
        job.parent_entity_id or "root",
        job.start_date.isoformat(),
        job.end_date.isoformat(),
    ]
    if job.timezone:
        parts.append(job.timezone)
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()[:JOB_ID_DIGEST_LENGTH]
    return f"{job.type.value}_{job.customer_id}_{digest}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# WORKER
# =============================================================================

class RefreshWorker:
    """Processes refresh jobs against an injected store and gateway.

    Usage:
        worker = RefreshWorker(session_factory, GoogleAdsGateway())
        result = worker.process_job(job, attempt=ctx["job_try"], max_attempts=3)
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: AdsDataGateway,
        prewarm_observer: Optional[PrewarmObserver] = None,
        validator: Callable = validate_campaign_hierarchy,
        validation_sample_rate: float = DEFAULT_VALIDATION_SAMPLE_RATE,
        validation_tolerance: float = DEFAULT_VALIDATION_TOLERANCE,
        reporting_timezone: str = "UTC",
        rand: Callable[[], float] = random.random,
        validation_sampler: Callable[[], float] = random.random,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.prewarm_observer = prewarm_observer or NullPrewarmObserver()
        self.validator = validator
        self.validation_sample_rate = validation_sample_rate
        self.validation_tolerance = validation_tolerance
        self.reporting_timezone = reporting_timezone
        self._rand = rand
        self._sampler = validation_sampler
        self._clock = clock

        self._handlers = {
            RefreshJobTypeEnum.campaigns: self._refresh_campaigns,
            RefreshJobTypeEnum.ad_groups: self._refresh_ad_groups,
            RefreshJobTypeEnum.keywords: self._refresh_keywords,
            RefreshJobTypeEnum.ads: self._refresh_ads,
            RefreshJobTypeEnum.reports: self._refresh_reports,
        }

    def _today(self, job: RefreshJob) -> date:
        """Current date in the job's reporting timezone (drives PARTIAL/FINAL)."""
        tz = ZoneInfo(job.timezone or self.reporting_timezone)
        return self._clock().astimezone(tz).date()

    def process_job(self, job: RefreshJob, attempt: int = 1, max_attempts: int = 3) -> JobResult:
        """Run one attempt of a job. Raises RetryableJobError for transient failures."""
        job_id = generate_job_id(job)
        started = time.monotonic()
        api_calls = 0

        db = self.session_factory()
        try:
            log_job_start(db, job_id, job, attempt)
            logger.info(
                "[WORKER] Processing %s for %s (attempt %d/%d)",
                job.type.value, job.customer_id, attempt, max_attempts,
            )

            try:
                if job.type in DRILL_DOWN_TYPES and not job.parent_entity_id:
                    raise MissingParentEntityError(f"parent_entity_id required for {job.type.value}")
                api_calls = 1
                entity_count = self._handlers[job.type](db, job)
            except Exception as e:
                db.rollback()
                duration_ms = int((time.monotonic() - started) * 1000)
                return self._handle_failure(db, job, job_id, e, attempt, max_attempts, duration_ms, api_calls)

            duration_ms = int((time.monotonic() - started) * 1000)
            log_job_complete(db, job_id, duration_ms, entity_count, api_calls)
            logger.info(
                "[WORKER] %s completed: %d entities in %dms", job.type.value, entity_count, duration_ms
            )
            return JobResult(success=True, duration_ms=duration_ms, entity_count=entity_count, api_calls=api_calls)
        finally:
            db.close()

    def _handle_failure(
        self,
        db: Session,
        job: RefreshJob,
        job_id: str,
        error: Exception,
        attempt: int,
        max_attempts: int,
        duration_ms: int,
        api_calls: int,
    ) -> JobResult:
        error_text = str(error)
        if isinstance(error, MissingParentEntityError):
            classification = ErrorClassification(ErrorClass.other)
        else:
            classification = classify_error(error)

        delay = retry_delay_for(classification, attempt, self._rand)
        if delay is not None and attempt < max_attempts:
            next_retry_at = self._clock() + timedelta(seconds=delay)
            log_job_failed(db, job_id, error_text, duration_ms, next_retry_at=next_retry_at)
            logger.warning(
                "[WORKER] %s for %s (%s); retry in %ss",
                job.type.value, job.customer_id, classification.error_class.value, delay,
            )
            raise RetryableJobError(
                f"{classification.error_class.value}: {error_text}", delay, classification.error_class
            ) from error

        log_job_failed(db, job_id, error_text, duration_ms)
        if classification.is_transient:
            logger.error(
                "[WORKER] %s for %s exhausted %d attempts: %s",
                job.type.value, job.customer_id, max_attempts, error_text,
            )
        else:
            logger.error("[WORKER] %s for %s failed: %s", job.type.value, job.customer_id, error_text)
        return JobResult(success=False, duration_ms=duration_ms, api_calls=api_calls, error=error_text)

    # =========================================================================
    # HANDLERS (fetch -> write)
    # =========================================================================

    def _refresh_campaigns(self, db: Session, job: RefreshJob) -> int:
        rows = self.gateway.fetch_campaigns(
            job.refresh_token, job.customer_id, job.start_date, job.end_date, job.manager_id
        )
        count = store_writers.write_campaigns(db, job, rows, self._today(job))

        if self._sampler() < self.validation_sample_rate:
            self._validate_after_refresh(db, job)
        return count

    def _validate_after_refresh(self, db: Session, job: RefreshJob) -> None:
        """Sampled consistency check; never fails the refresh job."""
        try:
            result = self.validator(
                db,
                job.customer_id,
                job.start_date,
                job.end_date,
                tolerance=self.validation_tolerance,
                trigger=ValidationTriggerEnum.refresh,
                timezone_name=job.timezone or self.reporting_timezone,
            )
            if result.mismatches:
                logger.warning(
                    "[WORKER] Post-refresh validation found %d mismatches for %s (persisted: %d)",
                    len(result.mismatches), job.customer_id, result.persisted_events,
                )
                capture_message(
                    f"Hierarchy mismatches after refresh for {job.customer_id}",
                    level="warning",
                    extra={
                        "customer_id": job.customer_id,
                        "mismatches": len(result.mismatches),
                        "persisted_events": result.persisted_events,
                    },
                )
        except Exception as e:
            db.rollback()
            logger.warning("[WORKER] Post-refresh validation error for %s: %s", job.customer_id, e)
            capture_exception(e, extra={"operation": "post_refresh_validation", "customer_id": job.customer_id})

    def _refresh_ad_groups(self, db: Session, job: RefreshJob) -> int:
        campaign_id = job.parent_entity_id
        self.prewarm_observer.mark_running(job.customer_id, campaign_id)
        try:
            rows = self.gateway.fetch_ad_groups(
                job.refresh_token, job.customer_id, campaign_id, job.start_date, job.end_date, job.manager_id
            )
            count = store_writers.write_ad_groups(db, job, rows, self._today(job))
        except Exception as e:
            self.prewarm_observer.mark_failed(job.customer_id, campaign_id, str(e))
            raise
        self.prewarm_observer.mark_completed(job.customer_id, campaign_id)
        return count

    def _refresh_keywords(self, db: Session, job: RefreshJob) -> int:
        rows = self.gateway.fetch_keywords(
            job.refresh_token, job.customer_id, job.parent_entity_id, job.start_date, job.end_date, job.manager_id
        )
        return store_writers.write_keywords(db, job, rows, self._today(job))

    def _refresh_ads(self, db: Session, job: RefreshJob) -> int:
        rows = self.gateway.fetch_ads(
            job.refresh_token, job.customer_id, job.parent_entity_id, job.start_date, job.end_date, job.manager_id
        )
        return store_writers.write_ads(db, job, rows, self._today(job))

    def _refresh_reports(self, db: Session, job: RefreshJob) -> int:
        rows = self.gateway.fetch_daily_metrics(
            job.refresh_token, job.customer_id, job.start_date, job.end_date, job.manager_id
        )
        return store_writers.write_daily_metrics(db, job, rows, self._today(job))
