"""Pydantic schemas for queue payloads and diagnostics responses."""

from datetime import date, datetime, timezone
from typing import Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .models import (
    JobPriorityEnum,
    JobStatusEnum,
    MismatchSeverityEnum,
    RefreshJobTypeEnum,
    ValidationTriggerEnum,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RefreshJob(BaseModel):
    """Queue payload for one refresh of one slice of the entity tree.

    Immutable once enqueued. `parent_entity_id` is the campaign id for
    ad-group jobs and the ad group id for keyword/ad jobs.
    """

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    type: RefreshJobTypeEnum
    customer_id: str = Field(description="Ads platform customer id")
    account_id: str = Field(description="Internal account id")
    refresh_token: Optional[str] = Field(default=None, description="OAuth refresh token for the gateway")
    manager_id: Optional[str] = Field(default=None, description="Manager (MCC) id used as login customer")
    parent_entity_id: Optional[str] = None
    start_date: date
    end_date: date  # inclusive
    timezone: Optional[str] = Field(default=None, description="Reporting timezone for freshness")
    priority: JobPriorityEnum = JobPriorityEnum.normal
    enqueued_at: datetime = Field(default_factory=_utcnow)
    request_id: Optional[str] = None

    @model_validator(mode="after")
    def _check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self


class QueueStats(BaseModel):
    queued: int
    in_progress: int
    pending_in_memory: int


class JobLogOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    job_type: RefreshJobTypeEnum
    customer_id: str
    parent_entity_id: Optional[str] = None
    status: JobStatusEnum
    attempt_number: int
    entity_count: Optional[int] = None
    api_calls: Optional[int] = None
    duration_ms: Optional[int] = None
    error_message: Optional[str] = None
    next_retry_at: Optional[datetime] = None
    created_at: datetime


class JobsResponse(BaseModel):
    jobs: List[JobLogOut]
    status_counts: Dict[str, int]


class WorkerHeartbeatOut(BaseModel):
    worker_id: str
    last_seen_at: datetime
    jobs_processed: int
    status: str
    age_seconds: int


class MismatchEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    created_at: datetime
    trigger: ValidationTriggerEnum
    entity_name: Optional[str] = None
    metric: str
    variance_percent: float
    severity: MismatchSeverityEnum
    acknowledged: bool


class MismatchHistorySummary(BaseModel):
    total_events: int
    by_metric: Dict[str, int]
    by_severity: Dict[str, int]
    avg_variance: float


class MismatchHistoryResponse(BaseModel):
    events: List[MismatchEventOut]
    summary: MismatchHistorySummary


class ValidationRequest(BaseModel):
    start_date: date
    end_date: date
    tolerance: float = Field(default=0.05, gt=0, lt=1)
    timezone: str = "UTC"


class RefreshRequest(BaseModel):
    """Manual refresh trigger. The window defaults to the last 30 days."""

    type: RefreshJobTypeEnum
    account_id: str
    refresh_token: Optional[str] = None
    manager_id: Optional[str] = None
    parent_entity_id: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    timezone: Optional[str] = None


class DateRange(BaseModel):
    start: date
    end: date


class RefreshResponse(BaseModel):
    status: str
    job_id: Optional[str] = None
    type: RefreshJobTypeEnum
    parent_entity_id: Optional[str] = None
    date_range: DateRange
    queue_position: Optional[int] = None
    message: Optional[str] = None


class JobStatusOut(BaseModel):
    job_id: str
    status: str
