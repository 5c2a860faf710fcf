"""SQLAlchemy ORM models and enums.

This module defines the persisted state of the refresh pipeline:

- MetricsFact: one row per (customer, entity type, entity id, date)
- EntityHierarchy: denormalized entity -> parent map with name/status
- RefreshJobLog: one audit row per job id, updated in place across retries
- HierarchyMismatchEvent: append-only record of a detected rollup drift

All metric writes are upserts on natural unique keys, so concurrent workers
never need locks.
"""

import uuid
from datetime import datetime, timezone
import enum

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base


# Single Base used by the entire application
Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _enum_values(obj):
    return [e.value for e in obj]


# Enums ---------------------------------------------------------

class EntityTypeEnum(str, enum.Enum):
    account = "ACCOUNT"
    campaign = "CAMPAIGN"
    ad_group = "AD_GROUP"
    keyword = "KEYWORD"
    ad = "AD"


class DataFreshnessEnum(str, enum.Enum):
    """PARTIAL while the fact date is still "today" upstream, FINAL after."""
    partial = "PARTIAL"
    final = "FINAL"


class RefreshJobTypeEnum(str, enum.Enum):
    campaigns = "refresh-campaigns"
    ad_groups = "refresh-ad-groups"
    keywords = "refresh-keywords"
    ads = "refresh-ads"
    reports = "refresh-reports"


class JobStatusEnum(str, enum.Enum):
    processing = "processing"
    completed = "completed"
    failed = "failed"
    retrying = "retrying"


class JobPriorityEnum(str, enum.Enum):
    normal = "normal"
    high = "high"  # manual refresh


class ValidationTriggerEnum(str, enum.Enum):
    cache_hit = "cache_hit"
    refresh = "refresh"
    manual = "manual"
    scheduled = "scheduled"


class MismatchSeverityEnum(str, enum.Enum):
    warning = "warning"
    error = "error"


# Core models ----------------------------------------------------

class MetricsFact(Base):
    """Time-series performance fact for one entity on one date.

    Written only by store writers (last-write-wins upsert). Each write is
    the authoritative total for that date, never a delta.

    cost_micros is integer micros (spend x 1,000,000) so sums never drift.
    parent_entity_type/parent_entity_id are denormalized so rollup queries
    (campaign vs. SUM(ad groups)) need no join.
    """
    __tablename__ = "metrics_facts"
    __table_args__ = (
        UniqueConstraint("customer_id", "entity_type", "entity_id", "date", name="uq_metrics_fact_entity_date"),
        Index("ix_metrics_facts_parent_rollup", "customer_id", "entity_type", "parent_entity_id", "date"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(String, nullable=False)
    account_id = Column(String, nullable=True)
    entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(String, nullable=False)
    parent_entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=True)
    parent_entity_id = Column(String, nullable=True)
    date = Column(Date, nullable=False)

    impressions = Column(BigInteger, nullable=False, default=0)
    clicks = Column(BigInteger, nullable=False, default=0)
    cost_micros = Column(BigInteger, nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversions_value = Column(Numeric(18, 4), nullable=False, default=0)
    ctr = Column(Numeric(18, 6), nullable=False, default=0)
    average_cpc = Column(Numeric(18, 6), nullable=False, default=0)

    data_freshness = Column(Enum(DataFreshnessEnum, values_callable=_enum_values), nullable=False)
    synced_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.entity_type.value}:{self.entity_id} {self.date} ({self.data_freshness.value})"


class EntityHierarchy(Base):
    """One row per (customer, entity type, entity id).

    Kept in sync by every refresh job as a side effect. Drives which
    campaigns the hierarchy validator samples.
    """
    __tablename__ = "entity_hierarchy"
    __table_args__ = (
        UniqueConstraint("customer_id", "entity_type", "entity_id", name="uq_entity_hierarchy_entity"),
        Index("ix_entity_hierarchy_sample", "customer_id", "entity_type", "status", "last_updated"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(String, nullable=False)
    account_id = Column(String, nullable=True)
    entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(String, nullable=False)
    entity_name = Column(String, nullable=True)
    status = Column(String, nullable=True)
    parent_entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=True)
    parent_entity_id = Column(String, nullable=True)
    campaign_type = Column(String, nullable=True)  # campaigns only (SEARCH, PERFORMANCE_MAX, ...)
    last_updated = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.entity_name or self.entity_id} ({self.entity_type.value})"


class RefreshJobLog(Base):
    """Audit trail of a refresh job, keyed by the deterministic job id.

    Exactly one live row per job id: re-delivery of the same job updates
    status/attempt in place instead of inserting a duplicate.
    """
    __tablename__ = "refresh_job_logs"

    id = Column(String, primary_key=True)  # deterministic job id
    customer_id = Column(String, nullable=False, index=True)
    account_id = Column(String, nullable=True)
    job_type = Column(Enum(RefreshJobTypeEnum, values_callable=_enum_values), nullable=False)
    parent_entity_id = Column(String, nullable=True)
    start_date = Column(String, nullable=False)
    end_date = Column(String, nullable=False)
    priority = Column(Enum(JobPriorityEnum, values_callable=_enum_values), nullable=False, default=JobPriorityEnum.normal)

    status = Column(Enum(JobStatusEnum, values_callable=_enum_values), nullable=False)
    attempt_number = Column(Integer, nullable=False, default=1)
    enqueued_at = Column(DateTime(timezone=True), nullable=True)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    duration_ms = Column(Integer, nullable=True)
    entity_count = Column(Integer, nullable=True)
    api_calls = Column(Integer, nullable=True)
    error_message = Column(Text, nullable=True)
    next_retry_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.id} ({self.status.value}, attempt {self.attempt_number})"


class HierarchyMismatchEvent(Base):
    """Immutable record of a parent vs. sum-of-children disagreement.

    Only `acknowledged` ever changes after insert. Acknowledged events older
    than the retention window are deleted by the retention sweep.
    """
    __tablename__ = "hierarchy_mismatch_events"
    __table_args__ = (
        Index("ix_mismatch_events_customer_created", "customer_id", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    customer_id = Column(String, nullable=False)
    trigger = Column(Enum(ValidationTriggerEnum, values_callable=_enum_values), nullable=False)

    # Query window the comparison ran over
    start_date = Column(String, nullable=False)
    end_date = Column(String, nullable=False)
    timezone = Column(String, nullable=False, default="UTC")

    entity_type = Column(Enum(EntityTypeEnum, values_callable=_enum_values), nullable=False)
    entity_id = Column(String, nullable=False)
    entity_name = Column(String, nullable=True)
    metric = Column(String, nullable=False)
    parent_value = Column(Numeric(20, 6), nullable=False)
    child_sum = Column(Numeric(20, 6), nullable=False)
    absolute_diff = Column(Numeric(20, 6), nullable=False)
    variance_percent = Column(Numeric(10, 4), nullable=False)
    severity = Column(Enum(MismatchSeverityEnum, values_callable=_enum_values), nullable=False)

    sampled_entities = Column(Integer, nullable=False)
    sample_rate = Column(Numeric(6, 4), nullable=False)
    acknowledged = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    def __str__(self):
        return f"{self.entity_name} {self.metric} {self.variance_percent}% ({self.severity.value})"
