"""Hierarchy Consistency Validator.

WHAT:
    Samples recently-updated ENABLED campaigns and compares each campaign's
    own metrics with the SUM of its ad groups' metrics over the same date
    window, both read from metrics_facts. Disagreements beyond tolerance are
    returned and persisted as HierarchyMismatchEvent rows.

WHY:
    A parent that disagrees with its children is the visible symptom of a
    partial sync, a refresh race or an upstream anomaly. Checking a bounded
    sample keeps the cost flat regardless of account size.

FILTER LAYERS (per metric, all required):
    1. Minimum parent value   - negligible volumes are never flagged
    2. Minimum absolute diff  - rounding noise is never flagged
    3. Relative variance      - |parent - children| / max(parent, children, eps)
       must exceed tolerance; > 20% is an error, otherwise a warning

FAILURE POLICY:
    Best effort. Persisting events may fail; the validation result is still
    returned with persisted_events=0.

REFERENCES:
    - metricsync/services/refresh_worker.py (sampled post-refresh trigger)
    - metricsync/routers/diagnostics.py (manual trigger, history, acknowledge)
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from metricsync.models import (
    EntityHierarchy,
    EntityTypeEnum,
    HierarchyMismatchEvent,
    MetricsFact,
    MismatchSeverityEnum,
    ValidationTriggerEnum,
)
from metricsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_TOLERANCE = 0.05
SAMPLE_SIZE = 10
ERROR_VARIANCE = 0.2
VARIANCE_EPSILON = 0.001
# Recorded on every event for downstream trend analysis
EVENT_SAMPLE_RATE = 0.05

MIN_THRESHOLDS = {
    "spend": 1.00,
    "clicks": 10,
    "impressions": 100,
    "conversions": 0.5,
}

MIN_ABSOLUTE_DIFF = {
    "spend": 0.50,
    "clicks": 2,
    "impressions": 10,
    "conversions": 0.1,
}

METRICS = ("spend", "clicks", "impressions", "conversions")


@dataclass
class HierarchyMismatch:
    entity_type: EntityTypeEnum
    entity_id: str
    entity_name: str
    metric: str
    parent_value: float
    child_sum: float
    absolute_diff: float
    variance: float  # percent
    severity: MismatchSeverityEnum


@dataclass
class ValidationSummary:
    campaigns_checked: int = 0
    campaigns_with_issues: int = 0
    total_variance: float = 0.0
    avg_variance: float = 0.0


@dataclass
class QueryContext:
    start_date: str
    end_date: str
    timezone: str


@dataclass
class ValidationResult:
    validated: bool
    sampled_entities: int
    mismatches: List[HierarchyMismatch]
    summary: ValidationSummary
    timestamp: str
    trigger: ValidationTriggerEnum
    query_context: QueryContext
    persisted_events: int = 0

    def to_dict(self) -> Dict:
        return asdict(self)


def _as_date(value: Union[date, str]) -> date:
    return value if isinstance(value, date) else date.fromisoformat(value)


# =============================================================================
# METRIC CHECK
# =============================================================================

def check_metric(
    entity_id: str,
    entity_name: Optional[str],
    metric: str,
    parent_value: float,
    child_sum: float,
    tolerance: float,
) -> Optional[HierarchyMismatch]:
    """Apply the three filter layers to one metric; None when not flagged."""
    if parent_value < MIN_THRESHOLDS[metric]:
        return None

    absolute_diff = abs(parent_value - child_sum)
    if absolute_diff < MIN_ABSOLUTE_DIFF[metric]:
        return None

    variance = absolute_diff / max(parent_value, child_sum, VARIANCE_EPSILON)
    if variance <= tolerance:
        return None

    severity = MismatchSeverityEnum.error if variance > ERROR_VARIANCE else MismatchSeverityEnum.warning
    return HierarchyMismatch(
        entity_type=EntityTypeEnum.campaign,
        entity_id=entity_id,
        entity_name=entity_name or entity_id,
        metric=metric,
        parent_value=parent_value,
        child_sum=child_sum,
        absolute_diff=absolute_diff,
        variance=variance * 100,
        severity=severity,
    )


def _sum_metrics(db: Session, customer_id: str, start: date, end: date, *filters):
    """(cost_micros, clicks, impressions, conversions) sums; cost is None when no rows."""
    return (
        db.query(
            func.sum(MetricsFact.cost_micros),
            func.sum(MetricsFact.clicks),
            func.sum(MetricsFact.impressions),
            func.sum(MetricsFact.conversions),
        )
        .filter(
            MetricsFact.customer_id == customer_id,
            MetricsFact.date >= start,
            MetricsFact.date <= end,
            *filters,
        )
        .one()
    )


def _to_comparable(sums) -> Dict[str, float]:
    cost, clicks, impressions, conversions = sums
    return {
        "spend": float(cost or 0) / 1_000_000,
        "clicks": float(clicks or 0),
        "impressions": float(impressions or 0),
        "conversions": float(conversions or 0),
    }


# =============================================================================
# VALIDATION
# =============================================================================

def validate_campaign_hierarchy(
    db: Session,
    customer_id: str,
    start_date: Union[date, str],
    end_date: Union[date, str],
    tolerance: float = DEFAULT_TOLERANCE,
    trigger: ValidationTriggerEnum = ValidationTriggerEnum.cache_hit,
    timezone_name: str = "UTC",
) -> ValidationResult:
    """Compare sampled campaigns against the sum of their ad groups.

    Campaigns with no ad-group rows in the window are skipped and not
    counted as checked. `validated` is False only when there was nothing
    to sample.
    """
    start, end = _as_date(start_date), _as_date(end_date)
    trigger = ValidationTriggerEnum(trigger)
    context = QueryContext(start.isoformat(), end.isoformat(), timezone_name)

    campaigns = (
        db.query(EntityHierarchy.entity_id, EntityHierarchy.entity_name)
        .filter(
            EntityHierarchy.customer_id == customer_id,
            EntityHierarchy.entity_type == EntityTypeEnum.campaign,
            EntityHierarchy.status == "ENABLED",
        )
        .order_by(EntityHierarchy.last_updated.desc())
        .limit(SAMPLE_SIZE)
        .all()
    )

    now_iso = datetime.now(timezone.utc).isoformat()
    if not campaigns:
        return ValidationResult(
            validated=False,
            sampled_entities=0,
            mismatches=[],
            summary=ValidationSummary(),
            timestamp=now_iso,
            trigger=trigger,
            query_context=context,
        )

    mismatches: List[HierarchyMismatch] = []
    summary = ValidationSummary()
    total_variance = 0.0

    for entity_id, entity_name in campaigns:
        parent_sums = _sum_metrics(
            db, customer_id, start, end,
            MetricsFact.entity_type == EntityTypeEnum.campaign,
            MetricsFact.entity_id == entity_id,
        )
        child_sums = _sum_metrics(
            db, customer_id, start, end,
            MetricsFact.entity_type == EntityTypeEnum.ad_group,
            MetricsFact.parent_entity_id == entity_id,
        )

        # No ad groups synced yet: incomplete, not inconsistent
        if child_sums[0] is None:
            continue

        summary.campaigns_checked += 1
        parent, children = _to_comparable(parent_sums), _to_comparable(child_sums)

        found = [
            m for m in (
                check_metric(entity_id, entity_name, metric, parent[metric], children[metric], tolerance)
                for metric in METRICS
            )
            if m is not None
        ]
        if found:
            summary.campaigns_with_issues += 1
            total_variance += max(m.variance for m in found)
            mismatches.extend(found)

    avg_variance = total_variance / summary.campaigns_checked if summary.campaigns_checked else 0.0
    summary.total_variance = round(total_variance, 2)
    summary.avg_variance = round(avg_variance, 2)

    persisted = 0
    if mismatches:
        persisted = persist_mismatch_events(db, customer_id, mismatches, context, trigger, len(campaigns))

    if mismatches:
        logger.warning(
            "[VALIDATION] %s: %d mismatches across %d/%d campaigns (trigger=%s)",
            customer_id, len(mismatches), summary.campaigns_with_issues, summary.campaigns_checked, trigger.value,
        )
    else:
        logger.info(
            "[VALIDATION] %s: hierarchy consistent (%d campaigns checked)", customer_id, summary.campaigns_checked
        )

    return ValidationResult(
        validated=True,
        sampled_entities=len(campaigns),
        mismatches=mismatches,
        summary=summary,
        timestamp=now_iso,
        trigger=trigger,
        query_context=context,
        persisted_events=persisted,
    )


def persist_mismatch_events(
    db: Session,
    customer_id: str,
    mismatches: List[HierarchyMismatch],
    context: QueryContext,
    trigger: ValidationTriggerEnum,
    sampled_entities: int,
) -> int:
    """Batch insert; returns 0 (and logs) instead of raising on failure."""
    try:
        db.add_all([
            HierarchyMismatchEvent(
                customer_id=customer_id,
                trigger=trigger,
                start_date=context.start_date,
                end_date=context.end_date,
                timezone=context.timezone,
                entity_type=m.entity_type,
                entity_id=m.entity_id,
                entity_name=m.entity_name,
                metric=m.metric,
                parent_value=m.parent_value,
                child_sum=m.child_sum,
                absolute_diff=m.absolute_diff,
                variance_percent=m.variance,
                severity=m.severity,
                sampled_entities=sampled_entities,
                sample_rate=EVENT_SAMPLE_RATE,
            )
            for m in mismatches
        ])
        db.commit()
    except Exception as e:
        db.rollback()
        logger.exception("[VALIDATION] Failed to persist mismatch events for %s", customer_id)
        capture_exception(e, extra={"operation": "persist_mismatch_events", "customer_id": customer_id})
        return 0

    logger.info("[VALIDATION] Persisted %d mismatch events", len(mismatches))
    return len(mismatches)


def is_hierarchy_healthy(
    db: Session,
    customer_id: str,
    start_date: Union[date, str],
    end_date: Union[date, str],
    tolerance: float = DEFAULT_TOLERANCE,
) -> bool:
    result = validate_campaign_hierarchy(db, customer_id, start_date, end_date, tolerance)
    return not result.mismatches


# =============================================================================
# HISTORY / ACKNOWLEDGE / RETENTION
# =============================================================================

def get_mismatch_history(db: Session, customer_id: str, days: int = 30, limit: int = 100) -> Dict:
    """Events in the last `days` days, newest first, with summary counters."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=days)
    events = (
        db.query(HierarchyMismatchEvent)
        .filter(
            HierarchyMismatchEvent.customer_id == customer_id,
            HierarchyMismatchEvent.created_at >= cutoff,
        )
        .order_by(HierarchyMismatchEvent.created_at.desc())
        .limit(limit)
        .all()
    )

    by_metric: Dict[str, int] = {}
    by_severity: Dict[str, int] = {}
    total_variance = 0.0
    for event in events:
        by_metric[event.metric] = by_metric.get(event.metric, 0) + 1
        by_severity[event.severity.value] = by_severity.get(event.severity.value, 0) + 1
        total_variance += float(event.variance_percent)

    return {
        "events": events,
        "summary": {
            "total_events": len(events),
            "by_metric": by_metric,
            "by_severity": by_severity,
            "avg_variance": total_variance / len(events) if events else 0.0,
        },
    }


def acknowledge_mismatch(db: Session, event_id: Union[UUID, str]) -> bool:
    """Mark one event acknowledged. False when the id is unknown."""
    event_uuid = event_id if isinstance(event_id, UUID) else UUID(str(event_id))
    event = db.query(HierarchyMismatchEvent).filter(HierarchyMismatchEvent.id == event_uuid).first()
    if event is None:
        return False
    event.acknowledged = True
    db.commit()
    return True


def cleanup_old_mismatch_events(db: Session, retention_days: int = 90) -> int:
    """Delete acknowledged events older than the retention window."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
    deleted = (
        db.query(HierarchyMismatchEvent)
        .filter(
            HierarchyMismatchEvent.created_at < cutoff,
            HierarchyMismatchEvent.acknowledged.is_(True),
        )
        .delete(synchronize_session=False)
    )
    db.commit()
    logger.info("[VALIDATION] Retention sweep deleted %d acknowledged events", deleted)
    return deleted
