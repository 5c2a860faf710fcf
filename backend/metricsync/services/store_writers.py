"""Entity-specific store writers (idempotent persistence).

WHAT:
    One writer per refresh job type. Each writer turns gateway rows into
    MetricsFact + EntityHierarchy upserts and commits them in a single
    transaction.

WHY:
    - Jobs are delivered at-least-once and several workers may run at once,
      so every write is an INSERT ... ON CONFLICT on a natural unique key
    - Last write wins: a fact row is the authoritative total for its date,
      never a delta, so replaying a job leaves the same rows behind
    - Writers never read sibling data, so an ad-group job may land before or
      after its campaign job

DIALECTS:
    PostgreSQL in production, SQLite in tests. Both support ON CONFLICT; the
    helper picks the matching `insert` construct from the session's bind.

REFERENCES:
    - metricsync/models.py (MetricsFact, EntityHierarchy)
    - metricsync/services/refresh_worker.py (caller)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from metricsync.models import (
    DataFreshnessEnum,
    EntityHierarchy,
    EntityTypeEnum,
    MetricsFact,
)
from metricsync.schemas import RefreshJob

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000

FACT_KEY = ["customer_id", "entity_type", "entity_id", "date"]
HIERARCHY_KEY = ["customer_id", "entity_type", "entity_id"]

FACT_UPDATE_FIELDS = (
    "account_id",
    "parent_entity_type",
    "parent_entity_id",
    "impressions",
    "clicks",
    "cost_micros",
    "conversions",
    "conversions_value",
    "ctr",
    "average_cpc",
    "data_freshness",
    "synced_at",
)


# =============================================================================
# UPSERT HELPER
# =============================================================================

def upsert_rows(
    db: Session,
    model,
    rows: Sequence[Dict[str, Any]],
    index_elements: List[str],
    update_fields: Iterable[str],
) -> None:
    """INSERT ... ON CONFLICT (index_elements) DO UPDATE SET update_fields.

    Executes inside the caller's transaction; does not commit.
    """
    if not rows:
        return

    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        insert = postgresql.insert
    elif dialect == "sqlite":
        insert = sqlite.insert
    else:
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")

    for values in rows:
        stmt = insert(model).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=index_elements,
            set_={field: getattr(stmt.excluded, field) for field in update_fields},
        )
        db.execute(stmt)


# =============================================================================
# ROW MAPPING
# =============================================================================

def _coerce_date(value: Any, fallback: date) -> date:
    if value is None or value == "":
        return fallback
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _fact_values(
    job: RefreshJob,
    *,
    entity_type: EntityTypeEnum,
    entity_id: str,
    parent_type: Optional[EntityTypeEnum],
    parent_id: Optional[str],
    row: Dict[str, Any],
    today: date,
    synced_at: datetime,
) -> Dict[str, Any]:
    """Normalize one gateway row into MetricsFact column values.

    Rows without their own `date` are range totals keyed to the job's end date.
    """
    fact_date = _coerce_date(row.get("date"), job.end_date)
    spend = float(row.get("spend") or 0)
    clicks = int(row.get("clicks") or 0)
    impressions = int(row.get("impressions") or 0)

    return {
        "customer_id": job.customer_id,
        "account_id": job.account_id,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "parent_entity_type": parent_type,
        "parent_entity_id": parent_id,
        "date": fact_date,
        "impressions": impressions,
        "clicks": clicks,
        "cost_micros": round(spend * MICROS_PER_UNIT),
        "conversions": Decimal(str(row.get("conversions") or 0)),
        "conversions_value": Decimal(str(row.get("conversion_value") or 0)),
        "ctr": Decimal(str(clicks / impressions)) if impressions else Decimal("0"),
        "average_cpc": Decimal(str(spend / clicks)) if clicks else Decimal("0"),
        "data_freshness": DataFreshnessEnum.partial if fact_date == today else DataFreshnessEnum.final,
        "synced_at": synced_at,
    }


def _hierarchy_values(
    job: RefreshJob,
    *,
    entity_type: EntityTypeEnum,
    entity_id: str,
    name: Optional[str],
    status: Optional[str],
    parent_type: Optional[EntityTypeEnum],
    parent_id: Optional[str],
    synced_at: datetime,
    campaign_type: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "customer_id": job.customer_id,
        "account_id": job.account_id,
        "entity_type": entity_type,
        "entity_id": str(entity_id),
        "entity_name": name,
        "status": status,
        "parent_entity_type": parent_type,
        "parent_entity_id": parent_id,
        "campaign_type": campaign_type,
        "last_updated": synced_at,
    }


def _commit_batch(
    db: Session,
    facts: List[Dict[str, Any]],
    hierarchy: List[Dict[str, Any]],
    hierarchy_update_fields: Iterable[str],
    label: str,
) -> int:
    """Upsert facts and hierarchy rows atomically; rollback on any failure."""
    try:
        upsert_rows(db, MetricsFact, facts, FACT_KEY, FACT_UPDATE_FIELDS)
        upsert_rows(db, EntityHierarchy, hierarchy, HIERARCHY_KEY, hierarchy_update_fields)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("[STORE] %s write rolled back", label)
        raise

    logger.info("[STORE] %s: upserted %d facts, %d hierarchy rows", label, len(facts), len(hierarchy))
    return len(facts)


_HIERARCHY_UPDATE = ("account_id", "entity_name", "status", "parent_entity_type", "parent_entity_id", "last_updated")


# =============================================================================
# WRITERS
# =============================================================================

def write_campaigns(db: Session, job: RefreshJob, rows: List[Dict[str, Any]], today: date) -> int:
    now = datetime.now(timezone.utc)
    facts, hierarchy = [], []
    for row in rows:
        cid = str(row["id"])
        facts.append(_fact_values(
            job, entity_type=EntityTypeEnum.campaign, entity_id=cid,
            parent_type=EntityTypeEnum.account, parent_id=job.customer_id,
            row=row, today=today, synced_at=now,
        ))
        hierarchy.append(_hierarchy_values(
            job, entity_type=EntityTypeEnum.campaign, entity_id=cid,
            name=row.get("name"), status=row.get("status"),
            parent_type=EntityTypeEnum.account, parent_id=job.customer_id,
            synced_at=now, campaign_type=row.get("type"),
        ))
    return _commit_batch(db, facts, hierarchy, _HIERARCHY_UPDATE + ("campaign_type",), "campaigns")


def write_ad_groups(db: Session, job: RefreshJob, rows: List[Dict[str, Any]], today: date) -> int:
    now = datetime.now(timezone.utc)
    campaign_id = job.parent_entity_id
    facts, hierarchy = [], []
    for row in rows:
        gid = str(row["id"])
        facts.append(_fact_values(
            job, entity_type=EntityTypeEnum.ad_group, entity_id=gid,
            parent_type=EntityTypeEnum.campaign, parent_id=campaign_id,
            row=row, today=today, synced_at=now,
        ))
        hierarchy.append(_hierarchy_values(
            job, entity_type=EntityTypeEnum.ad_group, entity_id=gid,
            name=row.get("name"), status=row.get("status"),
            parent_type=EntityTypeEnum.campaign, parent_id=campaign_id,
            synced_at=now,
        ))
    return _commit_batch(db, facts, hierarchy, _HIERARCHY_UPDATE, "ad groups")


def write_keywords(db: Session, job: RefreshJob, rows: List[Dict[str, Any]], today: date) -> int:
    now = datetime.now(timezone.utc)
    ad_group_id = job.parent_entity_id
    facts, hierarchy = [], []
    for row in rows:
        kid = str(row["id"])
        facts.append(_fact_values(
            job, entity_type=EntityTypeEnum.keyword, entity_id=kid,
            parent_type=EntityTypeEnum.ad_group, parent_id=ad_group_id,
            row=row, today=today, synced_at=now,
        ))
        hierarchy.append(_hierarchy_values(
            job, entity_type=EntityTypeEnum.keyword, entity_id=kid,
            name=row.get("text") or row.get("name"), status=row.get("status"),
            parent_type=EntityTypeEnum.ad_group, parent_id=ad_group_id,
            synced_at=now,
        ))
    return _commit_batch(db, facts, hierarchy, _HIERARCHY_UPDATE, "keywords")


def write_ads(db: Session, job: RefreshJob, rows: List[Dict[str, Any]], today: date) -> int:
    """Ads are named on first sight only ("Ad <id>" when unnamed)."""
    now = datetime.now(timezone.utc)
    ad_group_id = job.parent_entity_id
    facts, hierarchy = [], []
    for row in rows:
        aid = str(row["id"])
        facts.append(_fact_values(
            job, entity_type=EntityTypeEnum.ad, entity_id=aid,
            parent_type=EntityTypeEnum.ad_group, parent_id=ad_group_id,
            row=row, today=today, synced_at=now,
        ))
        hierarchy.append(_hierarchy_values(
            job, entity_type=EntityTypeEnum.ad, entity_id=aid,
            name=row.get("name") or f"Ad {aid}", status=row.get("status"),
            parent_type=EntityTypeEnum.ad_group, parent_id=ad_group_id,
            synced_at=now,
        ))
    update = tuple(f for f in _HIERARCHY_UPDATE if f != "entity_name")
    return _commit_batch(db, facts, hierarchy, update, "ads")


def write_daily_metrics(db: Session, job: RefreshJob, rows: List[Dict[str, Any]], today: date) -> int:
    """Account-level facts: entity id is the customer id, one row per date."""
    now = datetime.now(timezone.utc)
    facts = [
        _fact_values(
            job, entity_type=EntityTypeEnum.account, entity_id=job.customer_id,
            parent_type=None, parent_id=None,
            row=row, today=today, synced_at=now,
        )
        for row in rows
    ]
    hierarchy = [_hierarchy_values(
        job, entity_type=EntityTypeEnum.account, entity_id=job.customer_id,
        name=job.customer_id, status="ENABLED",
        parent_type=None, parent_id=None, synced_at=now,
    )]
    return _commit_batch(db, facts, hierarchy, ("account_id", "last_updated"), "daily metrics")
