"""
Hierarchy Validation Tests
==========================

WHAT: Threshold layering, severity boundaries, sampling rules, persistence
      and the history / acknowledge / retention helpers.
WHY: False positives on tiny volumes train operators to ignore the alert;
     false negatives hide partial syncs.

REFERENCES:
- backend/metricsync/services/hierarchy_validation.py
"""

import uuid
from datetime import date, datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from metricsync.models import (
    DataFreshnessEnum,
    EntityHierarchy,
    EntityTypeEnum,
    HierarchyMismatchEvent,
    MetricsFact,
    MismatchSeverityEnum,
    ValidationTriggerEnum,
)
from metricsync.services.hierarchy_validation import (
    acknowledge_mismatch,
    check_metric,
    cleanup_old_mismatch_events,
    get_mismatch_history,
    is_hierarchy_healthy,
    validate_campaign_hierarchy,
)

DAY = date(2025, 1, 1)


# ============================================================================
# Helpers
# ============================================================================

def _campaign(db, cid, name=None, status="ENABLED", last_updated=None):
    db.add(EntityHierarchy(
        customer_id="C1",
        entity_type=EntityTypeEnum.campaign,
        entity_id=cid,
        entity_name=name or f"Campaign {cid}",
        status=status,
        last_updated=last_updated or datetime.now(timezone.utc),
    ))


def _fact(db, entity_type, entity_id, parent_id=None, spend=0.0, clicks=0, impressions=0, conversions=0.0, day=DAY):
    db.add(MetricsFact(
        customer_id="C1",
        entity_type=entity_type,
        entity_id=entity_id,
        parent_entity_id=parent_id,
        date=day,
        cost_micros=round(spend * 1_000_000),
        clicks=clicks,
        impressions=impressions,
        conversions=conversions,
        conversions_value=0,
        ctr=0,
        average_cpc=0,
        data_freshness=DataFreshnessEnum.final,
    ))


def _rollup(db, cid, parent: dict, children: list):
    _campaign(db, cid)
    _fact(db, EntityTypeEnum.campaign, cid, parent_id="C1", **parent)
    for i, child in enumerate(children):
        _fact(db, EntityTypeEnum.ad_group, f"{cid}-ag{i}", parent_id=cid, **child)
    db.commit()


def _validate(db, **kwargs):
    return validate_campaign_hierarchy(db, "C1", DAY, DAY, **kwargs)


# ============================================================================
# check_metric filter layers
# ============================================================================

def test_below_minimum_parent_value_is_not_flagged():
    # 0.80 vs 1.10 is ~27% apart but under the $1 gate
    assert check_metric("camp1", "Camp", "spend", 0.80, 1.10, 0.05) is None


def test_below_absolute_floor_is_not_flagged():
    assert check_metric("camp1", "Camp", "clicks", 10_000, 10_001, 0.0001) is None


def test_within_tolerance_is_not_flagged():
    assert check_metric("camp1", "Camp", "impressions", 1000, 970, 0.05) is None


def test_exactly_twenty_percent_is_a_warning():
    mismatch = check_metric("camp1", "Camp", "spend", 500.0, 400.0, 0.05)

    assert mismatch is not None
    assert mismatch.severity == MismatchSeverityEnum.warning
    assert mismatch.absolute_diff == 100.0
    assert mismatch.variance == pytest.approx(20.0)


def test_above_twenty_percent_is_an_error():
    mismatch = check_metric("camp1", "Camp", "spend", 500.0, 350.0, 0.05)

    assert mismatch.severity == MismatchSeverityEnum.error
    assert mismatch.variance == pytest.approx(30.0)


def test_child_sum_larger_than_parent_uses_larger_denominator():
    mismatch = check_metric("camp1", None, "clicks", 100, 150, 0.05)

    assert mismatch.variance == pytest.approx(50 / 150 * 100)
    assert mismatch.entity_name == "camp1"


# ============================================================================
# validate_campaign_hierarchy
# ============================================================================

def test_no_campaigns_is_not_validated(test_db_session):
    result = _validate(test_db_session)

    assert result.validated is False
    assert result.sampled_entities == 0
    assert result.mismatches == []


def test_spend_threshold_gating_end_to_end(test_db_session):
    _rollup(test_db_session, "camp1", {"spend": 0.80}, [{"spend": 0.80}, {"spend": 0.30}])

    result = _validate(test_db_session)

    assert result.validated is True
    assert result.summary.campaigns_checked == 1
    assert result.mismatches == []


def test_clicks_absolute_floor_end_to_end(test_db_session):
    _rollup(test_db_session, "camp1", {"clicks": 10_000}, [{"clicks": 6_000}, {"clicks": 4_001}])

    assert _validate(test_db_session).mismatches == []


def test_spend_mismatch_is_detected_and_persisted(test_db_session):
    _rollup(test_db_session, "camp1", {"spend": 500.0}, [{"spend": 250.0}, {"spend": 150.0}])

    result = _validate(test_db_session, trigger=ValidationTriggerEnum.manual, timezone_name="Europe/Amsterdam")

    assert len(result.mismatches) == 1
    mismatch = result.mismatches[0]
    assert mismatch.metric == "spend"
    assert mismatch.entity_id == "camp1"
    assert mismatch.parent_value == 500.0
    assert mismatch.child_sum == 400.0
    assert mismatch.severity == MismatchSeverityEnum.warning
    assert result.summary.campaigns_with_issues == 1
    assert result.summary.total_variance == 20.0
    assert result.summary.avg_variance == 20.0
    assert result.persisted_events == 1

    event = test_db_session.query(HierarchyMismatchEvent).one()
    assert event.trigger == ValidationTriggerEnum.manual
    assert event.timezone == "Europe/Amsterdam"
    assert event.start_date == "2025-01-01"
    assert float(event.variance_percent) == 20.0
    assert event.sampled_entities == 1
    assert float(event.sample_rate) == 0.05
    assert event.acknowledged is False


def test_campaign_without_ad_groups_is_skipped(test_db_session):
    _rollup(test_db_session, "camp1", {"spend": 500.0}, [])
    _rollup(test_db_session, "camp2", {"spend": 100.0}, [{"spend": 100.0}])

    result = _validate(test_db_session)

    assert result.sampled_entities == 2
    assert result.summary.campaigns_checked == 1
    assert result.mismatches == []


def test_only_enabled_campaigns_are_sampled(test_db_session):
    _campaign(test_db_session, "paused", status="PAUSED")
    test_db_session.commit()

    assert _validate(test_db_session).validated is False


def test_sample_is_capped_to_most_recent_ten(test_db_session):
    base = datetime(2025, 1, 1, tzinfo=timezone.utc)
    for i in range(12):
        _campaign(test_db_session, f"c{i}", last_updated=base + timedelta(minutes=i))
    test_db_session.commit()

    result = _validate(test_db_session)

    assert result.sampled_entities == 10


def test_avg_variance_divides_by_campaigns_checked(test_db_session):
    _rollup(test_db_session, "bad", {"spend": 500.0}, [{"spend": 350.0}])
    _rollup(test_db_session, "good", {"spend": 100.0}, [{"spend": 100.0}])

    result = _validate(test_db_session)

    assert result.summary.campaigns_checked == 2
    assert result.summary.campaigns_with_issues == 1
    assert result.summary.total_variance == 30.0
    assert result.summary.avg_variance == 15.0
    assert result.mismatches[0].severity == MismatchSeverityEnum.error


def test_worst_metric_counts_toward_total_variance(test_db_session):
    _rollup(
        test_db_session, "camp1",
        {"spend": 500.0, "clicks": 1000},
        [{"spend": 400.0, "clicks": 500}],
    )

    result = _validate(test_db_session)

    assert {m.metric for m in result.mismatches} == {"spend", "clicks"}
    assert result.summary.campaigns_with_issues == 1
    assert result.summary.total_variance == 50.0


def test_date_window_excludes_outside_rows(test_db_session):
    _campaign(test_db_session, "camp1")
    _fact(test_db_session, EntityTypeEnum.campaign, "camp1", spend=100.0)
    _fact(test_db_session, EntityTypeEnum.ad_group, "ag1", parent_id="camp1", spend=100.0)
    # Outside the window: would create a mismatch if it leaked in
    _fact(test_db_session, EntityTypeEnum.campaign, "camp1", spend=900.0, day=DAY + timedelta(days=1))
    test_db_session.commit()

    assert _validate(test_db_session).mismatches == []


def test_persistence_failure_is_swallowed(test_db_session):
    _rollup(test_db_session, "camp1", {"spend": 500.0}, [{"spend": 100.0}])

    with patch.object(test_db_session, "commit", side_effect=RuntimeError("db down")):
        result = _validate(test_db_session)

    assert result.validated is True
    assert len(result.mismatches) == 1
    assert result.persisted_events == 0


def test_is_hierarchy_healthy(test_db_session):
    _rollup(test_db_session, "camp1", {"spend": 100.0}, [{"spend": 100.0}])
    assert is_hierarchy_healthy(test_db_session, "C1", DAY, DAY) is True

    _rollup(test_db_session, "camp2", {"spend": 100.0}, [{"spend": 10.0}])
    assert is_hierarchy_healthy(test_db_session, "C1", DAY, DAY) is False


# ============================================================================
# History / acknowledge / retention
# ============================================================================

def _event(db, metric="spend", severity=MismatchSeverityEnum.warning, variance=10.0, created_at=None, acknowledged=False):
    event = HierarchyMismatchEvent(
        customer_id="C1",
        trigger=ValidationTriggerEnum.refresh,
        start_date="2025-01-01",
        end_date="2025-01-01",
        timezone="UTC",
        entity_type=EntityTypeEnum.campaign,
        entity_id="camp1",
        entity_name="Campaign camp1",
        metric=metric,
        parent_value=100,
        child_sum=90,
        absolute_diff=10,
        variance_percent=variance,
        severity=severity,
        sampled_entities=1,
        sample_rate=0.05,
        acknowledged=acknowledged,
        created_at=created_at or datetime.now(timezone.utc),
    )
    db.add(event)
    db.commit()
    return event


def test_mismatch_history_summary(test_db_session):
    _event(test_db_session, metric="spend", variance=10.0)
    _event(test_db_session, metric="spend", severity=MismatchSeverityEnum.error, variance=30.0)
    _event(test_db_session, metric="clicks", variance=20.0)
    _event(test_db_session, metric="clicks", created_at=datetime.now(timezone.utc) - timedelta(days=45))

    history = get_mismatch_history(test_db_session, "C1", days=30)

    assert history["summary"]["total_events"] == 3
    assert history["summary"]["by_metric"] == {"spend": 2, "clicks": 1}
    assert history["summary"]["by_severity"] == {"warning": 2, "error": 1}
    assert history["summary"]["avg_variance"] == pytest.approx(20.0)


def test_mismatch_history_respects_limit(test_db_session):
    for _ in range(5):
        _event(test_db_session)

    assert len(get_mismatch_history(test_db_session, "C1", limit=2)["events"]) == 2


def test_acknowledge_mismatch(test_db_session):
    event = _event(test_db_session)

    assert acknowledge_mismatch(test_db_session, str(event.id)) is True
    test_db_session.refresh(event)
    assert event.acknowledged is True


def test_acknowledge_unknown_event(test_db_session):
    assert acknowledge_mismatch(test_db_session, uuid.uuid4()) is False


def test_cleanup_deletes_only_old_acknowledged_events(test_db_session):
    old = datetime.now(timezone.utc) - timedelta(days=120)
    _event(test_db_session, created_at=old, acknowledged=True)
    _event(test_db_session, created_at=old, acknowledged=False)
    _event(test_db_session, acknowledged=True)

    deleted = cleanup_old_mismatch_events(test_db_session, retention_days=90)

    assert deleted == 1
    assert test_db_session.query(HierarchyMismatchEvent).count() == 2
