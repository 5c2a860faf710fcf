"""Create refresh pipeline tables.

Revision ID: 20260101_000001
Revises:
Create Date: 2026-01-01 00:00:00.000000

WHAT:
    Creates the four tables of the metrics-refresh pipeline:
    - metrics_facts: per-entity, per-date performance facts (upsert target)
    - entity_hierarchy: entity -> parent map with name/status
    - refresh_job_logs: one audit row per deterministic job id
    - hierarchy_mismatch_events: append-only rollup drift records

WHY:
    Store writers upsert on the natural unique keys created here, so the
    constraints are part of the correctness story, not just indexes.
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260101_000001'
down_revision = None
branch_labels = None
depends_on = None


ENTITY_TYPES = ('ACCOUNT', 'CAMPAIGN', 'AD_GROUP', 'KEYWORD', 'AD')


def upgrade() -> None:
    entity_type = postgresql.ENUM(*ENTITY_TYPES, name='entitytypeenum', create_type=False)
    freshness = postgresql.ENUM('PARTIAL', 'FINAL', name='datafreshnessenum', create_type=False)
    job_type = postgresql.ENUM(
        'refresh-campaigns', 'refresh-ad-groups', 'refresh-keywords', 'refresh-ads', 'refresh-reports',
        name='refreshjobtypeenum', create_type=False,
    )
    job_status = postgresql.ENUM('processing', 'completed', 'failed', 'retrying', name='jobstatusenum', create_type=False)
    priority = postgresql.ENUM('normal', 'high', name='jobpriorityenum', create_type=False)
    trigger = postgresql.ENUM('cache_hit', 'refresh', 'manual', 'scheduled', name='validationtriggerenum', create_type=False)
    severity = postgresql.ENUM('warning', 'error', name='mismatchseverityenum', create_type=False)

    bind = op.get_bind()
    for enum_type in (entity_type, freshness, job_type, job_status, priority, trigger, severity):
        enum_type.create(bind, checkfirst=True)

    # =========================================================================
    # metrics_facts
    # =========================================================================
    op.create_table(
        'metrics_facts',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('entity_type', entity_type, nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('parent_entity_type', entity_type, nullable=True),
        sa.Column('parent_entity_id', sa.String(), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('impressions', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('clicks', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('cost_micros', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('conversions_value', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('ctr', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('average_cpc', sa.Numeric(18, 6), nullable=False, server_default='0'),
        sa.Column('data_freshness', freshness, nullable=False),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('customer_id', 'entity_type', 'entity_id', 'date', name='uq_metrics_fact_entity_date'),
    )
    op.create_index(
        'ix_metrics_facts_parent_rollup', 'metrics_facts',
        ['customer_id', 'entity_type', 'parent_entity_id', 'date'],
    )

    # =========================================================================
    # entity_hierarchy
    # =========================================================================
    op.create_table(
        'entity_hierarchy',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('entity_type', entity_type, nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('entity_name', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('parent_entity_type', entity_type, nullable=True),
        sa.Column('parent_entity_id', sa.String(), nullable=True),
        sa.Column('campaign_type', sa.String(), nullable=True),
        sa.Column('last_updated', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.UniqueConstraint('customer_id', 'entity_type', 'entity_id', name='uq_entity_hierarchy_entity'),
    )
    op.create_index(
        'ix_entity_hierarchy_sample', 'entity_hierarchy',
        ['customer_id', 'entity_type', 'status', 'last_updated'],
    )

    # =========================================================================
    # refresh_job_logs
    # =========================================================================
    op.create_table(
        'refresh_job_logs',
        sa.Column('id', sa.String(), primary_key=True),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('account_id', sa.String(), nullable=True),
        sa.Column('job_type', job_type, nullable=False),
        sa.Column('parent_entity_id', sa.String(), nullable=True),
        sa.Column('start_date', sa.String(), nullable=False),
        sa.Column('end_date', sa.String(), nullable=False),
        sa.Column('priority', priority, nullable=False, server_default='normal'),
        sa.Column('status', job_status, nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('enqueued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('entity_count', sa.Integer(), nullable=True),
        sa.Column('api_calls', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_refresh_job_logs_customer_id', 'refresh_job_logs', ['customer_id'])

    # =========================================================================
    # hierarchy_mismatch_events
    # =========================================================================
    op.create_table(
        'hierarchy_mismatch_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column('customer_id', sa.String(), nullable=False),
        sa.Column('trigger', trigger, nullable=False),
        sa.Column('start_date', sa.String(), nullable=False),
        sa.Column('end_date', sa.String(), nullable=False),
        sa.Column('timezone', sa.String(), nullable=False, server_default='UTC'),
        sa.Column('entity_type', entity_type, nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('entity_name', sa.String(), nullable=True),
        sa.Column('metric', sa.String(), nullable=False),
        sa.Column('parent_value', sa.Numeric(20, 6), nullable=False),
        sa.Column('child_sum', sa.Numeric(20, 6), nullable=False),
        sa.Column('absolute_diff', sa.Numeric(20, 6), nullable=False),
        sa.Column('variance_percent', sa.Numeric(10, 4), nullable=False),
        sa.Column('severity', severity, nullable=False),
        sa.Column('sampled_entities', sa.Integer(), nullable=False),
        sa.Column('sample_rate', sa.Numeric(6, 4), nullable=False),
        sa.Column('acknowledged', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index(
        'ix_mismatch_events_customer_created', 'hierarchy_mismatch_events',
        ['customer_id', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_mismatch_events_customer_created', table_name='hierarchy_mismatch_events')
    op.drop_table('hierarchy_mismatch_events')
    op.drop_index('ix_refresh_job_logs_customer_id', table_name='refresh_job_logs')
    op.drop_table('refresh_job_logs')
    op.drop_index('ix_entity_hierarchy_sample', table_name='entity_hierarchy')
    op.drop_table('entity_hierarchy')
    op.drop_index('ix_metrics_facts_parent_rollup', table_name='metrics_facts')
    op.drop_table('metrics_facts')

    for name in (
        'mismatchseverityenum', 'validationtriggerenum', 'jobpriorityenum', 'jobstatusenum',
        'refreshjobtypeenum', 'datafreshnessenum', 'entitytypeenum',
    ):
        op.execute(f"DROP TYPE IF EXISTS {name}")
