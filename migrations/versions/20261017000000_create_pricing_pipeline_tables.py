"""Create pricing pipeline tables

Revision ID: 20261017000000
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20261017000000'
down_revision = None
branch_labels = None
depends_on = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        'products',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('sku', sa.String(length=128), nullable=False),
        sa.Column('title', sa.String(length=512), nullable=False, server_default=''),
        sa.Column('vendor', sa.String(length=255), nullable=True),
        sa.Column('product_type', sa.String(length=255), nullable=True),
        sa.Column('tags', postgresql.JSONB(), nullable=False, server_default=sa.text("'[]'::jsonb")),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('channel_refs', postgresql.JSONB(), nullable=True,
                  comment='Platform references, e.g. {"shopify": {"variantId": "123"}}'),
        *_timestamps(),
    )
    op.create_index('ix_products_tenant_id', 'products', ['tenant_id'])
    op.create_index('ix_products_project_id', 'products', ['project_id'])
    op.create_index('ix_products_sku', 'products', ['sku'])
    op.create_index('ix_products_active', 'products', ['active'])
    op.create_index('ix_products_created_at', 'products', ['created_at'])

    op.create_table(
        'price_versions',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('products.id'), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('unit_amount', sa.BigInteger(), nullable=False, comment='Minor currency units'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('compare_at', sa.BigInteger(), nullable=True),
        sa.Column('valid_from', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('valid_to', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_price_versions_product_id', 'price_versions', ['product_id'])
    op.create_index('ix_price_versions_tenant_id', 'price_versions', ['tenant_id'])
    op.create_index('ix_price_versions_project_id', 'price_versions', ['project_id'])
    op.create_index('ix_price_versions_valid_to', 'price_versions', ['valid_to'])

    op.create_table(
        'pricing_rules',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('selector', postgresql.JSONB(), nullable=False, comment='Serialized predicate tree'),
        sa.Column('transform', postgresql.JSONB(), nullable=False, comment='Serialized mutation descriptor'),
        sa.Column('platform', sa.String(length=50), nullable=False, server_default='shopify',
                  comment='Connector used to apply the rule'),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('schedule_at', sa.DateTime(), nullable=True, comment='NULL means manual trigger only'),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_pricing_rules_tenant_id', 'pricing_rules', ['tenant_id'])
    op.create_index('ix_pricing_rules_project_id', 'pricing_rules', ['project_id'])
    op.create_index('ix_pricing_rules_enabled', 'pricing_rules', ['enabled'])
    op.create_index('ix_pricing_rules_schedule_at', 'pricing_rules', ['schedule_at'])
    op.create_index('ix_pricing_rules_created_at', 'pricing_rules', ['created_at'])

    op.create_table(
        'rule_runs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('rule_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('pricing_rules.id'), nullable=False),
        sa.Column('platform', sa.String(length=50), nullable=False, server_default='shopify'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'QUEUED'"),
                  comment='QUEUED, APPLYING, APPLIED, PARTIAL, FAILED'),
        sa.Column('trigger', sa.String(length=20), nullable=False, server_default='scheduler',
                  comment='scheduler or manual'),
        sa.Column('scheduled_for', sa.DateTime(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=True),
        sa.Column('finished_at', sa.DateTime(), nullable=True),
        sa.Column('explain', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status in ('QUEUED','APPLYING','APPLIED','PARTIAL','FAILED')",
                           name='ck_rule_runs_status'),
    )
    op.create_index('ix_rule_runs_tenant_id', 'rule_runs', ['tenant_id'])
    op.create_index('ix_rule_runs_project_id', 'rule_runs', ['project_id'])
    op.create_index('ix_rule_runs_rule_id', 'rule_runs', ['rule_id'])
    op.create_index('ix_rule_runs_created_at', 'rule_runs', ['created_at'])
    op.create_index('ix_rule_runs_status_created_at', 'rule_runs', ['status', 'created_at'])
    op.create_index(
        'uq_rule_runs_active_schedule', 'rule_runs', ['rule_id', 'scheduled_for'], unique=True,
        postgresql_where=sa.text("status IN ('QUEUED', 'APPLYING')"),
    )

    op.create_table(
        'rule_targets',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('rule_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rule_runs.id'), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0',
                  comment='Creation order within the run'),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('sku', sa.String(length=128), nullable=True),
        sa.Column('external_ref', sa.String(length=255), nullable=True,
                  comment='Connector-side variant identifier'),
        sa.Column('before', postgresql.JSONB(), nullable=False),
        sa.Column('after', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'QUEUED'"),
                  comment='QUEUED, APPLIED, FAILED'),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status in ('QUEUED','APPLIED','FAILED')", name='ck_rule_targets_status'),
    )
    op.create_index('ix_rule_targets_tenant_id', 'rule_targets', ['tenant_id'])
    op.create_index('ix_rule_targets_project_id', 'rule_targets', ['project_id'])
    op.create_index('ix_rule_targets_rule_run_id', 'rule_targets', ['rule_run_id'])
    op.create_index('ix_rule_targets_product_id', 'rule_targets', ['product_id'])
    op.create_index('ix_rule_targets_created_at', 'rule_targets', ['created_at'])
    op.create_index('ix_rule_targets_run_status', 'rule_targets', ['rule_run_id', 'status'])

    op.create_table(
        'price_changes',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=False),
        sa.Column('product_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('external_ref', sa.String(length=255), nullable=True),
        sa.Column('source', sa.String(length=255), nullable=False,
                  comment='Origin, e.g. rule:<id>, manual, connector:<name>'),
        sa.Column('rule_run_id', postgresql.UUID(as_uuid=True), sa.ForeignKey('rule_runs.id'), nullable=True),
        sa.Column('from_amount', sa.BigInteger(), nullable=False),
        sa.Column('to_amount', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False),
        sa.Column('compare_at_old', sa.BigInteger(), nullable=True),
        sa.Column('compare_at_new', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'"),
                  comment='PENDING, APPROVED, APPLIED, REJECTED, ROLLED_BACK'),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.Column('created_by', sa.String(length=100), nullable=False, server_default='system'),
        sa.Column('context', postgresql.JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        *_timestamps(),
    )
    op.create_index('ix_price_changes_tenant_id', 'price_changes', ['tenant_id'])
    op.create_index('ix_price_changes_project_id', 'price_changes', ['project_id'])
    op.create_index('ix_price_changes_product_id', 'price_changes', ['product_id'])
    op.create_index('ix_price_changes_rule_run_id', 'price_changes', ['rule_run_id'])
    op.create_index('ix_price_changes_status', 'price_changes', ['status'])
    op.create_index('ix_price_changes_created_at', 'price_changes', ['created_at'])

    op.create_table(
        'idempotency_keys',
        sa.Column('key', sa.String(length=512), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('rule_run_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('rule_target_id', postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column('consumed_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_idempotency_keys_tenant_id', 'idempotency_keys', ['tenant_id'])
    op.create_index('ix_idempotency_keys_rule_run_id', 'idempotency_keys', ['rule_run_id'])

    op.create_table(
        'outbox_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False, comment='e.g. pricechange.applied'),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('aggregate_id', sa.String(length=64), nullable=True,
                  comment='ID of the entity the event announces'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'PENDING'"),
                  comment='PENDING, PROCESSING, COMPLETED, FAILED'),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("status in ('PENDING','PROCESSING','COMPLETED','FAILED')",
                           name='ck_outbox_events_status'),
    )
    op.create_index('ix_outbox_events_event_type', 'outbox_events', ['event_type'])
    op.create_index('ix_outbox_events_tenant_id', 'outbox_events', ['tenant_id'])
    op.create_index('ix_outbox_events_correlation_id', 'outbox_events', ['correlation_id'])
    op.create_index('ix_outbox_events_created_at', 'outbox_events', ['created_at'])
    op.create_index('ix_outbox_events_status_next_attempt', 'outbox_events', ['status', 'next_attempt_at'])

    op.create_table(
        'dead_letter_events',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('original_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('aggregate_id', sa.String(length=64), nullable=True),
        sa.Column('failure_reason', sa.Text(), nullable=False),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('resolution', sa.String(length=20), nullable=True, comment='REPLAYED or DISCARDED'),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_dead_letter_events_original_id', 'dead_letter_events', ['original_id'])
    op.create_index('ix_dead_letter_events_event_type', 'dead_letter_events', ['event_type'])
    op.create_index('ix_dead_letter_events_tenant_id', 'dead_letter_events', ['tenant_id'])
    op.create_index('ix_dead_letter_events_created_at', 'dead_letter_events', ['created_at'])

    op.create_table(
        'audit_logs',
        sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column('tenant_id', sa.String(length=64), nullable=False),
        sa.Column('project_id', sa.String(length=64), nullable=True),
        sa.Column('entity', sa.String(length=50), nullable=False, comment='RuleRun, RuleTarget, PriceChange, ...'),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('actor', sa.String(length=100), nullable=False),
        sa.Column('explain', postgresql.JSONB(), nullable=True),
        sa.Column('correlation_id', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_audit_logs_tenant_id', 'audit_logs', ['tenant_id'])
    op.create_index('ix_audit_logs_entity', 'audit_logs', ['entity'])
    op.create_index('ix_audit_logs_entity_id', 'audit_logs', ['entity_id'])
    op.create_index('ix_audit_logs_correlation_id', 'audit_logs', ['correlation_id'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('audit_logs')
    op.drop_table('dead_letter_events')
    op.drop_table('outbox_events')
    op.drop_table('idempotency_keys')
    op.drop_table('price_changes')
    op.drop_table('rule_targets')
    op.drop_index('uq_rule_runs_active_schedule', table_name='rule_runs')
    op.drop_table('rule_runs')
    op.drop_table('pricing_rules')
    op.drop_table('price_versions')
    op.drop_table('products')
