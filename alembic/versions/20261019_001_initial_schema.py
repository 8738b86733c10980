"""Initial schema - work items, rate limits, queue and audit tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

WORK_ITEM_STATUSES = ('unqueued', 'queued', 'processing', 'completed', 'failed', 'unsupported')
ATTEMPT_STATUSES = ('completed', 'empty', 'retrying', 'failed', 'unsupported', 'rate_limited', 'skipped')
ALERT_SEVERITIES = ('low', 'medium', 'high', 'critical')


def _uuid_pk() -> sa.Column:
    return sa.Column('id', postgresql.UUID(as_uuid=True), primary_key=True,
                     server_default=sa.text('gen_random_uuid()'))


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    ]


def upgrade() -> None:
    # Create ENUM types
    op.execute(f"CREATE TYPE workitemstatus AS ENUM {WORK_ITEM_STATUSES}")
    op.execute(f"CREATE TYPE attemptstatus AS ENUM {ATTEMPT_STATUSES}")
    op.execute(f"CREATE TYPE alertseverity AS ENUM {ALERT_SEVERITIES}")

    # Create work_items table
    op.create_table(
        'work_items',
        _uuid_pk(),
        sa.Column('jurisdiction', sa.String(2), nullable=False),
        sa.Column('locality_code', sa.String(20), nullable=False),
        sa.Column('profession', sa.String(50), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('status', postgresql.ENUM(*WORK_ITEM_STATUSES, name='workitemstatus', create_type=False),
                  nullable=False, server_default='unqueued'),
        sa.Column('priority', sa.Integer, nullable=False, server_default='5'),
        sa.Column('attempt_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('consecutive_failures', sa.Integer, nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text, nullable=True),
        sa.Column('last_result_count', sa.Integer, nullable=True),
        sa.Column('queued_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_attempted_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('next_retry_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('jurisdiction', 'locality_code', 'profession', 'source_type',
                            name='uq_work_items_identity'),
    )
    op.create_index('ix_work_items_jurisdiction', 'work_items', ['jurisdiction'])
    op.create_index('ix_work_items_source_type', 'work_items', ['source_type'])
    op.create_index('ix_work_items_status', 'work_items', ['status'])
    op.create_index('ix_work_items_next_retry_at', 'work_items', ['next_retry_at'])

    # Create rate_limits table
    op.create_table(
        'rate_limits',
        _uuid_pk(),
        sa.Column('source_type', sa.String(50), nullable=False, unique=True),
        sa.Column('requests_per_second', sa.Float, nullable=False, server_default='1.0'),
        sa.Column('window_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('count_in_window', sa.Integer, nullable=False, server_default='0'),
        sa.Column('is_throttled', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('throttled_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('throttle_reason', sa.Text, nullable=True),
        sa.Column('total_requests', sa.Integer, nullable=False, server_default='0'),
        sa.Column('total_denied', sa.Integer, nullable=False, server_default='0'),
        *_timestamps(),
    )

    # Create queue_messages table (audit log)
    op.create_table(
        'queue_messages',
        _uuid_pk(),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column('work_item_key', sa.String(200), nullable=False),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('attempt_number', sa.Integer, nullable=False),
        sa.Column('status', postgresql.ENUM(*ATTEMPT_STATUSES, name='attemptstatus', create_type=False),
                  nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('finished_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('duration_ms', sa.Integer, nullable=True),
        sa.Column('result_count', sa.Integer, nullable=True),
        sa.Column('stored_count', sa.Integer, nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('error_type', sa.String(50), nullable=True),
        sa.Column('worker_id', sa.String(100), nullable=True),
        sa.Column('worker_version', sa.String(20), nullable=True),
    )
    op.create_index('ix_queue_messages_message_id', 'queue_messages', ['message_id'])
    op.create_index('ix_queue_messages_work_item_key', 'queue_messages', ['work_item_key'])
    op.create_index('ix_queue_messages_source_type', 'queue_messages', ['source_type'])
    op.create_index('ix_queue_messages_status', 'queue_messages', ['status'])
    op.create_index('ix_queue_messages_finished_at', 'queue_messages', ['finished_at'])

    # Create schedule table
    op.create_table(
        'schedule',
        _uuid_pk(),
        sa.Column('source_type', sa.String(50), nullable=False, unique=True),
        sa.Column('cadence', sa.Interval, nullable=False),
        sa.Column('enabled', sa.Boolean, nullable=False, server_default='true'),
        sa.Column('last_run_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )

    # Create scraped_records table
    op.create_table(
        'scraped_records',
        _uuid_pk(),
        sa.Column('source_type', sa.String(50), nullable=False),
        sa.Column('source_license_id', sa.String(100), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('locality', sa.String(20), nullable=False),
        sa.Column('jurisdiction', sa.String(2), nullable=False),
        sa.Column('profession', sa.String(50), nullable=False),
        sa.Column('license_status', sa.String(50), nullable=True),
        sa.Column('company', sa.String(255), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('raw_data', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('scraped_at', sa.DateTime(timezone=True), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint('source_type', 'source_license_id', name='uq_scraped_records_source_license'),
    )
    op.create_index('ix_scraped_records_source_type', 'scraped_records', ['source_type'])
    op.create_index('ix_scraped_records_locality', 'scraped_records', ['locality'])
    op.create_index('ix_scraped_records_jurisdiction', 'scraped_records', ['jurisdiction'])

    # Create scrape_queue table
    op.create_table(
        'scrape_queue',
        _uuid_pk(),
        sa.Column('queue_name', sa.String(100), nullable=False),
        sa.Column('body', postgresql.JSONB, nullable=False),
        sa.Column('enqueued_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('visible_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('deliveries', sa.Integer, nullable=False, server_default='0'),
        sa.Column('lease_token', postgresql.UUID(as_uuid=True), nullable=True),
    )
    op.create_index('ix_scrape_queue_queue_name', 'scrape_queue', ['queue_name'])
    op.create_index('ix_scrape_queue_visible_at', 'scrape_queue', ['visible_at'])

    # Create dead_letter_queue table
    op.create_table(
        'dead_letter_queue',
        _uuid_pk(),
        sa.Column('message_id', postgresql.UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('queue_name', sa.String(100), nullable=False),
        sa.Column('body', postgresql.JSONB, nullable=False),
        sa.Column('work_item_key', sa.String(200), nullable=True),
        sa.Column('source_type', sa.String(50), nullable=True),
        sa.Column('error_message', sa.Text, nullable=True),
        sa.Column('diagnostics', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('deliveries', sa.Integer, nullable=False),
        sa.Column('failed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved', sa.Boolean, nullable=False, server_default='false'),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('resolved_by', sa.String(100), nullable=True),
        sa.Column('resolution_notes', sa.Text, nullable=True),
    )
    op.create_index('ix_dead_letter_queue_work_item_key', 'dead_letter_queue', ['work_item_key'])
    op.create_index('ix_dead_letter_queue_source_type', 'dead_letter_queue', ['source_type'])
    op.create_index('ix_dead_letter_queue_resolved', 'dead_letter_queue', ['resolved'])

    # Create worker_health table
    op.create_table(
        'worker_health',
        _uuid_pk(),
        sa.Column('worker_id', sa.String(100), nullable=False, unique=True),
        sa.Column('worker_type', sa.String(50), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='healthy'),
        sa.Column('last_heartbeat', sa.DateTime(timezone=True), nullable=False),
        sa.Column('items_processed', sa.Integer, nullable=False, server_default='0'),
        sa.Column('errors_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('context', postgresql.JSONB, nullable=False, server_default='{}'),
    )
    op.create_index('ix_worker_health_worker_type', 'worker_health', ['worker_type'])

    # Create coordinator_alerts table
    op.create_table(
        'coordinator_alerts',
        _uuid_pk(),
        sa.Column('alert_type', sa.String(50), nullable=False),
        sa.Column('severity', postgresql.ENUM(*ALERT_SEVERITIES, name='alertseverity', create_type=False),
                  nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('context', postgresql.JSONB, nullable=False, server_default='{}'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('now()')),
    )
    op.create_index('ix_coordinator_alerts_alert_type', 'coordinator_alerts', ['alert_type'])


def downgrade() -> None:
    op.drop_table('coordinator_alerts')
    op.drop_table('worker_health')
    op.drop_table('dead_letter_queue')
    op.drop_table('scrape_queue')
    op.drop_table('scraped_records')
    op.drop_table('schedule')
    op.drop_table('queue_messages')
    op.drop_table('rate_limits')
    op.drop_table('work_items')

    op.execute("DROP TYPE IF EXISTS alertseverity")
    op.execute("DROP TYPE IF EXISTS attemptstatus")
    op.execute("DROP TYPE IF EXISTS workitemstatus")
