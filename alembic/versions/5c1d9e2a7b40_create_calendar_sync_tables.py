"""create_calendar_sync_tables

Revision ID: 5c1d9e2a7b40
Revises:
Create Date: 2026-10-18 09:12:41.503112

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '5c1d9e2a7b40'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Provider credential bindings
    op.create_table('calendar_integrations',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.Uuid(), nullable=False),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('provider', sa.String(length=32), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('access_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.LargeBinary(), nullable=True),
        sa.Column('token_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('provider_account_email', sa.String(length=320), nullable=True),
        sa.Column('provider_account_id', sa.String(length=512), nullable=True),
        sa.Column('provider_config', sa.JSON(), nullable=False),
        sa.Column('webhook_subscription_id', sa.String(length=512), nullable=True),
        sa.Column('webhook_expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_cursor', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_status', sa.String(length=16), nullable=True),
        sa.Column('needs_reauth', sa.Boolean(), nullable=False),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('disconnected_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_calendar_integrations_company_id'), 'calendar_integrations', ['company_id'], unique=False)
    op.create_index(op.f('ix_calendar_integrations_provider_account_email'), 'calendar_integrations', ['provider_account_email'], unique=False)
    op.create_index(op.f('ix_calendar_integrations_provider_account_id'), 'calendar_integrations', ['provider_account_id'], unique=False)
    op.create_index(op.f('ix_calendar_integrations_webhook_subscription_id'), 'calendar_integrations', ['webhook_subscription_id'], unique=False)
    # At most one active integration per (company, user, provider)
    op.create_index(
        'uq_calendar_integrations_active',
        'calendar_integrations',
        ['company_id', 'user_id', 'provider'],
        unique=True,
        postgresql_where=sa.text('is_active'),
        sqlite_where=sa.text('is_active = 1'),
    )

    # Canonical events
    op.create_table('calendar_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.Uuid(), nullable=False),
        sa.Column('integration_id', sa.Uuid(), nullable=True),
        sa.Column('external_id', sa.String(length=1024), nullable=True),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('location', sa.String(length=1000), nullable=True),
        sa.Column('start_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_time', sa.DateTime(timezone=True), nullable=False),
        sa.Column('all_day', sa.Boolean(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=True),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('status', sa.String(length=32), nullable=False),
        sa.Column('source', sa.String(length=32), nullable=False),
        sa.Column('contact_id', sa.Uuid(), nullable=True),
        sa.Column('attendees', sa.JSON(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('etag', sa.String(length=255), nullable=True),
        sa.Column('provider_updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('sync_status', sa.String(length=16), nullable=True),
        sa.Column('sync_error', sa.Text(), nullable=True),
        sa.Column('original_start_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('original_end_time', sa.DateTime(timezone=True), nullable=True),
        sa.Column('rescheduled_count', sa.Integer(), nullable=False),
        sa.Column('rescheduled_reason', sa.Text(), nullable=True),
        sa.Column('reschedule_history', sa.JSON(), nullable=False),
        sa.Column('parent_event_id', sa.Uuid(), nullable=True),
        sa.Column('needs_manual_reschedule', sa.Boolean(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint('start_time < end_time', name='ck_calendar_events_time_order'),
        sa.ForeignKeyConstraint(['integration_id'], ['calendar_integrations.id'], ),
        sa.ForeignKeyConstraint(['parent_event_id'], ['calendar_events.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('integration_id', 'external_id', name='uq_calendar_events_integration_external')
    )
    op.create_index(op.f('ix_calendar_events_company_id'), 'calendar_events', ['company_id'], unique=False)
    op.create_index(op.f('ix_calendar_events_integration_id'), 'calendar_events', ['integration_id'], unique=False)
    op.create_index(op.f('ix_calendar_events_start_time'), 'calendar_events', ['start_time'], unique=False)
    op.create_index(op.f('ix_calendar_events_end_time'), 'calendar_events', ['end_time'], unique=False)
    op.create_index(op.f('ix_calendar_events_contact_id'), 'calendar_events', ['contact_id'], unique=False)

    # Working hours
    op.create_table('company_schedules',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.Uuid(), nullable=False),
        sa.Column('timezone', sa.String(length=64), nullable=False),
        sa.Column('working_hours_start', sa.String(length=5), nullable=False),
        sa.Column('working_hours_end', sa.String(length=5), nullable=False),
        sa.Column('working_days', sa.JSON(), nullable=False),
        sa.Column('exclude_holidays', sa.Boolean(), nullable=False),
        sa.Column('default_slot_minutes', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('company_id')
    )

    # Sync run audit
    op.create_table('calendar_sync_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('integration_id', sa.Uuid(), nullable=False),
        sa.Column('company_id', sa.Uuid(), nullable=False),
        sa.Column('sync_type', sa.String(length=16), nullable=False),
        sa.Column('direction', sa.String(length=16), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False),
        sa.Column('events_created', sa.Integer(), nullable=False),
        sa.Column('events_updated', sa.Integer(), nullable=False),
        sa.Column('events_deleted', sa.Integer(), nullable=False),
        sa.Column('errors', sa.JSON(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['integration_id'], ['calendar_integrations.id'], ),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_calendar_sync_logs_integration_id'), 'calendar_sync_logs', ['integration_id'], unique=False)
    op.create_index(op.f('ix_calendar_sync_logs_company_id'), 'calendar_sync_logs', ['company_id'], unique=False)


def downgrade() -> None:
    op.drop_index(op.f('ix_calendar_sync_logs_company_id'), table_name='calendar_sync_logs')
    op.drop_index(op.f('ix_calendar_sync_logs_integration_id'), table_name='calendar_sync_logs')
    op.drop_table('calendar_sync_logs')
    op.drop_table('company_schedules')
    op.drop_index(op.f('ix_calendar_events_contact_id'), table_name='calendar_events')
    op.drop_index(op.f('ix_calendar_events_end_time'), table_name='calendar_events')
    op.drop_index(op.f('ix_calendar_events_start_time'), table_name='calendar_events')
    op.drop_index(op.f('ix_calendar_events_integration_id'), table_name='calendar_events')
    op.drop_index(op.f('ix_calendar_events_company_id'), table_name='calendar_events')
    op.drop_table('calendar_events')
    op.drop_index('uq_calendar_integrations_active', table_name='calendar_integrations')
    op.drop_index(op.f('ix_calendar_integrations_webhook_subscription_id'), table_name='calendar_integrations')
    op.drop_index(op.f('ix_calendar_integrations_provider_account_id'), table_name='calendar_integrations')
    op.drop_index(op.f('ix_calendar_integrations_provider_account_email'), table_name='calendar_integrations')
    op.drop_index(op.f('ix_calendar_integrations_company_id'), table_name='calendar_integrations')
    op.drop_table('calendar_integrations')
