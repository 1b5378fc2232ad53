"""Initial calendar sync and scheduling schema

Revision ID: 001
Revises: 
Create Date: 2026-10-17 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_initial_schema'
down_revision = None
branch_labels = None
depends_on = None


def _user_fk():
    return sa.ForeignKey('users.id', ondelete='CASCADE')


def upgrade() -> None:
    op.create_table('users',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('timezone', sa.String(length=64), server_default='UTC', nullable=True),
        sa.Column('scheduling_preferences', postgresql.JSONB(astext_type=sa.Text()), server_default='{}', nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email')
    )

    op.create_table('calendars',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('google_calendar_id', sa.String(length=255), nullable=False),
        sa.Column('summary', sa.String(length=255), nullable=True),
        sa.Column('is_primary', sa.Boolean(), server_default='false', nullable=True),
        sa.Column('enabled', sa.Boolean(), server_default='true', nullable=True),
        sa.Column('access_token', sa.Text(), nullable=True),
        sa.Column('refresh_token', sa.Text(), nullable=True),
        sa.Column('token_expiry', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'google_calendar_id', name='uq_calendar_user_google_id')
    )

    op.create_table('watch_subscriptions',
        sa.Column('id', sa.String(length=255), nullable=False),
        sa.Column('resource_id', sa.String(length=255), nullable=True),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('calendar_id', sa.String(length=255), nullable=False),
        sa.Column('channel_token', sa.String(length=512), nullable=False),
        sa.Column('expiration', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('sync_cursors',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('calendar_id', sa.String(length=255), nullable=False),
        sa.Column('sync_token', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('last_full_sync_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'calendar_id', name='uq_sync_cursor_user_calendar')
    )

    op.create_table('calendar_events',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('calendar_id', sa.String(length=255), nullable=False),
        sa.Column('provider_event_id', sa.String(length=1024), nullable=False),
        sa.Column('title', sa.String(length=500), server_default='', nullable=True),
        sa.Column('start_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('end_time', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('all_day', sa.Boolean(), server_default='false', nullable=True),
        sa.Column('status', sa.String(length=20), server_default='confirmed', nullable=True),
        sa.Column('transparent', sa.Boolean(), server_default='false', nullable=True),
        sa.Column('linked_task_id', sa.String(length=64), nullable=True),
        sa.Column('buffer_role', sa.String(length=10), nullable=True),
        sa.Column('priority', sa.String(length=10), nullable=True),
        sa.Column('recurring_event_id', sa.String(length=1024), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'calendar_id', 'provider_event_id', name='uq_calendar_event_provider_id')
    )

    op.create_table('tasks',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('content', sa.Text(), nullable=False),
        sa.Column('task_type', sa.String(length=32), nullable=True),
        sa.Column('priority', sa.String(length=10), server_default='medium', nullable=True),
        sa.Column('time_estimate', sa.Integer(), nullable=True),
        sa.Column('due_date', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('buffer_before', sa.Integer(), nullable=True),
        sa.Column('buffer_after', sa.Integer(), nullable=True),
        sa.Column('scheduled_start', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('scheduled_end', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('calendar_event_id', sa.String(length=1024), nullable=True),
        sa.Column('calendar_id', sa.String(length=255), nullable=True),
        sa.Column('buffer_before_event_id', sa.String(length=1024), nullable=True),
        sa.Column('buffer_after_event_id', sa.String(length=1024), nullable=True),
        sa.Column('sync_status', sa.String(length=32), server_default='pending', nullable=True),
        sa.Column('unscheduled_reason', sa.String(length=64), nullable=True),
        sa.Column('unscheduled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('rescheduled_externally', sa.Boolean(), server_default='false', nullable=True),
        sa.Column('rescheduled_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), server_default=sa.text('NOW()'), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_table('scheduling_rules',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('task_type', sa.String(length=32), nullable=False),
        sa.Column('preferred_start', sa.String(length=5), nullable=True),
        sa.Column('preferred_end', sa.String(length=5), nullable=True),
        sa.Column('default_duration', sa.Integer(), nullable=True),
        sa.Column('buffer_before', sa.Integer(), server_default='0', nullable=True),
        sa.Column('buffer_after', sa.Integer(), server_default='0', nullable=True),
        sa.Column('preferred_days', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=True),
        sa.Column('enabled', sa.Boolean(), server_default='true', nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'task_type', name='uq_scheduling_rule_user_type')
    )

    op.create_table('protected_slots',
        sa.Column('id', postgresql.UUID(as_uuid=False), server_default=sa.text('gen_random_uuid()'), nullable=False),
        sa.Column('user_id', postgresql.UUID(as_uuid=False), _user_fk(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('days', postgresql.JSONB(astext_type=sa.Text()), server_default='[]', nullable=True),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('allow_override_for_urgent', sa.Boolean(), server_default='false', nullable=True),
        sa.Column('enabled', sa.Boolean(), server_default='true', nullable=True),
        sa.PrimaryKeyConstraint('id')
    )

    op.create_index('ix_users_email', 'users', ['email'])
    op.create_index('ix_watch_subscriptions_user_id', 'watch_subscriptions', ['user_id'])
    op.create_index('ix_watch_subscriptions_expiration', 'watch_subscriptions', ['expiration'])
    op.create_index('ix_calendar_events_range', 'calendar_events', ['user_id', 'calendar_id', 'start_time', 'end_time'])
    op.create_index('ix_calendar_events_linked_task_id', 'calendar_events', ['linked_task_id'])
    op.create_index('ix_tasks_user_id', 'tasks', ['user_id'])
    op.create_index('ix_tasks_calendar_event_id', 'tasks', ['calendar_event_id'])
    op.create_index('ix_protected_slots_user_id', 'protected_slots', ['user_id'])


def downgrade() -> None:
    op.drop_index('ix_protected_slots_user_id', table_name='protected_slots')
    op.drop_index('ix_tasks_calendar_event_id', table_name='tasks')
    op.drop_index('ix_tasks_user_id', table_name='tasks')
    op.drop_index('ix_calendar_events_linked_task_id', table_name='calendar_events')
    op.drop_index('ix_calendar_events_range', table_name='calendar_events')
    op.drop_index('ix_watch_subscriptions_expiration', table_name='watch_subscriptions')
    op.drop_index('ix_watch_subscriptions_user_id', table_name='watch_subscriptions')
    op.drop_index('ix_users_email', table_name='users')

    op.drop_table('protected_slots')
    op.drop_table('scheduling_rules')
    op.drop_table('tasks')
    op.drop_table('calendar_events')
    op.drop_table('sync_cursors')
    op.drop_table('watch_subscriptions')
    op.drop_table('calendars')
    op.drop_table('users')
