"""initial academy core tables

Revision ID: 20261018_0001
Revises: 
Create Date: 2026-10-18 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261018_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=True, unique=True),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='student'),
        sa.Column('timezone', sa.String(length=60), nullable=False, server_default='UTC'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_users_id', 'users', ['id'])
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('ix_users_active', 'users', ['active'])

    op.create_table(
        'classes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('title', sa.String(length=160), nullable=False),
        sa.Column('subject', sa.String(length=120), nullable=False, server_default='General'),
        sa.Column('timezone', sa.String(length=60), nullable=False, server_default='UTC'),
        sa.Column('class_link', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_classes_id', 'classes', ['id'])
    op.create_index('ix_classes_subject', 'classes', ['subject'])

    op.create_table(
        'class_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('class_id', sa.Integer(), sa.ForeignKey('classes.id'), nullable=False),
        sa.Column('start_at', sa.DateTime(), nullable=False),
        sa.Column('end_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='scheduled'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('actual_start', sa.DateTime(), nullable=True),
        sa.Column('actual_end', sa.DateTime(), nullable=True),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('cancelled_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('end_at > start_at', name='ck_class_sessions_end_after_start'),
    )
    op.create_index('ix_class_sessions_id', 'class_sessions', ['id'])
    op.create_index('ix_class_sessions_class_id', 'class_sessions', ['class_id'])
    op.create_index('ix_class_sessions_start_at', 'class_sessions', ['start_at'])
    op.create_index('ix_class_sessions_end_at', 'class_sessions', ['end_at'])
    op.create_index('ix_class_sessions_status', 'class_sessions', ['status'])
    op.create_index('ix_class_sessions_class_start', 'class_sessions', ['class_id', 'start_at'])
    op.create_index('ix_class_sessions_status_start', 'class_sessions', ['status', 'start_at'])

    op.create_table(
        'attendance_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('class_sessions.id'), nullable=False),
        sa.Column('participant_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('participant_role', sa.String(length=20), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('attendance_status', sa.String(length=20), nullable=False, server_default='scheduled'),
        sa.Column('marked_at', sa.DateTime(), nullable=True),
        sa.Column('marked_by', sa.Integer(), nullable=True),
        sa.UniqueConstraint('session_id', 'participant_id', name='uq_attendance_records_session_participant'),
    )
    op.create_index('ix_attendance_records_id', 'attendance_records', ['id'])
    op.create_index('ix_attendance_records_session_id', 'attendance_records', ['session_id'])
    op.create_index('ix_attendance_records_participant_id', 'attendance_records', ['participant_id'])
    op.create_index('ix_attendance_records_participant_role', 'attendance_records', ['participant_role'])
    op.create_index('ix_attendance_records_participant_status', 'attendance_records', ['participant_id', 'attendance_status'])

    op.create_table(
        'session_history',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('class_sessions.id'), nullable=False),
        sa.Column('action', sa.String(length=30), nullable=False),
        sa.Column('from_status', sa.String(length=20), nullable=False),
        sa.Column('to_status', sa.String(length=20), nullable=False),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_session_history_id', 'session_history', ['id'])
    op.create_index('ix_session_history_session_id', 'session_history', ['session_id'])
    op.create_index('ix_session_history_created_at', 'session_history', ['created_at'])

    for table_name in ('teacher_unavailability', 'teacher_availability_slots'):
        columns = [
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('teacher_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
            sa.Column('weekday', sa.Integer(), nullable=False),
            sa.Column('start_time', sa.Time(), nullable=False),
            sa.Column('end_time', sa.Time(), nullable=False),
        ]
        if table_name == 'teacher_unavailability':
            columns.append(sa.Column('reason', sa.String(length=255), nullable=False, server_default=''))
        columns.append(sa.Column('created_at', sa.DateTime(), nullable=False))
        op.create_table(table_name, *columns)
        op.create_index(f'ix_{table_name}_id', table_name, ['id'])
        op.create_index(f'ix_{table_name}_teacher_id', table_name, ['teacher_id'])
        op.create_index(f'ix_{table_name}_teacher_weekday', table_name, ['teacher_id', 'weekday'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(length=120), nullable=False),
        sa.Column('hourly_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('hours_per_month', sa.Numeric(6, 2), nullable=False, server_default='0'),
        sa.Column('max_free_absences', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('cadence', sa.String(length=20), nullable=False, server_default='month'),
        sa.Column('cadence_multiplier', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_subscription_plans_id', 'subscription_plans', ['id'])

    op.create_table(
        'student_subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('plan_id', sa.Integer(), sa.ForeignKey('subscription_plans.id'), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('current_period_start', sa.Date(), nullable=False),
        sa.Column('next_payment_date', sa.Date(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('deactivated_on', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_student_subscriptions_id', 'student_subscriptions', ['id'])
    op.create_index('ix_student_subscriptions_student_id', 'student_subscriptions', ['student_id'])
    op.create_index('ix_student_subscriptions_plan_id', 'student_subscriptions', ['plan_id'])
    op.create_index('ix_student_subscriptions_status_next_payment', 'student_subscriptions', ['status', 'next_payment_date'])
    op.create_index(
        'uq_student_subscriptions_one_active',
        'student_subscriptions',
        ['student_id'],
        unique=True,
        sqlite_where=sa.text("status = 'active'"),
        postgresql_where=sa.text("status = 'active'"),
    )

    op.create_table(
        'reschedule_requests',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('class_sessions.id'), nullable=False),
        sa.Column('requested_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('proposed_start', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('resolution_note', sa.Text(), nullable=False, server_default=''),
        sa.Column('processed_by', sa.Integer(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_reschedule_requests_id', 'reschedule_requests', ['id'])
    op.create_index('ix_reschedule_requests_session_id', 'reschedule_requests', ['session_id'])
    op.create_index('ix_reschedule_requests_requested_by', 'reschedule_requests', ['requested_by'])
    op.create_index('ix_reschedule_requests_status', 'reschedule_requests', ['status'])
    op.create_index('ix_reschedule_requests_created_at', 'reschedule_requests', ['created_at'])

    op.create_table(
        'invoice_sequences',
        sa.Column('name', sa.String(length=40), primary_key=True),
        sa.Column('last_value', sa.Integer(), nullable=False, server_default='0'),
    )
    op.bulk_insert(
        sa.table('invoice_sequences', sa.column('name', sa.String), sa.column('last_value', sa.Integer)),
        [{'name': 'invoice', 'last_value': 0}],
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('invoice_number', sa.String(length=40), nullable=False),
        sa.Column('student_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('subscription_id', sa.Integer(), sa.ForeignKey('student_subscriptions.id'), nullable=False),
        sa.Column('period_start', sa.Date(), nullable=False),
        sa.Column('period_end', sa.Date(), nullable=False),
        sa.Column('months', sa.String(length=40), nullable=False, server_default=''),
        sa.Column('sessions_scheduled', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sessions_attended', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('absences', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('free_absences_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_hours_scheduled', sa.Numeric(10, 4), nullable=False, server_default='0'),
        sa.Column('total_hours_attended', sa.Numeric(10, 4), nullable=False, server_default='0'),
        sa.Column('billable_hours', sa.Numeric(10, 4), nullable=False, server_default='0'),
        sa.Column('hourly_rate', sa.Numeric(10, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('issued_at', sa.DateTime(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=False),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.UniqueConstraint('invoice_number', name='uq_invoices_invoice_number'),
    )
    op.create_index('ix_invoices_id', 'invoices', ['id'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'])
    op.create_index('ix_invoices_student_id', 'invoices', ['student_id'])
    op.create_index('ix_invoices_subscription_id', 'invoices', ['subscription_id'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_due_date', 'invoices', ['due_date'])
    op.create_index('ix_invoices_student_period', 'invoices', ['student_id', 'period_start'])
    op.create_index(
        'uq_invoices_subscription_open_period',
        'invoices',
        ['subscription_id', 'period_start', 'period_end'],
        unique=True,
        sqlite_where=sa.text("status != 'cancelled'"),
        postgresql_where=sa.text("status != 'cancelled'"),
    )


def downgrade() -> None:
    for table_name in (
        'invoices',
        'invoice_sequences',
        'reschedule_requests',
        'student_subscriptions',
        'subscription_plans',
        'teacher_availability_slots',
        'teacher_unavailability',
        'session_history',
        'attendance_records',
        'class_sessions',
        'classes',
        'users',
    ):
        op.drop_table(table_name)
