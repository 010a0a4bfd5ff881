"""initial attendance schema

Revision ID: 20261019_0001
Revises: 
Create Date: 2026-10-19 00:01:00
"""

from alembic import op
import sqlalchemy as sa


revision = '20261019_0001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'terms',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('code', sa.String(length=40), nullable=False),
        sa.Column('label', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('start_date', sa.Date(), nullable=False),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_terms_id', 'terms', ['id'])
    op.create_index('ix_terms_code', 'terms', ['code'], unique=True)
    op.create_index('ix_terms_is_active', 'terms', ['is_active'])

    op.create_table(
        'course_periods',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('term_id', sa.Integer(), sa.ForeignKey('terms.id'), nullable=False),
        sa.Column('period_no', sa.Integer(), nullable=False),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('term_id', 'period_no', name='uq_course_periods_term_period'),
    )
    op.create_index('ix_course_periods_id', 'course_periods', ['id'])
    op.create_index('ix_course_periods_term_id', 'course_periods', ['term_id'])

    op.create_table(
        'course_period_rules',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('period_id', sa.Integer(), sa.ForeignKey('course_periods.id'), nullable=False),
        sa.Column('name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('start_time', sa.String(length=5), nullable=False),
        sa.Column('end_time', sa.String(length=5), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('effective_start_date', sa.Date(), nullable=True),
        sa.Column('effective_end_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_course_period_rules_id', 'course_period_rules', ['id'])
    op.create_index('ix_course_period_rules_period_id', 'course_period_rules', ['period_id'])
    op.create_index('ix_course_period_rules_enabled', 'course_period_rules', ['enabled'])
    op.create_index('ix_course_period_rules_period_priority', 'course_period_rules', ['period_id', 'priority'])

    op.create_table(
        'course_period_rule_conditions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('rule_id', sa.Integer(), sa.ForeignKey('course_period_rules.id'), nullable=False),
        sa.Column('field', sa.String(length=40), nullable=False),
        sa.Column('operator', sa.String(length=16), nullable=False),
        sa.Column('value_json', sa.Text(), nullable=False, server_default='null'),
    )
    op.create_index('ix_course_period_rule_conditions_id', 'course_period_rule_conditions', ['id'])
    op.create_index('ix_course_period_rule_conditions_rule_id', 'course_period_rule_conditions', ['rule_id'])

    op.create_table(
        'course_sessions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_id', sa.String(length=120), nullable=False),
        sa.Column('course_code', sa.String(length=60), nullable=False),
        sa.Column('course_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('term_id', sa.Integer(), sa.ForeignKey('terms.id'), nullable=False),
        sa.Column('teaching_week', sa.Integer(), nullable=False),
        sa.Column('weekday', sa.Integer(), nullable=False),
        sa.Column('periods_json', sa.Text(), nullable=False, server_default='[]'),
        sa.Column('location', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('teaching_unit', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('class_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('major_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('start_time', sa.DateTime(), nullable=True),
        sa.Column('end_time', sa.DateTime(), nullable=True),
        sa.Column('matched_rule_ids', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('attendance_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('allow_self_checkin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('course_code', 'term_id', 'teaching_week', 'weekday', name='uq_course_sessions_slot'),
    )
    op.create_index('ix_course_sessions_id', 'course_sessions', ['id'])
    op.create_index('ix_course_sessions_external_id', 'course_sessions', ['external_id'], unique=True)
    op.create_index('ix_course_sessions_course_code', 'course_sessions', ['course_code'])
    op.create_index('ix_course_sessions_term_id', 'course_sessions', ['term_id'])
    op.create_index('ix_course_sessions_start_time', 'course_sessions', ['start_time'])
    op.create_index('ix_course_sessions_term_week_weekday', 'course_sessions', ['term_id', 'teaching_week', 'weekday'])

    op.create_table(
        'course_session_teachers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('course_sessions.id'), nullable=False),
        sa.Column('teacher_id', sa.String(length=64), nullable=False),
        sa.Column('teacher_name', sa.String(length=120), nullable=False, server_default=''),
        sa.UniqueConstraint('session_id', 'teacher_id', name='uq_course_session_teachers_session_teacher'),
    )
    op.create_index('ix_course_session_teachers_id', 'course_session_teachers', ['id'])
    op.create_index('ix_course_session_teachers_session_id', 'course_session_teachers', ['session_id'])
    op.create_index('ix_course_session_teachers_teacher_id', 'course_session_teachers', ['teacher_id'])

    op.create_table(
        'course_enrollments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('course_code', sa.String(length=60), nullable=False),
        sa.Column('term_id', sa.Integer(), sa.ForeignKey('terms.id'), nullable=False),
        sa.Column('student_id', sa.String(length=64), nullable=False),
        sa.Column('student_name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('class_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('major_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('course_code', 'term_id', 'student_id', name='uq_course_enrollments_course_term_student'),
    )
    op.create_index('ix_course_enrollments_id', 'course_enrollments', ['id'])
    op.create_index('ix_course_enrollments_course_code', 'course_enrollments', ['course_code'])
    op.create_index('ix_course_enrollments_term_id', 'course_enrollments', ['term_id'])
    op.create_index('ix_course_enrollments_student_id', 'course_enrollments', ['student_id'])
    op.create_index('ix_course_enrollments_active', 'course_enrollments', ['active'])

    op.create_table(
        'verification_windows',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('window_key', sa.String(length=120), nullable=False),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('course_sessions.id'), nullable=False),
        sa.Column('round', sa.Integer(), nullable=False),
        sa.Column('opened_at', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=False),
        sa.Column('duration_minutes', sa.Integer(), nullable=False, server_default='2'),
        sa.Column('opened_by', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('session_id', 'round', name='uq_verification_windows_session_round'),
    )
    op.create_index('ix_verification_windows_id', 'verification_windows', ['id'])
    op.create_index('ix_verification_windows_window_key', 'verification_windows', ['window_key'], unique=True)
    op.create_index('ix_verification_windows_session_id', 'verification_windows', ['session_id'])

    op.create_table(
        'attendance_records',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('course_sessions.id'), nullable=False),
        sa.Column('student_id', sa.String(length=64), nullable=False),
        sa.Column('student_name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('class_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('major_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='not_started'),
        sa.Column('checkin_time', sa.DateTime(), nullable=True),
        sa.Column('is_late', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('verification_round', sa.Integer(), nullable=True),
        sa.Column('window_id', sa.Integer(), sa.ForeignKey('verification_windows.id'), nullable=True),
        sa.Column('checkin_source', sa.String(length=20), nullable=True),
        sa.Column('location', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('latitude', sa.Float(), nullable=True),
        sa.Column('longitude', sa.Float(), nullable=True),
        sa.Column('accuracy', sa.Float(), nullable=True),
        sa.Column('remark', sa.Text(), nullable=False, server_default=''),
        sa.Column('session_start_snapshot', sa.DateTime(), nullable=True),
        sa.Column('manual_override_by', sa.String(length=64), nullable=True),
        sa.Column('manual_override_time', sa.DateTime(), nullable=True),
        sa.Column('manual_override_reason', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('session_id', 'student_id', name='uq_attendance_records_session_student'),
    )
    op.create_index('ix_attendance_records_id', 'attendance_records', ['id'])
    op.create_index('ix_attendance_records_session_id', 'attendance_records', ['session_id'])
    op.create_index('ix_attendance_records_student_id', 'attendance_records', ['student_id'])
    op.create_index('ix_attendance_records_status', 'attendance_records', ['status'])
    op.create_index('ix_attendance_records_session_status', 'attendance_records', ['session_id', 'status'])

    op.create_table(
        'leave_applications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('record_id', sa.Integer(), sa.ForeignKey('attendance_records.id'), nullable=False),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('course_sessions.id'), nullable=False),
        sa.Column('student_id', sa.String(length=64), nullable=False),
        sa.Column('leave_type', sa.String(length=20), nullable=False),
        sa.Column('reason', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='leave_pending'),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('resolved_at', sa.DateTime(), nullable=True),
    )
    op.create_index('ix_leave_applications_id', 'leave_applications', ['id'])
    op.create_index('ix_leave_applications_record_id', 'leave_applications', ['record_id'], unique=True)
    op.create_index('ix_leave_applications_session_id', 'leave_applications', ['session_id'])
    op.create_index('ix_leave_applications_student_id', 'leave_applications', ['student_id'])
    op.create_index('ix_leave_applications_status', 'leave_applications', ['status'])

    op.create_table(
        'leave_attachments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('application_id', sa.Integer(), sa.ForeignKey('leave_applications.id'), nullable=False),
        sa.Column('storage_ref', sa.String(length=255), nullable=False),
        sa.Column('file_name', sa.String(length=255), nullable=False, server_default=''),
        sa.Column('created_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_leave_attachments_id', 'leave_attachments', ['id'])
    op.create_index('ix_leave_attachments_application_id', 'leave_attachments', ['application_id'])

    op.create_table(
        'leave_approvals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('application_id', sa.Integer(), sa.ForeignKey('leave_applications.id'), nullable=False),
        sa.Column('approver_id', sa.String(length=64), nullable=False),
        sa.Column('approver_name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('decision', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('comment', sa.Text(), nullable=False, server_default=''),
        sa.Column('decided_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.UniqueConstraint('application_id', 'approver_id', name='uq_leave_approvals_application_approver'),
    )
    op.create_index('ix_leave_approvals_id', 'leave_approvals', ['id'])
    op.create_index('ix_leave_approvals_application_id', 'leave_approvals', ['application_id'])
    op.create_index('ix_leave_approvals_approver_id', 'leave_approvals', ['approver_id'])
    op.create_index('ix_leave_approvals_decision', 'leave_approvals', ['decision'])

    op.create_table(
        'checkin_jobs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('idempotency_key', sa.String(length=64), nullable=False),
        sa.Column('session_id', sa.Integer(), sa.ForeignKey('course_sessions.id'), nullable=False),
        sa.Column('student_id', sa.String(length=64), nullable=False),
        sa.Column('student_name', sa.String(length=120), nullable=False, server_default=''),
        sa.Column('class_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('major_name', sa.String(length=200), nullable=False, server_default=''),
        sa.Column('payload_json', sa.Text(), nullable=False, server_default='{}'),
        sa.Column('submitted_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='queued'),
        sa.Column('reason', sa.String(length=60), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_by', sa.String(length=80), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('record_id', sa.Integer(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
    )
    op.create_index('ix_checkin_jobs_id', 'checkin_jobs', ['id'])
    op.create_index('ix_checkin_jobs_idempotency_key', 'checkin_jobs', ['idempotency_key'], unique=True)
    op.create_index('ix_checkin_jobs_session_id', 'checkin_jobs', ['session_id'])
    op.create_index('ix_checkin_jobs_student_id', 'checkin_jobs', ['student_id'])
    op.create_index('ix_checkin_jobs_status', 'checkin_jobs', ['status'])
    op.create_index('ix_checkin_jobs_status_next_attempt', 'checkin_jobs', ['status', 'next_attempt_at'])


def downgrade() -> None:
    op.drop_table('checkin_jobs')
    op.drop_table('leave_approvals')
    op.drop_table('leave_attachments')
    op.drop_table('leave_applications')
    op.drop_table('attendance_records')
    op.drop_table('verification_windows')
    op.drop_table('course_enrollments')
    op.drop_table('course_session_teachers')
    op.drop_table('course_sessions')
    op.drop_table('course_period_rule_conditions')
    op.drop_table('course_period_rules')
    op.drop_table('course_periods')
    op.drop_table('terms')
