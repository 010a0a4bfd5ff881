from datetime import date, datetime
from enum import Enum
import json

from sqlalchemy import Boolean, Date, DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from attendance_engine.core.time_provider import default_time_provider
from attendance_engine.db import Base


def _local_now() -> datetime:
    return default_time_provider.local_now()


class AttendanceStatus(str, Enum):
    NOT_STARTED = 'not_started'
    PRESENT = 'present'
    ABSENT = 'absent'
    LEAVE_PENDING = 'leave_pending'
    LEAVE = 'leave'
    LEAVE_REJECTED = 'leave_rejected'
    TRUANT = 'truant'


class CheckinSource(str, Enum):
    WINDOW = 'window'
    SELF = 'self'
    MAKEUP = 'makeup'


class LeaveType(str, Enum):
    SICK = 'sick'
    PERSONAL = 'personal'
    EMERGENCY = 'emergency'
    OTHER = 'other'


class ApprovalDecision(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'
    CANCELLED = 'cancelled'


class CheckinJobStatus(str, Enum):
    QUEUED = 'queued'
    PROCESSING = 'processing'
    SUCCEEDED = 'succeeded'
    REJECTED = 'rejected'
    FAILED = 'failed'


class Term(Base):
    __tablename__ = 'terms'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    code: Mapped[str] = mapped_column(String(40), unique=True, index=True)
    label: Mapped[str] = mapped_column(String(120), default='')
    start_date: Mapped[date] = mapped_column(Date)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=False, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    periods: Mapped[list['CoursePeriod']] = relationship(
        'CoursePeriod',
        back_populates='term',
        cascade='all, delete-orphan',
        order_by='CoursePeriod.period_no',
    )


class CoursePeriod(Base):
    __tablename__ = 'course_periods'
    __table_args__ = (
        UniqueConstraint('term_id', 'period_no', name='uq_course_periods_term_period'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    term_id: Mapped[int] = mapped_column(ForeignKey('terms.id'), index=True)
    period_no: Mapped[int] = mapped_column(Integer)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)

    term: Mapped['Term'] = relationship('Term', back_populates='periods')
    rules: Mapped[list['CoursePeriodRule']] = relationship(
        'CoursePeriodRule',
        back_populates='period',
        cascade='all, delete-orphan',
        order_by='CoursePeriodRule.priority',
    )


class CoursePeriodRule(Base):
    __tablename__ = 'course_period_rules'
    __table_args__ = (
        Index('ix_course_period_rules_period_priority', 'period_id', 'priority'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    period_id: Mapped[int] = mapped_column(ForeignKey('course_periods.id'), index=True)
    name: Mapped[str] = mapped_column(String(120), default='')
    priority: Mapped[int] = mapped_column(Integer, default=100)
    start_time: Mapped[str] = mapped_column(String(5))
    end_time: Mapped[str] = mapped_column(String(5))
    enabled: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    effective_start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    effective_end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    period: Mapped['CoursePeriod'] = relationship('CoursePeriod', back_populates='rules')
    conditions: Mapped[list['CoursePeriodRuleCondition']] = relationship(
        'CoursePeriodRuleCondition',
        back_populates='rule',
        cascade='all, delete-orphan',
        order_by='CoursePeriodRuleCondition.id',
    )


class CoursePeriodRuleCondition(Base):
    __tablename__ = 'course_period_rule_conditions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    rule_id: Mapped[int] = mapped_column(ForeignKey('course_period_rules.id'), index=True)
    field: Mapped[str] = mapped_column(String(40))
    operator: Mapped[str] = mapped_column(String(16))
    value_json: Mapped[str] = mapped_column(Text, default='null')

    rule: Mapped['CoursePeriodRule'] = relationship('CoursePeriodRule', back_populates='conditions')

    @property
    def value(self):
        return json.loads(self.value_json or 'null')


class CourseSession(Base):
    __tablename__ = 'course_sessions'
    __table_args__ = (
        UniqueConstraint('course_code', 'term_id', 'teaching_week', 'weekday', name='uq_course_sessions_slot'),
        Index('ix_course_sessions_term_week_weekday', 'term_id', 'teaching_week', 'weekday'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    external_id: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    course_code: Mapped[str] = mapped_column(String(60), index=True)
    course_name: Mapped[str] = mapped_column(String(200), default='')
    term_id: Mapped[int] = mapped_column(ForeignKey('terms.id'), index=True)
    teaching_week: Mapped[int] = mapped_column(Integer)
    weekday: Mapped[int] = mapped_column(Integer)
    periods_json: Mapped[str] = mapped_column(Text, default='[]')
    location: Mapped[str] = mapped_column(String(200), default='')
    teaching_unit: Mapped[str] = mapped_column(String(120), default='')
    class_name: Mapped[str] = mapped_column(String(200), default='')
    major_name: Mapped[str] = mapped_column(String(200), default='')
    start_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True, index=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    matched_rule_ids: Mapped[str] = mapped_column(String(200), default='')
    attendance_enabled: Mapped[bool] = mapped_column(Boolean, default=True)
    allow_self_checkin: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    teachers: Mapped[list['CourseSessionTeacher']] = relationship(
        'CourseSessionTeacher',
        back_populates='session',
        cascade='all, delete-orphan',
        order_by='CourseSessionTeacher.id',
    )

    @property
    def period_numbers(self) -> list[int]:
        return [int(item) for item in json.loads(self.periods_json or '[]')]

    @period_numbers.setter
    def period_numbers(self, values: list[int]) -> None:
        self.periods_json = json.dumps([int(item) for item in values])

    @property
    def teacher_ids(self) -> list[str]:
        return [row.teacher_id for row in self.teachers]


class CourseSessionTeacher(Base):
    __tablename__ = 'course_session_teachers'
    __table_args__ = (
        UniqueConstraint('session_id', 'teacher_id', name='uq_course_session_teachers_session_teacher'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('course_sessions.id'), index=True)
    teacher_id: Mapped[str] = mapped_column(String(64), index=True)
    teacher_name: Mapped[str] = mapped_column(String(120), default='')

    session: Mapped['CourseSession'] = relationship('CourseSession', back_populates='teachers')


class CourseEnrollment(Base):
    __tablename__ = 'course_enrollments'
    __table_args__ = (
        UniqueConstraint('course_code', 'term_id', 'student_id', name='uq_course_enrollments_course_term_student'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    course_code: Mapped[str] = mapped_column(String(60), index=True)
    term_id: Mapped[int] = mapped_column(ForeignKey('terms.id'), index=True)
    student_id: Mapped[str] = mapped_column(String(64), index=True)
    student_name: Mapped[str] = mapped_column(String(120), default='')
    class_name: Mapped[str] = mapped_column(String(200), default='')
    major_name: Mapped[str] = mapped_column(String(200), default='')
    active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class VerificationWindow(Base):
    __tablename__ = 'verification_windows'
    __table_args__ = (
        UniqueConstraint('session_id', 'round', name='uq_verification_windows_session_round'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    window_key: Mapped[str] = mapped_column(String(120), unique=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('course_sessions.id'), index=True)
    round: Mapped[int] = mapped_column(Integer)
    opened_at: Mapped[datetime] = mapped_column(DateTime)
    valid_until: Mapped[datetime] = mapped_column(DateTime)
    duration_minutes: Mapped[int] = mapped_column(Integer, default=2)
    opened_by: Mapped[str] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)


class AttendanceRecord(Base):
    __tablename__ = 'attendance_records'
    __table_args__ = (
        UniqueConstraint('session_id', 'student_id', name='uq_attendance_records_session_student'),
        Index('ix_attendance_records_session_status', 'session_id', 'status'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('course_sessions.id'), index=True)
    student_id: Mapped[str] = mapped_column(String(64), index=True)
    student_name: Mapped[str] = mapped_column(String(120), default='')
    class_name: Mapped[str] = mapped_column(String(200), default='')
    major_name: Mapped[str] = mapped_column(String(200), default='')
    status: Mapped[str] = mapped_column(String(20), default=AttendanceStatus.NOT_STARTED.value, index=True)
    checkin_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    is_late: Mapped[bool] = mapped_column(Boolean, default=False)
    verification_round: Mapped[int | None] = mapped_column(Integer, nullable=True)
    window_id: Mapped[int | None] = mapped_column(ForeignKey('verification_windows.id'), nullable=True)
    checkin_source: Mapped[str | None] = mapped_column(String(20), nullable=True)
    location: Mapped[str] = mapped_column(String(255), default='')
    latitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    longitude: Mapped[float | None] = mapped_column(Float, nullable=True)
    accuracy: Mapped[float | None] = mapped_column(Float, nullable=True)
    remark: Mapped[str] = mapped_column(Text, default='')
    session_start_snapshot: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    manual_override_by: Mapped[str | None] = mapped_column(String(64), nullable=True)
    manual_override_time: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    manual_override_reason: Mapped[str | None] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    leave_application: Mapped['LeaveApplication | None'] = relationship(
        'LeaveApplication',
        back_populates='record',
        uselist=False,
    )


class LeaveApplication(Base):
    __tablename__ = 'leave_applications'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    record_id: Mapped[int] = mapped_column(ForeignKey('attendance_records.id'), unique=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('course_sessions.id'), index=True)
    student_id: Mapped[str] = mapped_column(String(64), index=True)
    leave_type: Mapped[str] = mapped_column(String(20))
    reason: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(20), default=AttendanceStatus.LEAVE_PENDING.value, index=True)
    submitted_at: Mapped[datetime] = mapped_column(DateTime)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    record: Mapped['AttendanceRecord'] = relationship('AttendanceRecord', back_populates='leave_application')
    attachments: Mapped[list['LeaveAttachment']] = relationship(
        'LeaveAttachment',
        back_populates='application',
        cascade='all, delete-orphan',
        order_by='LeaveAttachment.id',
    )
    approvals: Mapped[list['LeaveApproval']] = relationship(
        'LeaveApproval',
        back_populates='application',
        cascade='all, delete-orphan',
        order_by='LeaveApproval.id',
    )


class LeaveAttachment(Base):
    __tablename__ = 'leave_attachments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    application_id: Mapped[int] = mapped_column(ForeignKey('leave_applications.id'), index=True)
    storage_ref: Mapped[str] = mapped_column(String(255))
    file_name: Mapped[str] = mapped_column(String(255), default='')
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)

    application: Mapped['LeaveApplication'] = relationship('LeaveApplication', back_populates='attachments')


class LeaveApproval(Base):
    __tablename__ = 'leave_approvals'
    __table_args__ = (
        UniqueConstraint('application_id', 'approver_id', name='uq_leave_approvals_application_approver'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    application_id: Mapped[int] = mapped_column(ForeignKey('leave_applications.id'), index=True)
    approver_id: Mapped[str] = mapped_column(String(64), index=True)
    approver_name: Mapped[str] = mapped_column(String(120), default='')
    decision: Mapped[str] = mapped_column(String(20), default=ApprovalDecision.PENDING.value, index=True)
    comment: Mapped[str] = mapped_column(Text, default='')
    decided_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)

    application: Mapped['LeaveApplication'] = relationship('LeaveApplication', back_populates='approvals')


class CheckinJob(Base):
    __tablename__ = 'checkin_jobs'
    __table_args__ = (
        Index('ix_checkin_jobs_status_next_attempt', 'status', 'next_attempt_at'),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    idempotency_key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    session_id: Mapped[int] = mapped_column(ForeignKey('course_sessions.id'), index=True)
    student_id: Mapped[str] = mapped_column(String(64), index=True)
    student_name: Mapped[str] = mapped_column(String(120), default='')
    class_name: Mapped[str] = mapped_column(String(200), default='')
    major_name: Mapped[str] = mapped_column(String(200), default='')
    payload_json: Mapped[str] = mapped_column(Text, default='{}')
    submitted_at: Mapped[datetime] = mapped_column(DateTime)
    status: Mapped[str] = mapped_column(String(20), default=CheckinJobStatus.QUEUED.value, index=True)
    reason: Mapped[str | None] = mapped_column(String(60), nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_attempt_at: Mapped[datetime] = mapped_column(DateTime)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    claimed_by: Mapped[str | None] = mapped_column(String(80), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    record_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_local_now, onupdate=_local_now)

    @property
    def payload(self) -> dict:
        return json.loads(self.payload_json or '{}')
