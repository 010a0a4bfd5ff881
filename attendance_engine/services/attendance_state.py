from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.errors import InvalidOperationError, NotFoundError
from attendance_engine.core.identity import UserIdentity
from attendance_engine.core.results import service_call
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import (
    AttendanceRecord,
    AttendanceStatus,
    CheckinJob,
    CheckinJobStatus,
    CourseSession,
    LeaveApplication,
)
from attendance_engine.services.session_registry import (
    PHASE_FINISHED,
    enrolled_students,
    find_enrollment,
    get_session_row,
    require_session_teacher,
    session_phase,
)
from attendance_engine.services.window_manager import window_open_at


logger = logging.getLogger(__name__)

S = AttendanceStatus

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    S.NOT_STARTED.value: frozenset({S.PRESENT.value, S.LEAVE_PENDING.value, S.ABSENT.value}),
    S.LEAVE_PENDING.value: frozenset({S.LEAVE.value, S.LEAVE_REJECTED.value, S.NOT_STARTED.value}),
    S.ABSENT.value: frozenset({S.PRESENT.value, S.TRUANT.value}),
    S.PRESENT.value: frozenset(),
    S.LEAVE.value: frozenset(),
    S.LEAVE_REJECTED.value: frozenset(),
    S.TRUANT.value: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def assert_transition(current: str, target: str) -> None:
    if not can_transition(current, target):
        raise InvalidOperationError(
            f'attendance status cannot change from {current} to {target}',
            reason='illegal_transition',
            current=current,
            target=target,
        )


def record_to_dict(record: AttendanceRecord) -> dict:
    return {
        'id': record.id,
        'session_id': record.session_id,
        'student_id': record.student_id,
        'student_name': record.student_name,
        'class_name': record.class_name,
        'status': record.status,
        'checkin_time': record.checkin_time.isoformat() if record.checkin_time else None,
        'is_late': bool(record.is_late),
        'verification_round': record.verification_round,
        'window_id': record.window_id,
        'checkin_source': record.checkin_source,
        'location': record.location,
        'session_start_snapshot': record.session_start_snapshot.isoformat() if record.session_start_snapshot else None,
        'manual_override_by': record.manual_override_by,
        'manual_override_reason': record.manual_override_reason,
    }


def find_record(db: Session, session_id: int, student_id: str) -> AttendanceRecord | None:
    return (
        db.query(AttendanceRecord)
        .filter(AttendanceRecord.session_id == session_id, AttendanceRecord.student_id == student_id)
        .first()
    )


def get_record_row(db: Session, record_id: int) -> AttendanceRecord:
    row = db.query(AttendanceRecord).filter(AttendanceRecord.id == record_id).first()
    if not row:
        raise NotFoundError(f'attendance record {record_id} not found', reason='record_not_found', record_id=record_id)
    return row


def get_or_create_record(
    db: Session,
    session: CourseSession,
    student_id: str,
    *,
    student_name: str = '',
    class_name: str = '',
    major_name: str = '',
    status: str = S.NOT_STARTED.value,
) -> tuple[AttendanceRecord, bool]:
    """Upsert through the (session, student) unique key.

    The insert is committed on its own; a concurrent insert that wins the race
    is re-read instead of duplicated.
    """
    record = find_record(db, session.id, student_id)
    if record is not None:
        return record, False
    record = AttendanceRecord(
        session_id=session.id,
        student_id=student_id,
        student_name=student_name,
        class_name=class_name,
        major_name=major_name,
        status=status,
        session_start_snapshot=session.start_time,
    )
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        record = find_record(db, session.id, student_id)
        if record is None:
            raise
        return record, False
    db.refresh(record)
    return record, True


def transition_record(db: Session, record_id: int, expected: str, target: str, **changes) -> None:
    """Conditional status update; the caller commits.

    Zero affected rows means another path changed the record first.
    """
    assert_transition(expected, target)
    values = {'status': target, **changes}
    updated = (
        db.query(AttendanceRecord)
        .filter(AttendanceRecord.id == record_id, AttendanceRecord.status == expected)
        .update(values, synchronize_session=False)
    )
    if updated == 0:
        raise InvalidOperationError(
            f'attendance record {record_id} is no longer {expected}',
            reason='stale_status',
            record_id=record_id,
            expected=expected,
        )


def _students_with_pending_checkins(db: Session, session: CourseSession) -> set[str]:
    rows = (
        db.query(CheckinJob.student_id)
        .filter(
            CheckinJob.session_id == session.id,
            CheckinJob.status.in_((CheckinJobStatus.QUEUED.value, CheckinJobStatus.PROCESSING.value)),
            CheckinJob.submitted_at <= session.end_time,
        )
        .distinct()
        .all()
    )
    return {student_id for (student_id,) in rows}


def _sweep(db: Session, session: CourseSession, time_provider: TimeProvider) -> dict:
    now = time_provider.local_now()
    if session_phase(session, now) != PHASE_FINISHED:
        raise InvalidOperationError(
            f'session {session.id} has not ended yet, absences are swept after it ends',
            reason='session_not_ended',
        )
    if window_open_at(db, session.id, now) is not None:
        raise InvalidOperationError(f'session {session.id} still has an open window', reason='window_open')

    # Check-ins accepted before the end are still owed a verdict from the worker.
    awaiting_worker = _students_with_pending_checkins(db, session)

    created = 0
    for enrollment in enrolled_students(db, session):
        if enrollment.student_id in awaiting_worker:
            continue
        if find_record(db, session.id, enrollment.student_id) is not None:
            continue
        _, was_created = get_or_create_record(
            db,
            session,
            enrollment.student_id,
            student_name=enrollment.student_name,
            class_name=enrollment.class_name,
            major_name=enrollment.major_name,
            status=S.ABSENT.value,
        )
        created += int(was_created)

    candidates = (
        db.query(AttendanceRecord.id, AttendanceRecord.student_id)
        .outerjoin(LeaveApplication, LeaveApplication.record_id == AttendanceRecord.id)
        .filter(
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.status == S.NOT_STARTED.value,
            LeaveApplication.id.is_(None),
        )
        .all()
    )
    marked = 0
    for record_id, student_id in candidates:
        if student_id in awaiting_worker:
            continue
        try:
            transition_record(db, record_id, S.NOT_STARTED.value, S.ABSENT.value)
            db.commit()
            marked += 1
        except InvalidOperationError:
            db.rollback()
    logger.info('absence_sweep session_id=%s created=%s marked_absent=%s', session.id, created, marked)
    return {'session_id': session.id, 'created_absent': created, 'marked_absent': marked}


@service_call
def sweep_absences(db: Session, session_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict:
    return _sweep(db, get_session_row(db, session_id), time_provider)


@timed_service('attendance_state.sweep_ended_sessions')
def sweep_ended_sessions(db: Session, *, time_provider: TimeProvider = default_time_provider) -> dict:
    """Sweep every recently ended session; used by the scheduler."""
    now = time_provider.local_now()
    since = now - timedelta(hours=settings.absence_sweep_lookback_hours)
    session_ids = [
        row.id
        for row in db.query(CourseSession.id)
        .filter(
            CourseSession.attendance_enabled.is_(True),
            CourseSession.end_time.is_not(None),
            CourseSession.end_time < now,
            CourseSession.end_time >= since,
        )
        .order_by(CourseSession.end_time.asc())
        .all()
    ]
    swept = skipped = 0
    for session_id in session_ids:
        result = sweep_absences(db, session_id, time_provider=time_provider)
        if result.ok:
            swept += 1
        else:
            skipped += 1
    return {'swept': swept, 'skipped': skipped}


@service_call
def mark_truant(
    db: Session,
    identity: UserIdentity,
    record_id: int,
    reason: str = '',
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    record = get_record_row(db, record_id)
    session = get_session_row(db, record.session_id)
    teacher_id = require_session_teacher(session, identity)
    transition_record(
        db,
        record.id,
        record.status,
        S.TRUANT.value,
        manual_override_by=teacher_id,
        manual_override_time=time_provider.local_now(),
        manual_override_reason=(reason or '')[: settings.makeup_reason_max_length],
    )
    db.commit()
    db.refresh(record)
    logger.info('attendance_marked_truant record_id=%s by=%s', record.id, teacher_id)
    return record_to_dict(record)


@service_call
def get_record(db: Session, record_id: int) -> dict:
    return record_to_dict(get_record_row(db, record_id))


@service_call
def get_student_record(db: Session, session_id: int, student_id: str) -> dict:
    session = get_session_row(db, session_id)
    record = find_record(db, session.id, student_id)
    if record is None:
        if find_enrollment(db, session, student_id) is None:
            raise NotFoundError(f'student {student_id} is not enrolled', reason='not_enrolled')
        return {'id': None, 'session_id': session.id, 'student_id': student_id, 'status': S.NOT_STARTED.value}
    return record_to_dict(record)


@service_call
def list_session_records(db: Session, session_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict:
    """Roster of enrolled students; students without a record get a derived status."""
    session = get_session_row(db, session_id)
    now = time_provider.local_now()
    records = {
        row.student_id: row
        for row in db.query(AttendanceRecord).filter(AttendanceRecord.session_id == session.id).all()
    }
    finished = session_phase(session, now) == PHASE_FINISHED and window_open_at(db, session.id, now) is None
    fallback = S.ABSENT.value if finished else S.NOT_STARTED.value
    items = []
    for enrollment in enrolled_students(db, session):
        record = records.pop(enrollment.student_id, None)
        if record is not None:
            items.append({**record_to_dict(record), 'derived': False})
            continue
        items.append(
            {
                'id': None,
                'session_id': session.id,
                'student_id': enrollment.student_id,
                'student_name': enrollment.student_name,
                'class_name': enrollment.class_name,
                'status': fallback,
                'derived': True,
            }
        )
    for record in records.values():
        items.append({**record_to_dict(record), 'derived': False})
    counts: dict[str, int] = {}
    for item in items:
        counts[item['status']] = counts.get(item['status'], 0) + 1
    return {'session_id': session.id, 'items': items, 'counts': counts}
