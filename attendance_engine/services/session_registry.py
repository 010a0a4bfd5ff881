from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from attendance_engine.core.errors import ForbiddenError, InvalidOperationError, NotFoundError, ValidationError
from attendance_engine.core.identity import UserIdentity, require_teacher
from attendance_engine.core.results import service_call
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.models import (
    AttendanceRecord,
    AttendanceStatus,
    CheckinJob,
    CourseEnrollment,
    CourseSession,
    CourseSessionTeacher,
    Term,
    VerificationWindow,
)
from attendance_engine.schemas import (
    EnrollmentRequest,
    SessionCreateRequest,
    SessionTeacherRequest,
    SessionUpdateRequest,
    parse_payload,
)
from attendance_engine.services.period_resolver import SessionSchedule, compute_session_schedule, get_term
from attendance_engine.services.rule_conditions import SessionContext


logger = logging.getLogger(__name__)

PHASE_NOT_STARTED = 'not_started'
PHASE_IN_PROGRESS = 'in_progress'
PHASE_FINISHED = 'finished'

_CONTEXT_FIELDS = ('course_code', 'course_name', 'teaching_unit', 'class_name', 'major_name', 'location')


def session_context(session: CourseSession, teacher_id: str | None = None) -> SessionContext:
    if teacher_id is None and session.teachers:
        teacher_id = session.teachers[0].teacher_id
    return SessionContext(
        course_code=session.course_code,
        course_name=session.course_name,
        teaching_unit=session.teaching_unit,
        class_name=session.class_name,
        major_name=session.major_name,
        teacher_id=teacher_id,
        location=session.location,
        teaching_week=session.teaching_week,
        weekday=session.weekday,
    )


def session_phase(session: CourseSession, now: datetime) -> str:
    if session.start_time is None or session.end_time is None:
        return PHASE_NOT_STARTED
    if now < session.start_time:
        return PHASE_NOT_STARTED
    if now > session.end_time:
        return PHASE_FINISHED
    return PHASE_IN_PROGRESS


def is_registered_teacher(session: CourseSession, teacher_id: str) -> bool:
    return any(row.teacher_id == teacher_id for row in session.teachers)


def require_session_teacher(session: CourseSession, identity: UserIdentity) -> str:
    teacher = require_teacher(identity)
    if not is_registered_teacher(session, teacher.id):
        raise ForbiddenError(
            f'teacher {teacher.id} is not registered on session {session.id}',
            reason='not_session_teacher',
            session_id=session.id,
        )
    return teacher.id


def session_to_dict(session: CourseSession, now: datetime | None = None) -> dict:
    payload = {
        'id': session.id,
        'external_id': session.external_id,
        'course_code': session.course_code,
        'course_name': session.course_name,
        'term_id': session.term_id,
        'teaching_week': session.teaching_week,
        'weekday': session.weekday,
        'periods': session.period_numbers,
        'location': session.location,
        'teaching_unit': session.teaching_unit,
        'class_name': session.class_name,
        'major_name': session.major_name,
        'start_time': session.start_time.isoformat() if session.start_time else None,
        'end_time': session.end_time.isoformat() if session.end_time else None,
        'attendance_enabled': bool(session.attendance_enabled),
        'allow_self_checkin': bool(session.allow_self_checkin),
        'teachers': [{'teacher_id': row.teacher_id, 'teacher_name': row.teacher_name} for row in session.teachers],
    }
    if now is not None:
        payload['phase'] = session_phase(session, now)
    return payload


def get_session_row(db: Session, session_id: int, *, for_update: bool = False) -> CourseSession:
    query = db.query(CourseSession).options(selectinload(CourseSession.teachers)).filter(CourseSession.id == session_id)
    if for_update:
        query = query.with_for_update()
    row = query.first()
    if not row:
        raise NotFoundError(f'session {session_id} not found', reason='session_not_found', session_id=session_id)
    return row


def apply_schedule(db: Session, session: CourseSession, term: Term | None = None) -> SessionSchedule:
    schedule = compute_session_schedule(
        db,
        term or session.term_id,
        session.period_numbers,
        session_context(session),
        session.teaching_week,
        session.weekday,
    )
    session.start_time = schedule.start_at
    session.end_time = schedule.end_at
    session.matched_rule_ids = ','.join(str(rule_id) for rule_id in schedule.matched_rule_ids)
    return schedule


def _replace_teachers(session: CourseSession, teachers: list[SessionTeacherRequest]) -> None:
    seen: set[str] = set()
    keep = []
    existing = {row.teacher_id: row for row in session.teachers}
    for item in teachers:
        if item.teacher_id in seen:
            continue
        seen.add(item.teacher_id)
        row = existing.get(item.teacher_id)
        if row is None:
            row = CourseSessionTeacher(teacher_id=item.teacher_id, teacher_name=item.teacher_name)
        else:
            row.teacher_name = item.teacher_name or row.teacher_name
        keep.append(row)
    session.teachers = keep


def _slot_taken(db: Session, course_code: str, term_id: int, teaching_week: int, weekday: int, exclude_id: int | None = None) -> bool:
    query = db.query(CourseSession.id).filter(
        CourseSession.course_code == course_code,
        CourseSession.term_id == term_id,
        CourseSession.teaching_week == teaching_week,
        CourseSession.weekday == weekday,
    )
    if exclude_id is not None:
        query = query.filter(CourseSession.id != exclude_id)
    return query.first() is not None


def _commit_session(db: Session, session: CourseSession) -> None:
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidOperationError(
            f'session {session.external_id} conflicts with an existing session',
            reason='duplicate_session',
            external_id=session.external_id,
        ) from exc
    db.refresh(session)


def _create(db: Session, request: SessionCreateRequest, time_provider: TimeProvider) -> dict:
    term = get_term(db, request.term_id)
    if db.query(CourseSession.id).filter(CourseSession.external_id == request.external_id).first():
        raise InvalidOperationError(f'session {request.external_id} already exists', reason='duplicate_session')
    if _slot_taken(db, request.course_code, term.id, request.teaching_week, request.weekday):
        raise InvalidOperationError(
            f'{request.course_code} already has a session in week {request.teaching_week} weekday {request.weekday}',
            reason='slot_conflict',
        )
    session = CourseSession(
        external_id=request.external_id,
        course_code=request.course_code,
        course_name=request.course_name,
        term_id=term.id,
        teaching_week=request.teaching_week,
        weekday=request.weekday,
        location=request.location,
        teaching_unit=request.teaching_unit,
        class_name=request.class_name,
        major_name=request.major_name,
        attendance_enabled=request.attendance_enabled,
        allow_self_checkin=request.allow_self_checkin,
    )
    session.period_numbers = request.periods
    _replace_teachers(session, request.teachers)
    apply_schedule(db, session, term)
    db.add(session)
    _commit_session(db, session)
    logger.info(
        'course_session_created session_id=%s external_id=%s start=%s',
        session.id,
        session.external_id,
        session.start_time,
    )
    return session_to_dict(session, time_provider.local_now())


@service_call
def create_session(db: Session, request, *, time_provider: TimeProvider = default_time_provider) -> dict:
    return _create(db, parse_payload(SessionCreateRequest, request), time_provider)


@service_call
def upsert_session_by_external_id(db: Session, request, *, time_provider: TimeProvider = default_time_provider) -> dict:
    """Calendar sync entry point: create the session or refresh its slot and times."""
    payload = parse_payload(SessionCreateRequest, request)
    session = (
        db.query(CourseSession)
        .options(selectinload(CourseSession.teachers))
        .filter(CourseSession.external_id == payload.external_id)
        .first()
    )
    if session is None:
        return _create(db, payload, time_provider)

    term = get_term(db, payload.term_id)
    if _slot_taken(db, payload.course_code, term.id, payload.teaching_week, payload.weekday, exclude_id=session.id):
        raise InvalidOperationError(
            f'{payload.course_code} already has a session in week {payload.teaching_week} weekday {payload.weekday}',
            reason='slot_conflict',
        )
    previous_start = session.start_time
    session.course_code = payload.course_code
    session.course_name = payload.course_name
    session.term_id = term.id
    session.teaching_week = payload.teaching_week
    session.weekday = payload.weekday
    session.period_numbers = payload.periods
    session.location = payload.location
    session.teaching_unit = payload.teaching_unit
    session.class_name = payload.class_name
    session.major_name = payload.major_name
    session.allow_self_checkin = payload.allow_self_checkin
    _replace_teachers(session, payload.teachers)
    apply_schedule(db, session, term)
    if session.start_time != previous_start:
        refresh_pending_start_snapshots(db, session)
    _commit_session(db, session)
    logger.info('course_session_synced session_id=%s external_id=%s', session.id, session.external_id)
    return session_to_dict(session, time_provider.local_now())


@service_call
def get_session(db: Session, session_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict:
    return session_to_dict(get_session_row(db, session_id), time_provider.local_now())


@service_call
def get_session_by_external_id(db: Session, external_id: str, *, time_provider: TimeProvider = default_time_provider) -> dict:
    row = (
        db.query(CourseSession)
        .options(selectinload(CourseSession.teachers))
        .filter(CourseSession.external_id == external_id)
        .first()
    )
    if not row:
        raise NotFoundError(f'session {external_id} not found', reason='session_not_found', external_id=external_id)
    return session_to_dict(row, time_provider.local_now())


@service_call
def list_sessions(
    db: Session,
    *,
    term_id: int | None = None,
    course_code: str | None = None,
    teaching_week: int | None = None,
    weekday: int | None = None,
    teacher_id: str | None = None,
    keyword: str | None = None,
    page: int = 1,
    page_size: int = 20,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    if page < 1:
        raise ValidationError('page must be >= 1', reason='invalid_page')
    if not 1 <= page_size <= 100:
        raise ValidationError('page_size must be between 1 and 100', reason='invalid_page_size')
    query = db.query(CourseSession).options(selectinload(CourseSession.teachers))
    if term_id is not None:
        query = query.filter(CourseSession.term_id == term_id)
    if course_code:
        query = query.filter(CourseSession.course_code == course_code)
    if teaching_week is not None:
        query = query.filter(CourseSession.teaching_week == teaching_week)
    if weekday is not None:
        query = query.filter(CourseSession.weekday == weekday)
    if teacher_id:
        query = query.filter(CourseSession.teachers.any(CourseSessionTeacher.teacher_id == teacher_id))
    if keyword:
        pattern = f'%{keyword.strip()}%'
        query = query.filter(
            or_(
                CourseSession.course_code.ilike(pattern),
                CourseSession.course_name.ilike(pattern),
                CourseSession.location.ilike(pattern),
                CourseSession.class_name.ilike(pattern),
            )
        )
    total = query.count()
    rows = (
        query.order_by(CourseSession.start_time.asc(), CourseSession.id.asc())
        .offset((page - 1) * page_size)
        .limit(page_size)
        .all()
    )
    now = time_provider.local_now()
    return {
        'items': [session_to_dict(row, now) for row in rows],
        'total': total,
        'page': page,
        'page_size': page_size,
    }


@service_call
def update_session(db: Session, session_id: int, request, *, time_provider: TimeProvider = default_time_provider) -> dict:
    payload = parse_payload(SessionUpdateRequest, request)
    session = get_session_row(db, session_id, for_update=True)
    changes = payload.model_dump(exclude_unset=True, exclude_none=True)
    reschedule_needed = False
    if 'periods' in changes:
        session.period_numbers = payload.periods
        reschedule_needed = True
    for name in _CONTEXT_FIELDS:
        if name in changes:
            setattr(session, name, changes[name])
            reschedule_needed = True
    if 'allow_self_checkin' in changes:
        session.allow_self_checkin = payload.allow_self_checkin
    if payload.teachers is not None:
        _replace_teachers(session, payload.teachers)
        reschedule_needed = True
    if reschedule_needed:
        previous_start = session.start_time
        apply_schedule(db, session)
        if session.start_time != previous_start:
            refresh_pending_start_snapshots(db, session)
    _commit_session(db, session)
    logger.info('course_session_updated session_id=%s fields=%s', session.id, ','.join(sorted(changes)))
    return session_to_dict(session, time_provider.local_now())


@service_call
def delete_session(db: Session, session_id: int) -> dict:
    session = get_session_row(db, session_id)
    if db.query(AttendanceRecord.id).filter(AttendanceRecord.session_id == session.id).first():
        raise InvalidOperationError(
            f'session {session_id} has attendance records and cannot be deleted',
            reason='session_has_records',
        )
    db.query(CheckinJob).filter(CheckinJob.session_id == session.id).delete(synchronize_session=False)
    db.query(VerificationWindow).filter(VerificationWindow.session_id == session.id).delete(synchronize_session=False)
    db.delete(session)
    db.commit()
    logger.info('course_session_deleted session_id=%s', session_id)
    return {'session_id': session_id, 'deleted': True}


@service_call
def set_attendance_enabled(
    db: Session,
    identity: UserIdentity,
    session_id: int,
    enabled: bool,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    session = get_session_row(db, session_id, for_update=True)
    teacher_id = require_session_teacher(session, identity)
    now = time_provider.local_now()
    if session_phase(session, now) != PHASE_NOT_STARTED:
        raise InvalidOperationError(
            'attendance setting can only change before the session starts',
            reason='session_started',
            session_id=session_id,
        )
    session.attendance_enabled = bool(enabled)
    db.commit()
    db.refresh(session)
    logger.info('attendance_enabled_changed session_id=%s enabled=%s by=%s', session_id, enabled, teacher_id)
    return session_to_dict(session, now)


def refresh_pending_start_snapshots(db: Session, session: CourseSession) -> int:
    """Point every not yet finalized record at the session's current start."""
    return (
        db.query(AttendanceRecord)
        .filter(
            AttendanceRecord.session_id == session.id,
            AttendanceRecord.status == AttendanceStatus.NOT_STARTED.value,
        )
        .update({AttendanceRecord.session_start_snapshot: session.start_time}, synchronize_session=False)
    )


def move_session(db: Session, session: CourseSession, term: Term, target_week: int, target_weekday: int) -> dict:
    """Move one session to a new slot and re-derive its times; the caller commits."""
    if _slot_taken(db, session.course_code, term.id, target_week, target_weekday, exclude_id=session.id):
        raise InvalidOperationError(
            f'{session.course_code} already has a session in week {target_week} weekday {target_weekday}',
            reason='slot_conflict',
            session_id=session.id,
        )
    previous = {
        'teaching_week': session.teaching_week,
        'weekday': session.weekday,
        'start_time': session.start_time,
        'end_time': session.end_time,
    }
    session.teaching_week = target_week
    session.weekday = target_weekday
    apply_schedule(db, session, term)
    refreshed = refresh_pending_start_snapshots(db, session)
    return {
        'session_id': session.id,
        'from_week': previous['teaching_week'],
        'from_weekday': previous['weekday'],
        'to_week': target_week,
        'to_weekday': target_weekday,
        'previous_start': previous['start_time'].isoformat() if previous['start_time'] else None,
        'start_time': session.start_time.isoformat() if session.start_time else None,
        'end_time': session.end_time.isoformat() if session.end_time else None,
        'refreshed_records': refreshed,
    }


def find_enrollment(db: Session, session: CourseSession, student_id: str) -> CourseEnrollment | None:
    return (
        db.query(CourseEnrollment)
        .filter(
            CourseEnrollment.course_code == session.course_code,
            CourseEnrollment.term_id == session.term_id,
            CourseEnrollment.student_id == student_id,
            CourseEnrollment.active.is_(True),
        )
        .first()
    )


def is_enrolled(db: Session, session: CourseSession, student_id: str) -> bool:
    return find_enrollment(db, session, student_id) is not None


def enrolled_students(db: Session, session: CourseSession) -> list[CourseEnrollment]:
    return (
        db.query(CourseEnrollment)
        .filter(
            CourseEnrollment.course_code == session.course_code,
            CourseEnrollment.term_id == session.term_id,
            CourseEnrollment.active.is_(True),
        )
        .order_by(CourseEnrollment.student_id.asc())
        .all()
    )


def _enrollment_to_dict(row: CourseEnrollment) -> dict:
    return {
        'course_code': row.course_code,
        'term_id': row.term_id,
        'student_id': row.student_id,
        'student_name': row.student_name,
        'class_name': row.class_name,
        'major_name': row.major_name,
        'active': bool(row.active),
    }


@service_call
def enroll_student(db: Session, course_code: str, term_id: int, request) -> dict:
    payload = parse_payload(EnrollmentRequest, request)
    term = get_term(db, term_id)
    row = (
        db.query(CourseEnrollment)
        .filter(
            CourseEnrollment.course_code == course_code,
            CourseEnrollment.term_id == term.id,
            CourseEnrollment.student_id == payload.student_id,
        )
        .first()
    )
    if row is None:
        row = CourseEnrollment(course_code=course_code, term_id=term.id, student_id=payload.student_id)
        db.add(row)
    row.student_name = payload.student_name or row.student_name or ''
    row.class_name = payload.class_name or row.class_name or ''
    row.major_name = payload.major_name or row.major_name or ''
    row.active = True
    db.commit()
    db.refresh(row)
    return _enrollment_to_dict(row)


@service_call
def drop_enrollment(db: Session, course_code: str, term_id: int, student_id: str) -> dict:
    row = (
        db.query(CourseEnrollment)
        .filter(
            CourseEnrollment.course_code == course_code,
            CourseEnrollment.term_id == term_id,
            CourseEnrollment.student_id == student_id,
        )
        .first()
    )
    if not row or not row.active:
        raise NotFoundError(f'student {student_id} is not enrolled in {course_code}', reason='enrollment_not_found')
    row.active = False
    db.commit()
    return _enrollment_to_dict(row)


@service_call
def list_enrolled_students(db: Session, session_id: int) -> list[dict]:
    session = get_session_row(db, session_id)
    return [_enrollment_to_dict(row) for row in enrolled_students(db, session)]
