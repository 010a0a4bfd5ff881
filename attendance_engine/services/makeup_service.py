from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.errors import (
    EngineError,
    ForbiddenError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from attendance_engine.core.identity import TeacherIdentity, UserIdentity, require_teacher
from attendance_engine.core.results import BatchResult, service_call
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import AttendanceStatus, CheckinSource, CourseSession, Term
from attendance_engine.services.attendance_state import (
    assert_transition,
    find_record,
    get_or_create_record,
    transition_record,
)
from attendance_engine.services.period_resolver import get_term, validate_week_and_weekday
from attendance_engine.services.session_registry import (
    PHASE_FINISHED,
    enrolled_students,
    find_enrollment,
    get_session_row,
    move_session,
    require_session_teacher,
    session_phase,
)


logger = logging.getLogger(__name__)

S = AttendanceStatus
MAKEUP_ELIGIBLE = (S.NOT_STARTED.value, S.ABSENT.value)


def _item_key(session_id: int, student_id: str | None = None) -> dict:
    key = {'session_id': session_id}
    if student_id is not None:
        key['student_id'] = student_id
    return key


def _makeup_one(db: Session, session: CourseSession, student_id: str, teacher_id: str, reason: str, now: datetime) -> dict:
    enrollment = find_enrollment(db, session, student_id)
    if enrollment is None:
        raise ForbiddenError(f'student {student_id} is not enrolled in {session.course_code}', reason='not_enrolled')
    record, _ = get_or_create_record(
        db,
        session,
        student_id,
        student_name=enrollment.student_name,
        class_name=enrollment.class_name,
        major_name=enrollment.major_name,
    )
    if record.status == S.PRESENT.value:
        return {'record_id': record.id, 'status': record.status, 'changed': False}
    assert_transition(record.status, S.PRESENT.value)
    previous = record.status
    transition_record(
        db,
        record.id,
        previous,
        S.PRESENT.value,
        checkin_time=now,
        is_late=False,
        checkin_source=CheckinSource.MAKEUP.value,
        manual_override_by=teacher_id,
        manual_override_time=now,
        manual_override_reason=reason,
    )
    db.commit()
    return {'record_id': record.id, 'status': S.PRESENT.value, 'previous_status': previous, 'changed': True}


def _makeup_targets(db: Session, session: CourseSession, student_ids: list[str] | None) -> list[str]:
    if student_ids is not None:
        return list(dict.fromkeys(student_ids))
    targets = []
    for enrollment in enrolled_students(db, session):
        record = find_record(db, session.id, enrollment.student_id)
        if record is None or record.status in MAKEUP_ELIGIBLE:
            targets.append(enrollment.student_id)
    return targets


@service_call
@timed_service('makeup_service.makeup_sign_in')
def makeup_sign_in(
    db: Session,
    identity: UserIdentity,
    session_ids: list[int],
    student_ids: list[str] | None = None,
    reason: str = '',
    *,
    time_provider: TimeProvider = default_time_provider,
) -> BatchResult:
    """Teacher-asserted presence; bypasses window and lateness checks."""
    teacher = require_teacher(identity)
    if not session_ids:
        raise ValidationError('at least one session is required', reason='invalid_sessions')
    if student_ids is not None and not student_ids:
        raise ValidationError('student list must not be empty when given', reason='invalid_students')
    reason = (reason or '').strip()
    if len(reason) > settings.makeup_reason_max_length:
        raise ValidationError(
            f'reason must be at most {settings.makeup_reason_max_length} characters',
            reason='reason_too_long',
        )
    now = time_provider.local_now()
    outcome = BatchResult()
    for session_id in dict.fromkeys(session_ids):
        try:
            session = get_session_row(db, session_id)
            require_session_teacher(session, teacher)
            targets = _makeup_targets(db, session, student_ids)
        except EngineError as exc:
            db.rollback()
            for student_id in student_ids or [None]:
                outcome.add_failure(_item_key(session_id, student_id), exc)
            continue
        for student_id in targets:
            key = _item_key(session_id, student_id)
            try:
                outcome.add_success(key, _makeup_one(db, session, student_id, teacher.id, reason, now))
            except EngineError as exc:
                db.rollback()
                outcome.add_failure(key, exc)
            except SQLAlchemyError as exc:
                db.rollback()
                logger.exception('makeup_item_storage_error session_id=%s student_id=%s', session_id, student_id)
                outcome.add_failure(key, StorageError('storage unavailable', reason='storage_unavailable', error=str(exc)))
    logger.info(
        'makeup_sign_in teacher=%s sessions=%s succeeded=%s failed=%s',
        teacher.id,
        len(session_ids),
        len(outcome.succeeded),
        len(outcome.failed),
    )
    return outcome


def _reschedule_one(
    db: Session,
    session_id: int,
    teacher: TeacherIdentity,
    term: Term,
    target_week: int,
    target_weekday: int,
    now: datetime,
) -> dict:
    session = get_session_row(db, session_id, for_update=True)
    if session.term_id != term.id:
        raise InvalidOperationError(
            f'session {session_id} belongs to another term',
            reason='term_mismatch',
            session_term_id=session.term_id,
        )
    require_session_teacher(session, teacher)
    if session_phase(session, now) == PHASE_FINISHED:
        raise InvalidOperationError(f'session {session_id} has already finished', reason='session_finished')
    if session.teaching_week == target_week and session.weekday == target_weekday:
        return {'session_id': session.id, 'unchanged': True}
    moved = move_session(db, session, term, target_week, target_weekday)
    db.commit()
    return moved


def _reschedule_batch(
    db: Session,
    teacher: TeacherIdentity,
    term: Term,
    moves: list[tuple[int, int, int]],
    now: datetime,
) -> BatchResult:
    outcome = BatchResult()
    for session_id, target_week, target_weekday in moves:
        key = _item_key(session_id)
        try:
            outcome.add_success(key, _reschedule_one(db, session_id, teacher, term, target_week, target_weekday, now))
        except EngineError as exc:
            db.rollback()
            outcome.add_failure(key, exc)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('reschedule_item_storage_error session_id=%s', session_id)
            outcome.add_failure(key, StorageError('storage unavailable', reason='storage_unavailable', error=str(exc)))
    logger.info(
        'sessions_rescheduled teacher=%s requested=%s succeeded=%s failed=%s',
        teacher.id,
        len(moves),
        len(outcome.succeeded),
        len(outcome.failed),
    )
    return outcome


@service_call
def reschedule_sessions(
    db: Session,
    identity: UserIdentity,
    session_ids: list[int],
    target_week: int,
    target_weekday: int,
    term_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> BatchResult:
    """Move sessions to a new week/weekday.

    Records still ``not_started`` are re-pointed at the new start; finalized
    records are history and stay untouched.
    """
    teacher = require_teacher(identity)
    validate_week_and_weekday(target_week, target_weekday)
    if not session_ids:
        raise ValidationError('at least one session is required', reason='invalid_sessions')
    term = get_term(db, term_id)
    moves = [(session_id, target_week, target_weekday) for session_id in dict.fromkeys(session_ids)]
    return _reschedule_batch(db, teacher, term, moves, time_provider.local_now())


@service_call
def reschedule_course(
    db: Session,
    identity: UserIdentity,
    course_code: str,
    term_id: int,
    from_week: int,
    target_week: int,
    *,
    from_weekday: int | None = None,
    target_weekday: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> BatchResult:
    """Move a course's sessions of one week (optionally one weekday) to another week.

    Without `target_weekday` each session keeps its weekday.
    """
    teacher = require_teacher(identity)
    validate_week_and_weekday(from_week, from_weekday or 1)
    validate_week_and_weekday(target_week, target_weekday or 1)
    term = get_term(db, term_id)
    query = db.query(CourseSession).filter(
        CourseSession.course_code == course_code,
        CourseSession.term_id == term.id,
        CourseSession.teaching_week == from_week,
    )
    if from_weekday is not None:
        query = query.filter(CourseSession.weekday == from_weekday)
    sessions = query.order_by(CourseSession.weekday.asc(), CourseSession.id.asc()).all()
    if not sessions:
        raise NotFoundError(
            f'{course_code} has no sessions in week {from_week}',
            reason='session_not_found',
            course_code=course_code,
        )
    moves = [(row.id, target_week, target_weekday or row.weekday) for row in sessions]
    return _reschedule_batch(db, teacher, term, moves, time_provider.local_now())
