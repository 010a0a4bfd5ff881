from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendance_engine.core.identity import TeacherIdentity, UserIdentity
from attendance_engine.db import get_db
from attendance_engine.routers.deps import EndpointNameRoute, current_identity, result_to_response, teacher_identity
from attendance_engine.schemas import (
    AttendanceEnabledRequest,
    EnrollmentRequest,
    SessionCreateRequest,
    SessionUpdateRequest,
    WindowOpenRequest,
)
from attendance_engine.services import session_registry, window_manager


router = APIRouter(prefix='/api/sessions', tags=['Sessions'], route_class=EndpointNameRoute)


@router.get('')
def list_sessions(
    term_id: int | None = Query(default=None),
    course_code: str | None = Query(default=None),
    teaching_week: int | None = Query(default=None),
    weekday: int | None = Query(default=None),
    teacher_id: str | None = Query(default=None),
    keyword: str | None = Query(default=None),
    page: int = Query(default=1),
    page_size: int = Query(default=20),
    db: Session = Depends(get_db),
):
    return result_to_response(
        session_registry.list_sessions(
            db,
            term_id=term_id,
            course_code=course_code,
            teaching_week=teaching_week,
            weekday=weekday,
            teacher_id=teacher_id,
            keyword=keyword,
            page=page,
            page_size=page_size,
        )
    )


@router.post('', status_code=201)
def create_session(payload: SessionCreateRequest, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(session_registry.create_session(db, payload))


@router.put('/external')
def upsert_session(payload: SessionCreateRequest, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(session_registry.upsert_session_by_external_id(db, payload))


@router.get('/external/{external_id}')
def get_session_by_external_id(external_id: str, db: Session = Depends(get_db)):
    return result_to_response(session_registry.get_session_by_external_id(db, external_id))


@router.get('/{session_id}')
def get_session(session_id: int, db: Session = Depends(get_db)):
    return result_to_response(session_registry.get_session(db, session_id))


@router.patch('/{session_id}')
def update_session(
    session_id: int,
    payload: SessionUpdateRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(session_registry.update_session(db, session_id, payload))


@router.delete('/{session_id}')
def delete_session(session_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(session_registry.delete_session(db, session_id))


@router.post('/{session_id}/attendance-enabled')
def set_attendance_enabled(
    session_id: int,
    payload: AttendanceEnabledRequest,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(session_registry.set_attendance_enabled(db, identity, session_id, payload.enabled))


@router.get('/{session_id}/students')
def list_enrolled_students(session_id: int, db: Session = Depends(get_db)):
    return result_to_response(session_registry.list_enrolled_students(db, session_id))


@router.post('/courses/{course_code}/terms/{term_id}/enrollments', status_code=201)
def enroll_student(
    course_code: str,
    term_id: int,
    payload: EnrollmentRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(session_registry.enroll_student(db, course_code, term_id, payload))


@router.delete('/courses/{course_code}/terms/{term_id}/enrollments/{student_id}')
def drop_enrollment(
    course_code: str,
    term_id: int,
    student_id: str,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(session_registry.drop_enrollment(db, course_code, term_id, student_id))


@router.post('/{session_id}/windows', status_code=201)
def open_window(
    session_id: int,
    payload: WindowOpenRequest | None = None,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    duration = payload.duration_minutes if payload else None
    return result_to_response(window_manager.open_window(db, identity, session_id, duration))


@router.get('/{session_id}/windows')
def list_windows(session_id: int, db: Session = Depends(get_db)):
    return result_to_response(window_manager.list_windows(db, session_id))


@router.get('/{session_id}/windows/active')
def get_active_window(session_id: int, db: Session = Depends(get_db)):
    return result_to_response(window_manager.get_active_window(db, session_id))


@router.get('/windows/{window_id}')
def window_status(window_id: int, db: Session = Depends(get_db)):
    return result_to_response(window_manager.window_status(db, window_id))
