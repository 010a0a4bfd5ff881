from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from attendance_engine.core.identity import StudentIdentity, TeacherIdentity, UserIdentity
from attendance_engine.db import get_db
from attendance_engine.routers.deps import EndpointNameRoute, current_identity, result_to_response, teacher_identity
from attendance_engine.schemas import CourseRescheduleRequest, MakeupRequest, RescheduleRequest, TruantRequest
from attendance_engine.services import attendance_state, makeup_service


router = APIRouter(prefix='/api/attendance', tags=['Attendance'], route_class=EndpointNameRoute)


@router.get('/sessions/{session_id}/records')
def session_roster(session_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(attendance_state.list_session_records(db, session_id))


@router.get('/sessions/{session_id}/me')
def my_record(session_id: int, identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    student_id = identity.id if isinstance(identity, StudentIdentity) else ''
    return result_to_response(attendance_state.get_student_record(db, session_id, student_id))


@router.post('/sessions/{session_id}/sweep')
def sweep_absences(session_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(attendance_state.sweep_absences(db, session_id))


@router.get('/records/{record_id}')
def get_record(record_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(attendance_state.get_record(db, record_id))


@router.post('/records/{record_id}/truant')
def mark_truant(
    record_id: int,
    payload: TruantRequest,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(attendance_state.mark_truant(db, identity, record_id, payload.reason))


@router.post('/makeup')
def makeup_sign_in(payload: MakeupRequest, identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    return result_to_response(
        makeup_service.makeup_sign_in(db, identity, payload.session_ids, payload.student_ids, payload.reason)
    )


@router.post('/reschedule')
def reschedule_sessions(
    payload: RescheduleRequest,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(
        makeup_service.reschedule_sessions(
            db,
            identity,
            payload.session_ids,
            payload.target_week,
            payload.target_weekday,
            payload.term_id,
        )
    )


@router.post('/reschedule/course')
def reschedule_course(
    payload: CourseRescheduleRequest,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(
        makeup_service.reschedule_course(
            db,
            identity,
            payload.course_code,
            payload.term_id,
            payload.from_week,
            payload.target_week,
            from_weekday=payload.from_weekday,
            target_weekday=payload.target_weekday,
        )
    )
