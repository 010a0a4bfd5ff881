from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendance_engine.core.identity import TeacherIdentity, UserIdentity
from attendance_engine.db import get_db
from attendance_engine.routers.deps import EndpointNameRoute, current_identity, result_to_response, teacher_identity
from attendance_engine.schemas import CheckinPayload
from attendance_engine.services import checkin_pipeline


router = APIRouter(prefix='/api/checkins', tags=['Check-ins'], route_class=EndpointNameRoute)


@router.post('/sessions/{session_id}', status_code=202)
def submit_checkin(
    session_id: int,
    payload: CheckinPayload | None = None,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(checkin_pipeline.submit(db, session_id, identity, payload))


@router.get('/failed')
def list_failed_checkins(
    session_id: int | None = Query(default=None),
    limit: int = Query(default=100),
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(checkin_pipeline.list_failed_jobs(db, session_id=session_id, limit=limit))


@router.get('/{job_id}')
def get_checkin_status(job_id: int, identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    return result_to_response(checkin_pipeline.get_checkin_status(db, identity, job_id))


@router.post('/{job_id}/retry')
def retry_failed_checkin(job_id: int, identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    return result_to_response(checkin_pipeline.retry_failed_job(db, identity, job_id))


@router.post('/{job_id}/process')
def process_checkin(job_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(checkin_pipeline.process_checkin_job(db, job_id))
