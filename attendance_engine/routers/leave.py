from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendance_engine.core.identity import UserIdentity
from attendance_engine.db import get_db
from attendance_engine.routers.deps import EndpointNameRoute, current_identity, result_to_response
from attendance_engine.schemas import ApprovalRequest, LeaveRequest
from attendance_engine.services import leave_service


router = APIRouter(prefix='/api/leave', tags=['Leave'], route_class=EndpointNameRoute)


@router.post('/sessions/{session_id}', status_code=201)
def submit_leave(
    session_id: int,
    payload: LeaveRequest,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(leave_service.submit_leave(db, identity, session_id, payload))


@router.get('/mine')
def my_applications(
    status: str | None = Query(default=None),
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(leave_service.list_student_applications(db, identity, status=status))


@router.get('/pending')
def pending_approvals(identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    return result_to_response(leave_service.list_pending_approvals(db, identity))


@router.get('/records/{record_id}')
def get_application(record_id: int, identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    return result_to_response(leave_service.get_leave_application(db, identity, record_id))


@router.post('/records/{record_id}/decision')
def decide_leave(
    record_id: int,
    payload: ApprovalRequest,
    identity: UserIdentity = Depends(current_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(leave_service.approve_leave(db, identity, record_id, payload.decision, payload.comment))


@router.post('/records/{record_id}/withdraw')
def withdraw_leave(record_id: int, identity: UserIdentity = Depends(current_identity), db: Session = Depends(get_db)):
    return result_to_response(leave_service.withdraw_leave(db, identity, record_id))
