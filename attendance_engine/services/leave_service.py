from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from attendance_engine.config import settings
from attendance_engine.core.errors import ForbiddenError, InvalidOperationError, NotFoundError, ValidationError
from attendance_engine.core.identity import StudentIdentity, UserIdentity, require_student, require_teacher
from attendance_engine.core.results import service_call
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.models import (
    ApprovalDecision,
    AttendanceRecord,
    AttendanceStatus,
    LeaveApplication,
    LeaveApproval,
    LeaveAttachment,
)
from attendance_engine.schemas import ApprovalRequest, LeaveRequest, parse_payload
from attendance_engine.services.attendance_state import get_or_create_record, get_record_row, transition_record
from attendance_engine.services.session_registry import (
    find_enrollment,
    get_session_row,
    is_registered_teacher,
    require_session_teacher,
)


logger = logging.getLogger(__name__)

S = AttendanceStatus
D = ApprovalDecision


def application_to_dict(application: LeaveApplication) -> dict:
    return {
        'id': application.id,
        'record_id': application.record_id,
        'session_id': application.session_id,
        'student_id': application.student_id,
        'leave_type': application.leave_type,
        'reason': application.reason,
        'status': application.status,
        'submitted_at': application.submitted_at.isoformat(),
        'resolved_at': application.resolved_at.isoformat() if application.resolved_at else None,
        'attachments': [
            {'id': row.id, 'storage_ref': row.storage_ref, 'file_name': row.file_name}
            for row in application.attachments
        ],
        'approvals': [
            {
                'approver_id': row.approver_id,
                'approver_name': row.approver_name,
                'decision': row.decision,
                'comment': row.comment,
                'decided_at': row.decided_at.isoformat() if row.decided_at else None,
            }
            for row in application.approvals
        ],
    }


def _application_for_record(db: Session, record_id: int, *, for_update: bool = False) -> LeaveApplication:
    query = db.query(LeaveApplication).options(
        selectinload(LeaveApplication.approvals), selectinload(LeaveApplication.attachments)
    )
    if for_update:
        # Serializes deciders so the last approval sees every other slot committed.
        db.query(LeaveApplication.id).filter(LeaveApplication.record_id == record_id).with_for_update().first()
        query = query.populate_existing()
    row = query.filter(LeaveApplication.record_id == record_id).first()
    if not row:
        raise NotFoundError(f'no leave application for record {record_id}', reason='leave_not_found', record_id=record_id)
    return row


def _reload(db: Session, application_id: int) -> LeaveApplication:
    db.expire_all()
    return (
        db.query(LeaveApplication)
        .options(selectinload(LeaveApplication.approvals), selectinload(LeaveApplication.attachments))
        .filter(LeaveApplication.id == application_id)
        .one()
    )


@service_call
def submit_leave(
    db: Session,
    identity: UserIdentity,
    session_id: int,
    request,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    student = require_student(identity)
    payload = parse_payload(LeaveRequest, request)
    if len(payload.reason) > settings.leave_reason_max_length:
        raise ValidationError(
            f'reason must be at most {settings.leave_reason_max_length} characters',
            reason='reason_too_long',
        )
    session = get_session_row(db, session_id)
    enrollment = find_enrollment(db, session, student.id)
    if enrollment is None:
        raise ForbiddenError(f'student {student.id} is not enrolled in {session.course_code}', reason='not_enrolled')
    approvers = list(session.teachers)
    if not approvers:
        raise InvalidOperationError('session has no registered teacher to approve leave', reason='no_approvers')

    record, _ = get_or_create_record(
        db,
        session,
        student.id,
        student_name=student.name or enrollment.student_name,
        class_name=student.class_name or enrollment.class_name,
        major_name=student.major_name or enrollment.major_name,
    )
    if record.status != S.NOT_STARTED.value:
        raise InvalidOperationError(
            f'leave cannot be requested while attendance is {record.status}',
            reason=f'record_{record.status}',
            record_id=record.id,
        )

    now = time_provider.local_now()
    transition_record(db, record.id, S.NOT_STARTED.value, S.LEAVE_PENDING.value)
    application = LeaveApplication(
        record_id=record.id,
        session_id=session.id,
        student_id=student.id,
        leave_type=payload.leave_type,
        reason=payload.reason,
        status=S.LEAVE_PENDING.value,
        submitted_at=now,
    )
    application.attachments = [
        LeaveAttachment(storage_ref=item.storage_ref, file_name=item.file_name) for item in payload.attachments
    ]
    application.approvals = [
        LeaveApproval(approver_id=row.teacher_id, approver_name=row.teacher_name, decision=D.PENDING.value)
        for row in approvers
    ]
    db.add(application)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidOperationError('a leave application already exists for this record', reason='leave_exists') from exc
    logger.info(
        'leave_submitted application_id=%s record_id=%s session_id=%s student_id=%s approvers=%s',
        application.id,
        record.id,
        session.id,
        student.id,
        len(approvers),
    )
    return application_to_dict(_reload(db, application.id))


def _resolve(db: Session, application: LeaveApplication, target: str, now) -> None:
    updated = (
        db.query(LeaveApplication)
        .filter(LeaveApplication.id == application.id, LeaveApplication.status == S.LEAVE_PENDING.value)
        .update({LeaveApplication.status: target, LeaveApplication.resolved_at: now}, synchronize_session=False)
    )
    if updated == 0:
        raise InvalidOperationError('leave application was resolved concurrently', reason='leave_already_resolved')
    transition_record(db, application.record_id, S.LEAVE_PENDING.value, target)


@service_call
def approve_leave(
    db: Session,
    identity: UserIdentity,
    record_id: int,
    decision: str,
    comment: str = '',
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    teacher = require_teacher(identity)
    payload = parse_payload(ApprovalRequest, {'decision': decision, 'comment': comment or ''})
    if len(payload.comment) > settings.approval_comment_max_length:
        raise ValidationError(
            f'comment must be at most {settings.approval_comment_max_length} characters',
            reason='comment_too_long',
        )
    record = get_record_row(db, record_id)
    session = get_session_row(db, record.session_id)
    require_session_teacher(session, teacher)
    application = _application_for_record(db, record.id, for_update=True)
    if application.status != S.LEAVE_PENDING.value:
        raise InvalidOperationError(
            f'leave application is already resolved as {application.status}',
            reason='leave_already_resolved',
            status=application.status,
        )
    slot = next((row for row in application.approvals if row.approver_id == teacher.id), None)
    if slot is None:
        raise ForbiddenError('teacher is not a required approver of this application', reason='not_an_approver')

    now = time_provider.local_now()
    updated = (
        db.query(LeaveApproval)
        .filter(LeaveApproval.id == slot.id, LeaveApproval.decision == D.PENDING.value)
        .update(
            {
                LeaveApproval.decision: payload.decision,
                LeaveApproval.comment: payload.comment,
                LeaveApproval.decided_at: now,
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        raise InvalidOperationError('this approval slot is already decided', reason='approval_already_decided')

    if payload.decision == D.REJECTED.value:
        db.query(LeaveApproval).filter(
            LeaveApproval.application_id == application.id,
            LeaveApproval.decision == D.PENDING.value,
        ).update({LeaveApproval.decision: D.CANCELLED.value, LeaveApproval.decided_at: now}, synchronize_session=False)
        _resolve(db, application, S.LEAVE_REJECTED.value, now)
    else:
        remaining = (
            db.query(LeaveApproval.id)
            .filter(
                LeaveApproval.application_id == application.id,
                LeaveApproval.decision != D.APPROVED.value,
            )
            .count()
        )
        if remaining == 0:
            _resolve(db, application, S.LEAVE.value, now)
    db.commit()
    refreshed = _reload(db, application.id)
    logger.info(
        'leave_decided application_id=%s record_id=%s approver=%s decision=%s status=%s',
        application.id,
        record.id,
        teacher.id,
        payload.decision,
        refreshed.status,
    )
    return application_to_dict(refreshed)


@service_call
def withdraw_leave(db: Session, identity: UserIdentity, record_id: int) -> dict:
    student = require_student(identity)
    record = get_record_row(db, record_id)
    application = _application_for_record(db, record.id, for_update=True)
    if application.student_id != student.id:
        raise ForbiddenError('only the submitting student can withdraw this application', reason='not_submitter')
    if application.status != S.LEAVE_PENDING.value:
        raise InvalidOperationError(
            f'leave application is already resolved as {application.status}',
            reason='leave_already_resolved',
        )
    total_slots = len(application.approvals)
    if any(row.decision != D.PENDING.value for row in application.approvals):
        raise InvalidOperationError('an approver has already decided on this application', reason='approval_started')

    removed = (
        db.query(LeaveApproval)
        .filter(LeaveApproval.application_id == application.id, LeaveApproval.decision == D.PENDING.value)
        .delete(synchronize_session=False)
    )
    if removed != total_slots:
        raise InvalidOperationError('an approver has already decided on this application', reason='approval_started')
    db.query(LeaveAttachment).filter(LeaveAttachment.application_id == application.id).delete(synchronize_session=False)
    application_id = application.id
    db.query(LeaveApplication).filter(LeaveApplication.id == application_id).delete(synchronize_session=False)
    transition_record(db, record.id, S.LEAVE_PENDING.value, S.NOT_STARTED.value)
    db.commit()
    db.expire_all()
    logger.info('leave_withdrawn application_id=%s record_id=%s student_id=%s', application_id, record.id, student.id)
    return {'record_id': record.id, 'status': get_record_row(db, record.id).status, 'withdrawn': True}


@service_call
def get_leave_application(db: Session, identity: UserIdentity, record_id: int) -> dict:
    record = get_record_row(db, record_id)
    application = _application_for_record(db, record.id)
    if isinstance(identity, StudentIdentity):
        if application.student_id != identity.id:
            raise ForbiddenError('leave application belongs to another student', reason='not_submitter')
    else:
        session = get_session_row(db, record.session_id)
        if not is_registered_teacher(session, identity.id):
            raise ForbiddenError('teacher is not registered on this session', reason='not_session_teacher')
    return application_to_dict(application)


@service_call
def list_student_applications(db: Session, identity: UserIdentity, *, status: str | None = None) -> list[dict]:
    student = require_student(identity)
    query = (
        db.query(LeaveApplication)
        .options(selectinload(LeaveApplication.approvals), selectinload(LeaveApplication.attachments))
        .filter(LeaveApplication.student_id == student.id)
    )
    if status:
        query = query.filter(LeaveApplication.status == status)
    return [application_to_dict(row) for row in query.order_by(LeaveApplication.submitted_at.desc()).all()]


@service_call
def list_pending_approvals(db: Session, identity: UserIdentity) -> list[dict]:
    teacher = require_teacher(identity)
    rows = (
        db.query(LeaveApplication)
        .options(selectinload(LeaveApplication.approvals), selectinload(LeaveApplication.attachments))
        .join(LeaveApproval, LeaveApproval.application_id == LeaveApplication.id)
        .join(AttendanceRecord, AttendanceRecord.id == LeaveApplication.record_id)
        .filter(
            LeaveApproval.approver_id == teacher.id,
            LeaveApproval.decision == D.PENDING.value,
            LeaveApplication.status == S.LEAVE_PENDING.value,
        )
        .order_by(LeaveApplication.submitted_at.asc())
        .all()
    )
    return [application_to_dict(row) for row in rows]
