"""Asynchronous check-in ingestion.

`submit` only validates and enqueues a `CheckinJob`; the attendance mutation
happens when a worker claims the job. The job's `submitted_at` is the check-in
time for every decision, so a retried job reaches the same verdict.
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.errors import (
    EngineError,
    ForbiddenError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
)
from attendance_engine.core.identity import StudentIdentity, TeacherIdentity, UserIdentity, require_student
from attendance_engine.core.results import service_call
from attendance_engine.core.retry import RetryEngine
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.db import SessionLocal
from attendance_engine.metrics import record_checkin_outcome, timed_service
from attendance_engine.models import AttendanceStatus, CheckinJob, CheckinJobStatus, CheckinSource
from attendance_engine.schemas import CheckinPayload, parse_payload
from attendance_engine.services.attendance_state import find_record, get_or_create_record, transition_record
from attendance_engine.services.session_registry import find_enrollment, get_session_row
from attendance_engine.services.window_manager import window_open_at


logger = logging.getLogger(__name__)

J = CheckinJobStatus
PENDING_STATUSES = (J.QUEUED.value, J.PROCESSING.value)
NO_OP_STATUSES = (AttendanceStatus.PRESENT.value, AttendanceStatus.LEAVE.value)


@dataclass(frozen=True)
class CheckinReceipt:
    job_id: int
    session_id: int
    student_id: str
    status: str
    submitted_at: datetime
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            'job_id': self.job_id,
            'session_id': self.session_id,
            'student_id': self.student_id,
            'status': self.status,
            'submitted_at': self.submitted_at.isoformat(),
            'duplicate': self.duplicate,
        }


@dataclass(frozen=True)
class CheckinOutcome:
    status: str
    reason: str
    record_id: int | None = None


def idempotency_key(session_id: int, student_id: str, payload: CheckinPayload) -> str:
    if payload.client_request_id:
        basis = f'request:{payload.client_request_id}'
    else:
        canonical = payload.model_dump(exclude={'client_request_id'})
        basis = 'payload:' + json.dumps(canonical, sort_keys=True, separators=(',', ':'))
    return hashlib.sha256(f'{session_id}|{student_id}|{basis}'.encode('utf-8')).hexdigest()


def job_to_dict(job: CheckinJob) -> dict:
    return {
        'job_id': job.id,
        'session_id': job.session_id,
        'student_id': job.student_id,
        'status': job.status,
        'reason': job.reason,
        'attempts': job.attempts,
        'submitted_at': job.submitted_at.isoformat(),
        'next_attempt_at': job.next_attempt_at.isoformat() if job.next_attempt_at else None,
        'last_error': job.last_error,
        'record_id': job.record_id,
        'completed_at': job.completed_at.isoformat() if job.completed_at else None,
    }


def _receipt(job: CheckinJob, duplicate: bool) -> CheckinReceipt:
    return CheckinReceipt(
        job_id=job.id,
        session_id=job.session_id,
        student_id=job.student_id,
        status=job.status,
        submitted_at=job.submitted_at,
        duplicate=duplicate,
    )


def _job_by_key(db: Session, key: str) -> CheckinJob | None:
    return db.query(CheckinJob).filter(CheckinJob.idempotency_key == key).first()


@service_call
@timed_service('checkin_pipeline.submit')
def submit(
    db: Session,
    session_id: int,
    identity: UserIdentity,
    payload=None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> CheckinReceipt:
    student = require_student(identity)
    checkin = parse_payload(CheckinPayload, payload)
    session = get_session_row(db, session_id)
    key = idempotency_key(session.id, student.id, checkin)

    existing = _job_by_key(db, key)
    if existing is not None:
        record_checkin_outcome('duplicate')
        return _receipt(existing, duplicate=True)

    pending = db.query(CheckinJob.id).filter(CheckinJob.status.in_(PENDING_STATUSES)).count()
    if pending >= settings.checkin_queue_max_pending:
        raise InvalidOperationError(
            'check-in queue is full, try again shortly',
            reason='queue_full',
            pending=pending,
        )

    now = time_provider.local_now()
    job = CheckinJob(
        idempotency_key=key,
        session_id=session.id,
        student_id=student.id,
        student_name=student.name,
        class_name=student.class_name,
        major_name=student.major_name,
        payload_json=json.dumps(checkin.model_dump()),
        submitted_at=now,
        next_attempt_at=now,
        status=J.QUEUED.value,
    )
    db.add(job)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _job_by_key(db, key)
        if existing is None:
            raise
        record_checkin_outcome('duplicate')
        return _receipt(existing, duplicate=True)
    db.refresh(job)
    record_checkin_outcome('submitted')
    logger.info('checkin_job_queued job_id=%s session_id=%s student_id=%s', job.id, session.id, student.id)
    return _receipt(job, duplicate=False)


def _decide_source(db: Session, session, checkin_at: datetime):
    window = window_open_at(db, session.id, checkin_at)
    if window is not None:
        return window, CheckinSource.WINDOW.value
    if not session.allow_self_checkin:
        raise InvalidOperationError('no verification window is open for this session', reason='no_open_window')
    opens_at = session.start_time - timedelta(minutes=settings.self_checkin_lead_minutes)
    if checkin_at < opens_at:
        raise InvalidOperationError(
            f'self check-in opens at {opens_at.strftime("%H:%M")}',
            reason='checkin_not_open',
        )
    return None, CheckinSource.SELF.value


def _lateness(session, checkin_at: datetime) -> bool:
    late_after = session.start_time + timedelta(minutes=settings.checkin_late_threshold_minutes)
    cutoff = session.start_time + timedelta(minutes=settings.checkin_auto_absent_after_minutes)
    if checkin_at > cutoff:
        raise InvalidOperationError(
            f'check-in closed {settings.checkin_auto_absent_after_minutes} minutes after the session started',
            reason='too_late',
        )
    return checkin_at > late_after


def _rejected_by_status(status: str) -> InvalidOperationError:
    return InvalidOperationError(f'check-in not accepted while attendance is {status}', reason=f'record_{status}')


def _apply_checkin(db: Session, job: CheckinJob) -> CheckinOutcome:
    session = get_session_row(db, job.session_id)
    enrollment = find_enrollment(db, session, job.student_id)
    if enrollment is None:
        raise ForbiddenError(f'student {job.student_id} is not enrolled in {session.course_code}', reason='not_enrolled')
    if not session.attendance_enabled:
        raise InvalidOperationError('attendance is disabled for this session', reason='attendance_disabled')

    existing = find_record(db, session.id, job.student_id)
    if existing is not None and existing.status in NO_OP_STATUSES:
        return CheckinOutcome(J.SUCCEEDED.value, 'duplicate', existing.id)
    if session.start_time is None:
        raise InvalidOperationError('session has no resolved time range', reason='session_unscheduled')

    checkin_at = job.submitted_at
    window, source = _decide_source(db, session, checkin_at)
    is_late = _lateness(session, checkin_at)

    record, _ = get_or_create_record(
        db,
        session,
        job.student_id,
        student_name=job.student_name or enrollment.student_name,
        class_name=job.class_name or enrollment.class_name,
        major_name=job.major_name or enrollment.major_name,
    )
    payload = job.payload
    for _ in range(2):
        if record.status in NO_OP_STATUSES:
            return CheckinOutcome(J.SUCCEEDED.value, 'duplicate', record.id)
        if record.status != AttendanceStatus.NOT_STARTED.value:
            raise _rejected_by_status(record.status)
        try:
            transition_record(
                db,
                record.id,
                AttendanceStatus.NOT_STARTED.value,
                AttendanceStatus.PRESENT.value,
                checkin_time=checkin_at,
                is_late=is_late,
                verification_round=window.round if window is not None else None,
                window_id=window.id if window is not None else None,
                checkin_source=source,
                location=payload.get('location') or '',
                latitude=payload.get('latitude'),
                longitude=payload.get('longitude'),
                accuracy=payload.get('accuracy'),
                remark=payload.get('remark') or '',
            )
            db.commit()
            return CheckinOutcome(J.SUCCEEDED.value, 'late' if is_late else 'present', record.id)
        except InvalidOperationError as exc:
            if exc.reason != 'stale_status':
                raise
            db.rollback()
            db.refresh(record)
    raise _rejected_by_status(record.status)


def _claim(db: Session, job_id: int, worker_id: str, now: datetime) -> bool:
    claimed = (
        db.query(CheckinJob)
        .filter(CheckinJob.id == job_id, CheckinJob.status == J.QUEUED.value)
        .update(
            {
                CheckinJob.status: J.PROCESSING.value,
                CheckinJob.claimed_at: now,
                CheckinJob.claimed_by: worker_id,
                CheckinJob.attempts: CheckinJob.attempts + 1,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return claimed == 1


def _finish(db: Session, job_id: int, worker_id: str, now: datetime, **values) -> bool:
    if values.get('status') != J.QUEUED.value:
        values.setdefault('completed_at', now)
    else:
        values.setdefault('claimed_by', None)
        values.setdefault('claimed_at', None)
    updated = (
        db.query(CheckinJob)
        .filter(
            CheckinJob.id == job_id,
            CheckinJob.status == J.PROCESSING.value,
            CheckinJob.claimed_by == worker_id,
        )
        .update(values, synchronize_session=False)
    )
    db.commit()
    if updated == 0:
        logger.warning('checkin_job_claim_lost job_id=%s worker=%s', job_id, worker_id)
    return updated == 1


def _handle_transient(db: Session, job_id: int, attempts: int, worker_id: str, retry_engine: RetryEngine, now: datetime, error: str) -> str:
    retry_count = max(0, attempts - 1)
    if retry_engine.should_retry(retry_count):
        next_attempt_at = retry_engine.next_attempt(retry_count)
        _finish(
            db,
            job_id,
            worker_id,
            now,
            status=J.QUEUED.value,
            reason=None,
            last_error=error[:2000],
            next_attempt_at=next_attempt_at,
        )
        record_checkin_outcome('retried')
        logger.warning(
            'checkin_job_retry_scheduled job_id=%s attempts=%s next_attempt_at=%s error=%s',
            job_id,
            attempts,
            next_attempt_at.isoformat(),
            error,
        )
        return J.QUEUED.value
    _finish(db, job_id, worker_id, now, status=J.FAILED.value, reason='storage_unavailable', last_error=error[:2000])
    record_checkin_outcome('failed', 'storage_unavailable')
    logger.error('checkin_job_failed job_id=%s attempts=%s reason=storage_unavailable', job_id, attempts)
    return J.FAILED.value


def _process_claimed(
    db: Session,
    job_id: int,
    worker_id: str,
    retry_engine: RetryEngine,
    time_provider: TimeProvider,
    apply: Callable[[Session, CheckinJob], CheckinOutcome],
) -> str:
    job = db.get(CheckinJob, job_id)
    db.refresh(job)
    attempts, session_id, student_id = job.attempts, job.session_id, job.student_id
    now = time_provider.local_now()
    try:
        outcome = apply(db, job)
    except StorageError as exc:
        db.rollback()
        return _handle_transient(db, job_id, attempts, worker_id, retry_engine, now, exc.message)
    except SQLAlchemyError as exc:
        db.rollback()
        return _handle_transient(db, job_id, attempts, worker_id, retry_engine, now, f'{type(exc).__name__}: {exc}')
    except EngineError as exc:
        db.rollback()
        _finish(db, job_id, worker_id, now, status=J.REJECTED.value, reason=exc.reason, last_error=exc.message)
        record_checkin_outcome('rejected', exc.reason)
        logger.info(
            'checkin_job_processed job_id=%s session_id=%s student_id=%s status=rejected reason=%s',
            job_id,
            session_id,
            student_id,
            exc.reason,
        )
        return J.REJECTED.value
    except Exception as exc:
        db.rollback()
        logger.exception('checkin_job_crashed job_id=%s', job_id)
        _finish(db, job_id, worker_id, now, status=J.FAILED.value, reason='unknown_error', last_error=str(exc)[:2000])
        record_checkin_outcome('failed', 'unknown_error')
        return J.FAILED.value

    _finish(db, job_id, worker_id, now, status=outcome.status, reason=outcome.reason, record_id=outcome.record_id, last_error=None)
    record_checkin_outcome('succeeded')
    logger.info(
        'checkin_job_processed job_id=%s session_id=%s student_id=%s status=%s reason=%s',
        job_id,
        session_id,
        student_id,
        outcome.status,
        outcome.reason,
    )
    return outcome.status


def _default_retry_engine(time_provider: TimeProvider) -> RetryEngine:
    return RetryEngine(
        base_seconds=settings.checkin_retry_base_seconds,
        max_retries=settings.checkin_max_retries,
        time_provider=time_provider,
    )


@service_call
def process_checkin_job(
    db: Session,
    job_id: int,
    *,
    worker_id: str = 'inline',
    retry_engine: RetryEngine | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    """Claim and process one queued job now, ignoring its backoff schedule."""
    job = db.get(CheckinJob, job_id)
    if job is None:
        raise NotFoundError(f'check-in job {job_id} not found', reason='job_not_found')
    if job.status != J.QUEUED.value:
        return job_to_dict(job)
    if _claim(db, job_id, worker_id, time_provider.local_now()):
        _process_claimed(
            db,
            job_id,
            worker_id,
            retry_engine or _default_retry_engine(time_provider),
            time_provider,
            _apply_checkin,
        )
    job = db.get(CheckinJob, job_id)
    db.refresh(job)
    return job_to_dict(job)


def requeue_stale_jobs(db: Session, *, time_provider: TimeProvider = default_time_provider) -> int:
    """Return jobs whose worker vanished mid-processing to the queue."""
    now = time_provider.local_now()
    stale_before = now - timedelta(seconds=settings.checkin_visibility_timeout_seconds)
    requeued = (
        db.query(CheckinJob)
        .filter(CheckinJob.status == J.PROCESSING.value, CheckinJob.claimed_at < stale_before)
        .update(
            {
                CheckinJob.status: J.QUEUED.value,
                CheckinJob.claimed_by: None,
                CheckinJob.claimed_at: None,
                CheckinJob.next_attempt_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if requeued:
        logger.warning('checkin_jobs_requeued count=%s', requeued)
    return requeued


class CheckinWorker:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        worker_id: str | None = None,
        batch_size: int | None = None,
        retry_engine: RetryEngine | None = None,
        time_provider: TimeProvider = default_time_provider,
    ) -> None:
        self.session_factory = session_factory
        self.worker_id = worker_id or f'worker-{uuid.uuid4().hex[:8]}'
        self.batch_size = batch_size or settings.checkin_worker_batch_size
        self.time_provider = time_provider
        self.retry_engine = retry_engine or _default_retry_engine(time_provider)

    def run_once(self) -> dict[str, int]:
        db = self.session_factory()
        try:
            return self._tick(db)
        finally:
            db.close()

    def _tick(self, db: Session) -> dict[str, int]:
        counts = {'requeued': requeue_stale_jobs(db, time_provider=self.time_provider), 'claimed': 0}
        now = self.time_provider.local_now()
        job_ids = [
            row.id
            for row in db.query(CheckinJob.id)
            .filter(CheckinJob.status == J.QUEUED.value, CheckinJob.next_attempt_at <= now)
            .order_by(CheckinJob.next_attempt_at.asc(), CheckinJob.id.asc())
            .limit(self.batch_size)
            .all()
        ]
        for job_id in job_ids:
            if not _claim(db, job_id, self.worker_id, self.time_provider.local_now()):
                continue
            counts['claimed'] += 1
            status = _process_claimed(db, job_id, self.worker_id, self.retry_engine, self.time_provider, _apply_checkin)
            counts[status] = counts.get(status, 0) + 1
        return counts


@service_call
def get_checkin_status(db: Session, identity: UserIdentity, job_id: int) -> dict:
    job = db.get(CheckinJob, job_id)
    if job is None:
        raise NotFoundError(f'check-in job {job_id} not found', reason='job_not_found')
    if isinstance(identity, StudentIdentity) and identity.id != job.student_id:
        raise ForbiddenError('check-in job belongs to another student', reason='not_job_owner')
    return job_to_dict(job)


@service_call
def list_failed_jobs(db: Session, *, session_id: int | None = None, limit: int = 100) -> list[dict]:
    query = db.query(CheckinJob).filter(CheckinJob.status == J.FAILED.value)
    if session_id is not None:
        query = query.filter(CheckinJob.session_id == session_id)
    rows = query.order_by(CheckinJob.completed_at.desc(), CheckinJob.id.desc()).limit(max(1, min(limit, 500))).all()
    return [job_to_dict(row) for row in rows]


@service_call
def retry_failed_job(
    db: Session,
    identity: UserIdentity,
    job_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    if not isinstance(identity, TeacherIdentity):
        raise ForbiddenError('only teachers can retry failed check-ins', reason='teacher_required')
    job = db.get(CheckinJob, job_id)
    if job is None:
        raise NotFoundError(f'check-in job {job_id} not found', reason='job_not_found')
    now = time_provider.local_now()
    updated = (
        db.query(CheckinJob)
        .filter(CheckinJob.id == job_id, CheckinJob.status == J.FAILED.value)
        .update(
            {
                CheckinJob.status: J.QUEUED.value,
                CheckinJob.attempts: 0,
                CheckinJob.reason: None,
                CheckinJob.next_attempt_at: now,
                CheckinJob.completed_at: None,
                CheckinJob.claimed_by: None,
                CheckinJob.claimed_at: None,
            },
            synchronize_session=False,
        )
    )
    if updated == 0:
        raise InvalidOperationError(f'check-in job {job_id} is {job.status}, only failed jobs can be retried', reason='job_not_failed')
    db.commit()
    db.refresh(job)
    logger.info('checkin_job_requeued job_id=%s by=%s', job_id, identity.id)
    return job_to_dict(job)
