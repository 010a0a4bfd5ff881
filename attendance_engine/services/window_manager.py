from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.core.errors import InvalidOperationError, NotFoundError, ValidationError
from attendance_engine.core.identity import UserIdentity
from attendance_engine.core.results import service_call
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.metrics import timed_service
from attendance_engine.models import VerificationWindow
from attendance_engine.services.session_registry import get_session_row, require_session_teacher


logger = logging.getLogger(__name__)

WINDOW_OPEN = 'open'
WINDOW_EXPIRED = 'expired'


def _minutes_until(target: datetime, now: datetime) -> int:
    return max(1, math.ceil((target - now).total_seconds() / 60))


def latest_window(db: Session, session_id: int, *, opened_before: datetime | None = None) -> VerificationWindow | None:
    query = db.query(VerificationWindow).filter(VerificationWindow.session_id == session_id)
    if opened_before is not None:
        query = query.filter(VerificationWindow.opened_at <= opened_before)
    return query.order_by(VerificationWindow.round.desc()).first()


def window_open_at(db: Session, session_id: int, at: datetime) -> VerificationWindow | None:
    """The window that was open at `at`, if any.

    Only the newest round opened at or before `at` can be open; an older round
    is superseded the moment a newer one opens.
    """
    window = latest_window(db, session_id, opened_before=at)
    if window is None or at > window.valid_until:
        return None
    return window


def derive_status(window: VerificationWindow, latest_round: int, now: datetime) -> str:
    if window.round == latest_round and window.opened_at <= now <= window.valid_until:
        return WINDOW_OPEN
    return WINDOW_EXPIRED


def window_to_dict(window: VerificationWindow, status: str, now: datetime | None = None) -> dict:
    payload = {
        'id': window.id,
        'window_id': window.window_key,
        'session_id': window.session_id,
        'round': window.round,
        'opened_at': window.opened_at.isoformat(),
        'valid_until': window.valid_until.isoformat(),
        'duration_minutes': window.duration_minutes,
        'opened_by': window.opened_by,
        'status': status,
    }
    if now is not None and status == WINDOW_OPEN:
        payload['remaining_seconds'] = max(0, int((window.valid_until - now).total_seconds()))
    return payload


def _check_duration(duration_minutes: int | None) -> int:
    if duration_minutes is None:
        return settings.window_default_duration_minutes
    if not 1 <= int(duration_minutes) <= settings.window_max_duration_minutes:
        raise ValidationError(
            f'window duration must be between 1 and {settings.window_max_duration_minutes} minutes',
            reason='invalid_duration',
        )
    return int(duration_minutes)


def _check_open_preconditions(session, now: datetime) -> None:
    if not session.attendance_enabled:
        raise InvalidOperationError('attendance is disabled for this session', reason='attendance_disabled')
    if session.start_time is None or session.end_time is None:
        raise InvalidOperationError('session has no resolved time range', reason='session_unscheduled')
    if session.start_time.date() < now.date():
        raise InvalidOperationError(
            f'window cannot be opened: session date {session.start_time.date().isoformat()} is before today',
            reason='session_in_past',
        )
    eligible_at = session.start_time + timedelta(minutes=settings.window_open_min_delay_minutes)
    if now < session.start_time:
        raise InvalidOperationError(
            f'window not yet eligible to open: session starts in {_minutes_until(session.start_time, now)} minutes',
            reason='too_early',
            eligible_at=eligible_at.isoformat(),
        )
    if now < eligible_at:
        raise InvalidOperationError(
            'window not yet eligible to open: '
            f'windows open {settings.window_open_min_delay_minutes} minutes after the session starts, '
            f'{_minutes_until(eligible_at, now)} minutes remaining',
            reason='too_early',
            eligible_at=eligible_at.isoformat(),
        )
    if now > session.end_time:
        raise InvalidOperationError(
            f'window cannot be opened: session ended at {session.end_time.strftime("%H:%M")}',
            reason='session_ended',
        )


@service_call
@timed_service('window_manager.open_window')
def open_window(
    db: Session,
    identity: UserIdentity,
    session_id: int,
    duration_minutes: int | None = None,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> dict:
    duration = _check_duration(duration_minutes)
    session = get_session_row(db, session_id)
    teacher_id = require_session_teacher(session, identity)
    now = time_provider.local_now()
    _check_open_preconditions(session, now)

    previous = latest_window(db, session.id)
    if previous is not None:
        grace_until = previous.opened_at + timedelta(minutes=settings.window_grace_minutes)
        if now < grace_until:
            remaining = int(math.ceil((grace_until - now).total_seconds()))
            raise InvalidOperationError(
                f'round {previous.round} is still within its {settings.window_grace_minutes} minute grace period, '
                f'retry in {remaining} seconds',
                reason='grace_period',
                round=previous.round,
            )

    next_round = (previous.round if previous is not None else 0) + 1
    window = VerificationWindow(
        window_key=f'vw_{session.course_code}_{session.id}_{next_round}_{now.strftime("%Y%m%d%H%M%S")}',
        session_id=session.id,
        round=next_round,
        opened_at=now,
        valid_until=now + timedelta(minutes=duration),
        duration_minutes=duration,
        opened_by=teacher_id,
    )
    db.add(window)
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidOperationError(
            f'round {next_round} was opened concurrently for session {session.id}',
            reason='window_conflict',
            round=next_round,
        ) from exc
    db.refresh(window)
    logger.info(
        'verification_window_opened session_id=%s round=%s valid_until=%s by=%s',
        session.id,
        window.round,
        window.valid_until.isoformat(),
        teacher_id,
    )
    return window_to_dict(window, WINDOW_OPEN, now)


@service_call
def get_active_window(db: Session, session_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict | None:
    get_session_row(db, session_id)
    now = time_provider.local_now()
    window = window_open_at(db, session_id, now)
    if window is None:
        return None
    return window_to_dict(window, WINDOW_OPEN, now)


@service_call
def list_windows(db: Session, session_id: int, *, time_provider: TimeProvider = default_time_provider) -> list[dict]:
    get_session_row(db, session_id)
    now = time_provider.local_now()
    rows = (
        db.query(VerificationWindow)
        .filter(VerificationWindow.session_id == session_id)
        .order_by(VerificationWindow.round.asc())
        .all()
    )
    latest_round = rows[-1].round if rows else 0
    return [window_to_dict(row, derive_status(row, latest_round, now), now) for row in rows]


@service_call
def window_status(db: Session, window_id: int, *, time_provider: TimeProvider = default_time_provider) -> dict:
    window = db.query(VerificationWindow).filter(VerificationWindow.id == window_id).first()
    if not window:
        raise NotFoundError(f'window {window_id} not found', reason='window_not_found', window_id=window_id)
    now = time_provider.local_now()
    latest = latest_window(db, window.session_id)
    return window_to_dict(window, derive_status(window, latest.round, now), now)
