from __future__ import annotations

import json
import logging

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from attendance_engine.core.errors import (
    EngineError,
    InvalidOperationError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from attendance_engine.core.results import BatchResult, service_call
from attendance_engine.models import (
    CoursePeriod,
    CoursePeriodRule,
    CoursePeriodRuleCondition,
    CourseSession,
    Term,
)
from attendance_engine.schemas import (
    PeriodCreateRequest,
    PeriodUpdateRequest,
    RuleConditionRequest,
    RuleCreateRequest,
    RuleUpdateRequest,
    TermCreateRequest,
    TermUpdateRequest,
    parse_payload,
)
from attendance_engine.services.period_resolver import get_term, parse_hhmm
from attendance_engine.services.rule_conditions import validate_condition
from attendance_engine.services.session_registry import apply_schedule, refresh_pending_start_snapshots


logger = logging.getLogger(__name__)


def term_to_dict(term: Term) -> dict:
    return {
        'id': term.id,
        'code': term.code,
        'label': term.label,
        'start_date': term.start_date.isoformat(),
        'end_date': term.end_date.isoformat() if term.end_date else None,
        'is_active': bool(term.is_active),
    }


def rule_to_dict(rule: CoursePeriodRule) -> dict:
    return {
        'id': rule.id,
        'period_id': rule.period_id,
        'name': rule.name,
        'priority': rule.priority,
        'start_time': rule.start_time,
        'end_time': rule.end_time,
        'enabled': bool(rule.enabled),
        'effective_start_date': rule.effective_start_date.isoformat() if rule.effective_start_date else None,
        'effective_end_date': rule.effective_end_date.isoformat() if rule.effective_end_date else None,
        'conditions': [
            {'id': row.id, 'field': row.field, 'operator': row.operator, 'value': row.value}
            for row in rule.conditions
        ],
    }


def period_to_dict(period: CoursePeriod, *, with_rules: bool = False) -> dict:
    payload = {
        'id': period.id,
        'term_id': period.term_id,
        'period_no': period.period_no,
        'start_time': period.start_time,
        'end_time': period.end_time,
    }
    if with_rules:
        payload['rules'] = [rule_to_dict(rule) for rule in sorted(period.rules, key=lambda item: (item.priority, item.id))]
    return payload


def _check_range(start: str, end: str) -> None:
    if parse_hhmm(start) >= parse_hhmm(end):
        raise ValidationError(f'start {start} must be before end {end}', reason='invalid_time_range')


def _check_effective_dates(start, end) -> None:
    if start and end and start > end:
        raise ValidationError('effective start date must not be after end date', reason='invalid_effective_dates')


def _build_conditions(items: list[RuleConditionRequest]) -> list[CoursePeriodRuleCondition]:
    rows = []
    for item in items:
        condition = validate_condition(item.field, item.operator, item.value)
        rows.append(
            CoursePeriodRuleCondition(
                field=condition.field,
                operator=condition.operator,
                value_json=json.dumps(condition.value),
            )
        )
    return rows


def _get_period(db: Session, period_id: int) -> CoursePeriod:
    row = (
        db.query(CoursePeriod)
        .options(selectinload(CoursePeriod.rules).selectinload(CoursePeriodRule.conditions))
        .filter(CoursePeriod.id == period_id)
        .first()
    )
    if not row:
        raise NotFoundError(f'period {period_id} not found', reason='period_not_found', period_id=period_id)
    return row


def _get_rule(db: Session, rule_id: int) -> CoursePeriodRule:
    row = (
        db.query(CoursePeriodRule)
        .options(selectinload(CoursePeriodRule.conditions))
        .filter(CoursePeriodRule.id == rule_id)
        .first()
    )
    if not row:
        raise NotFoundError(f'rule {rule_id} not found', reason='rule_not_found', rule_id=rule_id)
    return row


def _deactivate_others(db: Session, term_id: int) -> None:
    db.query(Term).filter(Term.id != term_id, Term.is_active.is_(True)).update(
        {Term.is_active: False},
        synchronize_session=False,
    )


@service_call
def create_term(db: Session, request) -> dict:
    payload = parse_payload(TermCreateRequest, request)
    _check_effective_dates(payload.start_date, payload.end_date)
    if db.query(Term.id).filter(Term.code == payload.code).first():
        raise InvalidOperationError(f'term {payload.code} already exists', reason='duplicate_term')
    term = Term(
        code=payload.code,
        label=payload.label or payload.code,
        start_date=payload.start_date,
        end_date=payload.end_date,
        is_active=False,
    )
    db.add(term)
    db.flush()
    if payload.is_active:
        _deactivate_others(db, term.id)
        term.is_active = True
    try:
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        raise InvalidOperationError(f'term {payload.code} already exists', reason='duplicate_term') from exc
    db.refresh(term)
    logger.info('term_created term_id=%s code=%s active=%s', term.id, term.code, term.is_active)
    return term_to_dict(term)


@service_call
def update_term(db: Session, term_id: int, request) -> dict:
    payload = parse_payload(TermUpdateRequest, request)
    term = get_term(db, term_id)
    start_changed = payload.start_date is not None and payload.start_date != term.start_date
    if payload.label is not None:
        term.label = payload.label
    if payload.start_date is not None:
        term.start_date = payload.start_date
    if payload.end_date is not None:
        term.end_date = payload.end_date
    _check_effective_dates(term.start_date, term.end_date)
    db.commit()
    db.refresh(term)
    result = term_to_dict(term)
    if start_changed:
        result['recomputed'] = _recompute(db, term).to_dict()
    return result


@service_call
def delete_term(db: Session, term_id: int) -> dict:
    term = get_term(db, term_id)
    if db.query(CourseSession.id).filter(CourseSession.term_id == term.id).first():
        raise InvalidOperationError(f'term {term.code} still has sessions', reason='term_in_use')
    db.delete(term)
    db.commit()
    logger.info('term_deleted term_id=%s', term_id)
    return {'term_id': term_id, 'deleted': True}


@service_call
def set_active_term(db: Session, term_id: int) -> dict:
    term = get_term(db, term_id)
    _deactivate_others(db, term.id)
    term.is_active = True
    db.commit()
    db.refresh(term)
    logger.info('term_activated term_id=%s code=%s', term.id, term.code)
    return term_to_dict(term)


@service_call
def list_terms(db: Session) -> list[dict]:
    return [term_to_dict(row) for row in db.query(Term).order_by(Term.start_date.desc(), Term.id.desc()).all()]


@service_call
def create_period(db: Session, term_id: int, request) -> dict:
    payload = parse_payload(PeriodCreateRequest, request)
    term = get_term(db, term_id)
    _check_range(payload.start_time, payload.end_time)
    exists = (
        db.query(CoursePeriod.id)
        .filter(CoursePeriod.term_id == term.id, CoursePeriod.period_no == payload.period_no)
        .first()
    )
    if exists:
        raise InvalidOperationError(
            f'period {payload.period_no} already exists in term {term.code}',
            reason='duplicate_period',
        )
    period = CoursePeriod(
        term_id=term.id,
        period_no=payload.period_no,
        start_time=payload.start_time,
        end_time=payload.end_time,
    )
    db.add(period)
    db.commit()
    db.refresh(period)
    return period_to_dict(period)


@service_call
def update_period(db: Session, period_id: int, request) -> dict:
    payload = parse_payload(PeriodUpdateRequest, request)
    period = _get_period(db, period_id)
    start = payload.start_time or period.start_time
    end = payload.end_time or period.end_time
    _check_range(start, end)
    period.start_time = start
    period.end_time = end
    db.commit()
    db.refresh(period)
    result = period_to_dict(period)
    result['recomputed'] = _recompute(db, period.term_id).to_dict()
    return result


@service_call
def delete_period(db: Session, period_id: int) -> dict:
    period = _get_period(db, period_id)
    in_use = [
        row.id
        for row in db.query(CourseSession).filter(CourseSession.term_id == period.term_id).all()
        if period.period_no in row.period_numbers
    ]
    if in_use:
        raise InvalidOperationError(
            f'period {period.period_no} is used by {len(in_use)} sessions',
            reason='period_in_use',
            session_ids=in_use,
        )
    db.delete(period)
    db.commit()
    return {'period_id': period_id, 'deleted': True}


@service_call
def list_periods_with_rules(db: Session, term_id: int | None = None) -> list[dict]:
    term = get_term(db, term_id)
    rows = (
        db.query(CoursePeriod)
        .options(selectinload(CoursePeriod.rules).selectinload(CoursePeriodRule.conditions))
        .filter(CoursePeriod.term_id == term.id)
        .order_by(CoursePeriod.period_no.asc())
        .all()
    )
    return [period_to_dict(row, with_rules=True) for row in rows]


@service_call
def create_rule(db: Session, period_id: int, request) -> dict:
    payload = parse_payload(RuleCreateRequest, request)
    period = _get_period(db, period_id)
    _check_range(payload.start_time, payload.end_time)
    _check_effective_dates(payload.effective_start_date, payload.effective_end_date)
    rule = CoursePeriodRule(
        period_id=period.id,
        name=payload.name,
        priority=payload.priority,
        start_time=payload.start_time,
        end_time=payload.end_time,
        enabled=payload.enabled,
        effective_start_date=payload.effective_start_date,
        effective_end_date=payload.effective_end_date,
    )
    rule.conditions = _build_conditions(payload.conditions)
    db.add(rule)
    db.commit()
    db.refresh(rule)
    logger.info(
        'period_rule_created rule_id=%s period_id=%s priority=%s conditions=%s',
        rule.id,
        period.id,
        rule.priority,
        len(rule.conditions),
    )
    result = rule_to_dict(rule)
    result['recomputed'] = _recompute(db, period.term_id).to_dict()
    return result


@service_call
def update_rule(db: Session, rule_id: int, request) -> dict:
    payload = parse_payload(RuleUpdateRequest, request)
    rule = _get_rule(db, rule_id)
    changes = payload.model_dump(exclude_unset=True, exclude={'conditions'})
    for name, value in changes.items():
        if value is None and name not in ('effective_start_date', 'effective_end_date'):
            continue
        setattr(rule, name, value)
    _check_range(rule.start_time, rule.end_time)
    _check_effective_dates(rule.effective_start_date, rule.effective_end_date)
    if payload.conditions is not None:
        rule.conditions = _build_conditions(payload.conditions)
    db.commit()
    db.refresh(rule)
    period = _get_period(db, rule.period_id)
    result = rule_to_dict(rule)
    result['recomputed'] = _recompute(db, period.term_id).to_dict()
    return result


@service_call
def delete_rule(db: Session, rule_id: int) -> dict:
    rule = _get_rule(db, rule_id)
    term_id = _get_period(db, rule.period_id).term_id
    db.delete(rule)
    db.commit()
    logger.info('period_rule_deleted rule_id=%s', rule_id)
    return {'rule_id': rule_id, 'deleted': True, 'recomputed': _recompute(db, term_id).to_dict()}


def _recompute(db: Session, term: Term | int) -> BatchResult:
    term_row = get_term(db, term)
    outcome = BatchResult()
    session_ids = [
        row.id
        for row in db.query(CourseSession.id).filter(CourseSession.term_id == term_row.id).order_by(CourseSession.id).all()
    ]
    for session_id in session_ids:
        session = (
            db.query(CourseSession)
            .options(selectinload(CourseSession.teachers))
            .filter(CourseSession.id == session_id)
            .first()
        )
        try:
            previous_start = session.start_time
            apply_schedule(db, session, term_row)
            if session.start_time != previous_start:
                refresh_pending_start_snapshots(db, session)
            db.commit()
            outcome.add_success(session_id, {'start_time': session.start_time.isoformat()})
        except EngineError as exc:
            db.rollback()
            outcome.add_failure(session_id, exc)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.exception('term_session_recompute_storage_error session_id=%s', session_id)
            outcome.add_failure(session_id, StorageError('storage unavailable', reason='storage_unavailable', error=str(exc)))
    logger.info(
        'term_sessions_recomputed term_id=%s succeeded=%s failed=%s',
        term_row.id,
        len(outcome.succeeded),
        len(outcome.failed),
    )
    return outcome


@service_call
def recompute_term_sessions(db: Session, term_id: int | None = None) -> BatchResult:
    return _recompute(db, term_id)
