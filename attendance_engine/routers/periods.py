from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from attendance_engine.core.identity import TeacherIdentity
from attendance_engine.db import get_db
from attendance_engine.routers.deps import EndpointNameRoute, result_to_response, teacher_identity
from attendance_engine.schemas import (
    PeriodBatchResolveRequest,
    PeriodCreateRequest,
    PeriodResolveRequest,
    PeriodUpdateRequest,
    RuleCreateRequest,
    RuleUpdateRequest,
    TermCreateRequest,
    TermUpdateRequest,
)
from attendance_engine.services import period_config_service, period_resolver


router = APIRouter(prefix='/api/periods', tags=['Periods'], route_class=EndpointNameRoute)


@router.get('/terms')
def list_terms(db: Session = Depends(get_db)):
    return result_to_response(period_config_service.list_terms(db))


@router.post('/terms', status_code=201)
def create_term(payload: TermCreateRequest, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.create_term(db, payload))


@router.patch('/terms/{term_id}')
def update_term(
    term_id: int,
    payload: TermUpdateRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(period_config_service.update_term(db, term_id, payload))


@router.delete('/terms/{term_id}')
def delete_term(term_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.delete_term(db, term_id))


@router.post('/terms/{term_id}/activate')
def activate_term(term_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.set_active_term(db, term_id))


@router.post('/terms/{term_id}/recompute')
def recompute_term(term_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.recompute_term_sessions(db, term_id))


@router.get('')
def list_periods(term_id: int | None = Query(default=None), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.list_periods_with_rules(db, term_id))


@router.post('/terms/{term_id}/periods', status_code=201)
def create_period(
    term_id: int,
    payload: PeriodCreateRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(period_config_service.create_period(db, term_id, payload))


@router.patch('/{period_id}')
def update_period(
    period_id: int,
    payload: PeriodUpdateRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(period_config_service.update_period(db, period_id, payload))


@router.delete('/{period_id}')
def delete_period(period_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.delete_period(db, period_id))


@router.post('/{period_id}/rules', status_code=201)
def create_rule(
    period_id: int,
    payload: RuleCreateRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(period_config_service.create_rule(db, period_id, payload))


@router.patch('/rules/{rule_id}')
def update_rule(
    rule_id: int,
    payload: RuleUpdateRequest,
    _: TeacherIdentity = Depends(teacher_identity),
    db: Session = Depends(get_db),
):
    return result_to_response(period_config_service.update_rule(db, rule_id, payload))


@router.delete('/rules/{rule_id}')
def delete_rule(rule_id: int, _: TeacherIdentity = Depends(teacher_identity), db: Session = Depends(get_db)):
    return result_to_response(period_config_service.delete_rule(db, rule_id))


@router.post('/resolve')
def resolve_period(payload: PeriodResolveRequest, db: Session = Depends(get_db)):
    return result_to_response(
        period_resolver.resolve(
            db,
            payload.term_id,
            payload.period_no,
            payload.context,
            teaching_week=payload.teaching_week,
            weekday=payload.weekday,
        )
    )


@router.post('/resolve/batch')
def resolve_periods(payload: PeriodBatchResolveRequest, db: Session = Depends(get_db)):
    return result_to_response(period_resolver.resolve_batch(db, payload.term_id, payload.requests))
