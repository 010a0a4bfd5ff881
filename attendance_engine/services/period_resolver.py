from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta
from typing import Any, Iterable

from sqlalchemy.orm import Session, selectinload

from attendance_engine.config import settings
from attendance_engine.core.errors import EngineError, NotFoundError, ValidationError
from attendance_engine.core.results import BatchResult, service_call
from attendance_engine.core.time_provider import TimeProvider, default_time_provider
from attendance_engine.models import CoursePeriod, CoursePeriodRule, Term
from attendance_engine.services.rule_conditions import (
    Condition,
    SessionContext,
    conditions_match,
    rule_is_effective,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TimeRange:
    period_no: int
    start: time
    end: time
    matched_rule_id: int | None = None
    start_at: datetime | None = None
    end_at: datetime | None = None

    def to_dict(self) -> dict:
        return {
            'period_no': self.period_no,
            'start': self.start.strftime('%H:%M'),
            'end': self.end.strftime('%H:%M'),
            'matched_rule_id': self.matched_rule_id,
            'start_at': self.start_at.isoformat() if self.start_at else None,
            'end_at': self.end_at.isoformat() if self.end_at else None,
        }


@dataclass(frozen=True)
class SessionSchedule:
    session_date: date
    start_at: datetime
    end_at: datetime
    ranges: tuple[TimeRange, ...] = ()

    @property
    def matched_rule_ids(self) -> list[int]:
        return [item.matched_rule_id for item in self.ranges if item.matched_rule_id is not None]

    def to_dict(self) -> dict:
        return {
            'session_date': self.session_date.isoformat(),
            'start_at': self.start_at.isoformat(),
            'end_at': self.end_at.isoformat(),
            'ranges': [item.to_dict() for item in self.ranges],
        }


@dataclass(frozen=True)
class ResolveRequest:
    period_no: int
    context: SessionContext = field(default_factory=SessionContext)
    teaching_week: int | None = None
    weekday: int | None = None


def parse_hhmm(value: str) -> time:
    try:
        hour_raw, minute_raw = (value or '').split(':', 1)
        hour = int(hour_raw)
        minute = int(minute_raw)
        return time(hour=hour, minute=minute)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'invalid HH:MM value: {value!r}', reason='invalid_time') from exc


def validate_week_and_weekday(teaching_week: int, weekday: int) -> None:
    if not isinstance(teaching_week, int) or not 1 <= teaching_week <= settings.teaching_week_max:
        raise ValidationError(
            f'teaching week must be between 1 and {settings.teaching_week_max}, got {teaching_week}',
            reason='invalid_week',
        )
    if not isinstance(weekday, int) or not 1 <= weekday <= 7:
        raise ValidationError(f'weekday must be between 1 and 7, got {weekday}', reason='invalid_weekday')


def session_date(term: Term, teaching_week: int, weekday: int) -> date:
    """Week 1, weekday 1 of a term is its start date."""
    validate_week_and_weekday(teaching_week, weekday)
    return term.start_date + timedelta(days=(teaching_week - 1) * 7 + (weekday - 1))


def get_term(db: Session, term: Term | int | str | None = None) -> Term:
    if isinstance(term, Term):
        return term
    if term is None:
        return get_active_term(db)
    query = db.query(Term)
    if isinstance(term, int):
        row = query.filter(Term.id == term).first()
    else:
        row = query.filter(Term.code == str(term)).first()
    if not row:
        raise NotFoundError(f'term {term} not found', reason='term_not_found', term=term)
    return row


def get_active_term(db: Session) -> Term:
    row = db.query(Term).filter(Term.is_active.is_(True)).order_by(Term.id.desc()).first()
    if not row:
        raise NotFoundError('no active term', reason='term_not_found')
    return row


def _load_periods(db: Session, term_id: int, period_numbers: Iterable[int] | None = None) -> dict[int, CoursePeriod]:
    query = (
        db.query(CoursePeriod)
        .options(selectinload(CoursePeriod.rules).selectinload(CoursePeriodRule.conditions))
        .filter(CoursePeriod.term_id == term_id)
    )
    if period_numbers is not None:
        query = query.filter(CoursePeriod.period_no.in_(list(period_numbers)))
    return {row.period_no: row for row in query.all()}


def _rule_conditions(rule: CoursePeriodRule) -> list[Condition]:
    return [Condition(field=row.field, operator=row.operator, value=row.value) for row in rule.conditions]


def match_rule(period: CoursePeriod, context: SessionContext, on_day: date) -> CoursePeriodRule | None:
    """Rank 1 is evaluated first; the first fully matching rule wins."""
    for rule in sorted(period.rules, key=lambda item: (item.priority, item.id)):
        if not rule_is_effective(rule.enabled, rule.effective_start_date, rule.effective_end_date, on_day):
            continue
        if conditions_match(_rule_conditions(rule), context):
            return rule
    return None


def resolve_period(
    period: CoursePeriod,
    context: SessionContext,
    *,
    on_day: date,
    placed_on: date | None = None,
) -> TimeRange:
    rule = match_rule(period, context, on_day)
    if rule is not None:
        start, end = parse_hhmm(rule.start_time), parse_hhmm(rule.end_time)
    else:
        start, end = parse_hhmm(period.start_time), parse_hhmm(period.end_time)
    start_at = end_at = None
    if placed_on is not None:
        start_at = datetime.combine(placed_on, start)
        end_at = datetime.combine(placed_on, end)
    return TimeRange(
        period_no=period.period_no,
        start=start,
        end=end,
        matched_rule_id=rule.id if rule is not None else None,
        start_at=start_at,
        end_at=end_at,
    )


def _coerce_context(context: SessionContext | dict | None) -> SessionContext:
    if isinstance(context, SessionContext):
        return context
    return SessionContext.from_mapping(context)


def compute_time_range(
    db: Session,
    term: Term | int | str | None,
    period_no: int,
    context: SessionContext | dict | None = None,
    *,
    teaching_week: int | None = None,
    weekday: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> TimeRange:
    term_row = get_term(db, term)
    ctx = _coerce_context(context)
    placed_on = None
    if teaching_week is not None and weekday is not None:
        placed_on = session_date(term_row, teaching_week, weekday)
    period = _load_periods(db, term_row.id, [period_no]).get(period_no)
    if period is None:
        raise NotFoundError(
            f'period {period_no} not found in term {term_row.code}',
            reason='period_not_found',
            term_id=term_row.id,
            period_no=period_no,
        )
    return resolve_period(period, ctx, on_day=placed_on or time_provider.today(), placed_on=placed_on)


def compute_session_schedule(
    db: Session,
    term: Term | int | str | None,
    periods: list[int],
    context: SessionContext | dict | None,
    teaching_week: int,
    weekday: int,
) -> SessionSchedule:
    """Span from the earliest period start to the latest period end on the session's day."""
    term_row = get_term(db, term)
    ctx = _coerce_context(context)
    if not periods:
        raise ValidationError('a session needs at least one period', reason='invalid_periods')
    placed_on = session_date(term_row, teaching_week, weekday)
    loaded = _load_periods(db, term_row.id, periods)
    missing = sorted({no for no in periods if no not in loaded})
    if missing:
        raise NotFoundError(
            f'periods {missing} not found in term {term_row.code}',
            reason='period_not_found',
            term_id=term_row.id,
            periods=missing,
        )
    ranges = tuple(resolve_period(loaded[no], ctx, on_day=placed_on, placed_on=placed_on) for no in periods)
    return SessionSchedule(
        session_date=placed_on,
        start_at=min(item.start_at for item in ranges),
        end_at=max(item.end_at for item in ranges),
        ranges=ranges,
    )


def _coerce_request(item: Any) -> ResolveRequest:
    if isinstance(item, ResolveRequest):
        return item
    if isinstance(item, dict):
        return ResolveRequest(
            period_no=int(item['period_no']),
            context=_coerce_context(item.get('context')),
            teaching_week=item.get('teaching_week'),
            weekday=item.get('weekday'),
        )
    if isinstance(item, (tuple, list)) and len(item) == 2:
        return ResolveRequest(period_no=int(item[0]), context=_coerce_context(item[1]))
    raise ValidationError(f'unsupported resolve request: {item!r}', reason='invalid_request')


def compute_batch(
    db: Session,
    term: Term | int | str | None,
    requests: list[Any],
    *,
    time_provider: TimeProvider = default_time_provider,
) -> BatchResult:
    term_row = get_term(db, term)
    periods = _load_periods(db, term_row.id)
    today = time_provider.today()
    outcome = BatchResult()
    for index, raw in enumerate(requests):
        try:
            request = _coerce_request(raw)
            period = periods.get(request.period_no)
            if period is None:
                raise NotFoundError(
                    f'period {request.period_no} not found in term {term_row.code}',
                    reason='period_not_found',
                    period_no=request.period_no,
                )
            placed_on = None
            if request.teaching_week is not None and request.weekday is not None:
                placed_on = session_date(term_row, request.teaching_week, request.weekday)
            resolved = resolve_period(period, request.context, on_day=placed_on or today, placed_on=placed_on)
            outcome.add_success(index, resolved)
        except (EngineError, KeyError, TypeError, ValueError) as exc:
            if not isinstance(exc, EngineError):
                exc = ValidationError(f'malformed resolve request: {exc}', reason='invalid_request')
            outcome.add_failure(index, exc)
    logger.info(
        'period_batch_resolved term_id=%s requested=%s failed=%s',
        term_row.id,
        len(requests),
        len(outcome.failed),
    )
    return outcome


@service_call
def resolve(
    db: Session,
    term: Term | int | str | None,
    period_no: int,
    context: SessionContext | dict | None = None,
    *,
    teaching_week: int | None = None,
    weekday: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> TimeRange:
    return compute_time_range(
        db,
        term,
        period_no,
        context,
        teaching_week=teaching_week,
        weekday=weekday,
        time_provider=time_provider,
    )


@service_call
def resolve_session_range(
    db: Session,
    term: Term | int | str | None,
    periods: list[int],
    context: SessionContext | dict | None,
    teaching_week: int,
    weekday: int,
) -> SessionSchedule:
    return compute_session_schedule(db, term, periods, context, teaching_week, weekday)


@service_call
def resolve_batch(
    db: Session,
    term: Term | int | str | None,
    requests: list[Any],
    *,
    time_provider: TimeProvider = default_time_provider,
) -> BatchResult:
    return compute_batch(db, term, requests, time_provider=time_provider)
