"""Interpreter for period rule conditions.

A condition is a ``(field, operator, value)`` triple evaluated against a
`SessionContext`. A rule matches when every one of its conditions holds; a
rule without conditions matches every context.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Callable, Iterable

from attendance_engine.core.errors import ValidationError


TEXT_FIELDS = frozenset(
    {'course_code', 'course_name', 'teaching_unit', 'class_name', 'major_name', 'teacher_id', 'location'}
)
NUMERIC_FIELDS = frozenset({'teaching_week', 'weekday'})
CONTEXT_FIELDS = TEXT_FIELDS | NUMERIC_FIELDS

LIST_OPERATORS = frozenset({'in', 'not_in'})
ORDER_OPERATORS = frozenset({'>', '>=', '<', '<='})
OPERATORS = frozenset({'=', '!='}) | LIST_OPERATORS | ORDER_OPERATORS | {'between'}


@dataclass(frozen=True)
class SessionContext:
    course_code: str | None = None
    course_name: str | None = None
    teaching_unit: str | None = None
    class_name: str | None = None
    major_name: str | None = None
    teacher_id: str | None = None
    location: str | None = None
    teaching_week: int | None = None
    weekday: int | None = None

    def get(self, field: str) -> Any:
        value = getattr(self, field, None)
        if isinstance(value, str) and value == '':
            return None
        return value

    def to_dict(self) -> dict:
        return {key: value for key, value in asdict(self).items() if value not in (None, '')}

    @classmethod
    def from_mapping(cls, data: dict | None) -> 'SessionContext':
        data = data or {}
        unknown = set(data) - CONTEXT_FIELDS
        if unknown:
            raise ValidationError(f'unknown context fields: {sorted(unknown)}', reason='invalid_context')
        values = dict(data)
        for field in NUMERIC_FIELDS:
            if values.get(field) is not None:
                values[field] = _to_number(field, values[field])
        return cls(**values)


@dataclass(frozen=True)
class Condition:
    field: str
    operator: str
    value: Any


def _to_number(field: str, value: Any) -> float:
    if isinstance(value, bool):
        raise ValidationError(f'{field} expects a number', reason='invalid_condition')
    try:
        return float(value) if not isinstance(value, int) else value
    except (TypeError, ValueError) as exc:
        raise ValidationError(f'{field} expects a number, got {value!r}', reason='invalid_condition') from exc


def _normalize(field: str, value: Any) -> Any:
    if field in NUMERIC_FIELDS:
        return _to_number(field, value)
    return str(value)


def validate_condition(field: str, operator: str, value: Any) -> Condition:
    """Check a condition before it is stored; raises `ValidationError`."""
    if field not in CONTEXT_FIELDS:
        raise ValidationError(f'unknown condition field: {field}', reason='invalid_condition', field=field)
    if operator not in OPERATORS:
        raise ValidationError(f'unknown condition operator: {operator}', reason='invalid_condition', operator=operator)
    if operator in LIST_OPERATORS:
        if not isinstance(value, list) or not value:
            raise ValidationError(f'{operator} expects a non-empty list', reason='invalid_condition')
        for item in value:
            _normalize(field, item)
    elif operator == 'between':
        if field not in NUMERIC_FIELDS:
            raise ValidationError(f'between is only valid for {sorted(NUMERIC_FIELDS)}', reason='invalid_condition')
        if not isinstance(value, list) or len(value) != 2:
            raise ValidationError('between expects [low, high]', reason='invalid_condition')
        low, high = (_to_number(field, item) for item in value)
        if low > high:
            raise ValidationError('between expects low <= high', reason='invalid_condition')
    elif operator in ORDER_OPERATORS:
        if field not in NUMERIC_FIELDS:
            raise ValidationError(f'{operator} is only valid for {sorted(NUMERIC_FIELDS)}', reason='invalid_condition')
        _to_number(field, value)
    else:
        if value is None or isinstance(value, (list, dict)):
            raise ValidationError(f'{operator} expects a scalar value', reason='invalid_condition')
        _normalize(field, value)
    return Condition(field=field, operator=operator, value=value)


_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    '>': lambda actual, expected: actual > expected,
    '>=': lambda actual, expected: actual >= expected,
    '<': lambda actual, expected: actual < expected,
    '<=': lambda actual, expected: actual <= expected,
}


def evaluate_condition(condition: Condition, context: SessionContext) -> bool:
    actual = context.get(condition.field)
    if actual is None:
        return False
    field = condition.field
    actual = _normalize(field, actual)
    operator = condition.operator
    value = condition.value
    if operator == '=':
        return actual == _normalize(field, value)
    if operator == '!=':
        return actual != _normalize(field, value)
    if operator == 'in':
        return actual in [_normalize(field, item) for item in value]
    if operator == 'not_in':
        return actual not in [_normalize(field, item) for item in value]
    if operator == 'between':
        low, high = (_to_number(field, item) for item in value)
        return low <= actual <= high
    comparator = _COMPARATORS.get(operator)
    if comparator is None:
        return False
    return comparator(actual, _to_number(field, value))


def conditions_match(conditions: Iterable[Condition], context: SessionContext) -> bool:
    return all(evaluate_condition(condition, context) for condition in conditions)


def rule_is_effective(enabled: bool, effective_start: date | None, effective_end: date | None, on_day: date) -> bool:
    if not enabled:
        return False
    if effective_start and on_day < effective_start:
        return False
    if effective_end and on_day > effective_end:
        return False
    return True
