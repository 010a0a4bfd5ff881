from datetime import date
from typing import Any, Literal, TypeVar

from pydantic import BaseModel, Field, ValidationError as PydanticValidationError, field_validator

from attendance_engine.core.errors import ValidationError


HHMM_PATTERN = r'^([01]\d|2[0-3]):[0-5]\d$'

ModelT = TypeVar('ModelT', bound=BaseModel)


def parse_payload(model_cls: type[ModelT], data: Any) -> ModelT:
    """Accept a model instance or a plain mapping and return a validated model."""
    if isinstance(data, model_cls):
        return data
    if isinstance(data, BaseModel):
        data = data.model_dump()
    try:
        return model_cls.model_validate(data or {})
    except PydanticValidationError as exc:
        errors = [
            {'field': '.'.join(str(part) for part in item.get('loc', ())), 'message': item.get('msg', '')}
            for item in exc.errors()
        ]
        first = errors[0] if errors else {'field': '', 'message': 'invalid payload'}
        raise ValidationError(
            f"invalid {model_cls.__name__}: {first['field']} {first['message']}".strip(),
            reason='invalid_payload',
            errors=errors,
        ) from exc


class CheckinPayload(BaseModel):
    location: str = Field(default='', max_length=255)
    latitude: float | None = Field(default=None, ge=-90, le=90)
    longitude: float | None = Field(default=None, ge=-180, le=180)
    accuracy: float | None = Field(default=None, ge=0)
    remark: str = Field(default='', max_length=500)
    client_request_id: str | None = Field(default=None, max_length=120)


class LeaveAttachmentRef(BaseModel):
    storage_ref: str = Field(min_length=1, max_length=255)
    file_name: str = Field(default='', max_length=255)


class LeaveRequest(BaseModel):
    leave_type: Literal['sick', 'personal', 'emergency', 'other']
    reason: str
    attachments: list[LeaveAttachmentRef] = Field(default_factory=list, max_length=10)

    @field_validator('reason')
    @classmethod
    def _reason_not_blank(cls, value: str) -> str:
        value = (value or '').strip()
        if not value:
            raise ValueError('reason must not be empty')
        return value


class ApprovalRequest(BaseModel):
    decision: Literal['approved', 'rejected']
    comment: str = ''


class TermCreateRequest(BaseModel):
    code: str = Field(min_length=1, max_length=40)
    label: str = ''
    start_date: date
    end_date: date | None = None
    is_active: bool = False


class TermUpdateRequest(BaseModel):
    label: str | None = None
    start_date: date | None = None
    end_date: date | None = None


class PeriodCreateRequest(BaseModel):
    period_no: int = Field(ge=1, le=20)
    start_time: str = Field(pattern=HHMM_PATTERN)
    end_time: str = Field(pattern=HHMM_PATTERN)


class PeriodUpdateRequest(BaseModel):
    start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)


class RuleConditionRequest(BaseModel):
    field: str
    operator: str
    value: Any = None


class RuleCreateRequest(BaseModel):
    name: str = ''
    priority: int = Field(default=100, ge=1)
    start_time: str = Field(pattern=HHMM_PATTERN)
    end_time: str = Field(pattern=HHMM_PATTERN)
    enabled: bool = True
    effective_start_date: date | None = None
    effective_end_date: date | None = None
    conditions: list[RuleConditionRequest] = Field(default_factory=list)


class RuleUpdateRequest(BaseModel):
    name: str | None = None
    priority: int | None = Field(default=None, ge=1)
    start_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    end_time: str | None = Field(default=None, pattern=HHMM_PATTERN)
    enabled: bool | None = None
    effective_start_date: date | None = None
    effective_end_date: date | None = None
    conditions: list[RuleConditionRequest] | None = None


class SessionTeacherRequest(BaseModel):
    teacher_id: str = Field(min_length=1, max_length=64)
    teacher_name: str = ''


class SessionCreateRequest(BaseModel):
    external_id: str = Field(min_length=1, max_length=120)
    course_code: str = Field(min_length=1, max_length=60)
    course_name: str = ''
    term_id: int
    teaching_week: int = Field(ge=1, le=30)
    weekday: int = Field(ge=1, le=7)
    periods: list[int] = Field(min_length=1)
    location: str = ''
    teaching_unit: str = ''
    class_name: str = ''
    major_name: str = ''
    teachers: list[SessionTeacherRequest] = Field(min_length=1)
    attendance_enabled: bool = True
    allow_self_checkin: bool = False


class SessionUpdateRequest(BaseModel):
    course_name: str | None = None
    periods: list[int] | None = Field(default=None, min_length=1)
    location: str | None = None
    teaching_unit: str | None = None
    class_name: str | None = None
    major_name: str | None = None
    teachers: list[SessionTeacherRequest] | None = Field(default=None, min_length=1)
    allow_self_checkin: bool | None = None


class EnrollmentRequest(BaseModel):
    student_id: str = Field(min_length=1, max_length=64)
    student_name: str = ''
    class_name: str = ''
    major_name: str = ''


class WindowOpenRequest(BaseModel):
    duration_minutes: int | None = Field(default=None, ge=1)


class AttendanceEnabledRequest(BaseModel):
    enabled: bool


class MakeupRequest(BaseModel):
    session_ids: list[int] = Field(min_length=1)
    student_ids: list[str] | None = None
    reason: str = ''


class RescheduleRequest(BaseModel):
    session_ids: list[int] = Field(min_length=1)
    target_week: int
    target_weekday: int
    term_id: int


class CourseRescheduleRequest(BaseModel):
    course_code: str
    term_id: int
    from_week: int
    target_week: int
    from_weekday: int | None = None
    target_weekday: int | None = None


class TruantRequest(BaseModel):
    reason: str = ''


class PeriodResolveRequest(BaseModel):
    term_id: int | None = None
    period_no: int = Field(ge=1)
    context: dict[str, Any] = Field(default_factory=dict)
    teaching_week: int | None = None
    weekday: int | None = None


class PeriodBatchResolveRequest(BaseModel):
    term_id: int | None = None
    requests: list[dict[str, Any]] = Field(min_length=1)
