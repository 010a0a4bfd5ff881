from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from attendance_engine.core.errors import UnauthorizedError


@dataclass(frozen=True)
class StudentIdentity:
    id: str
    name: str = ''
    class_name: str = ''
    major_name: str = ''

    @property
    def user_type(self) -> str:
        return 'student'


@dataclass(frozen=True)
class TeacherIdentity:
    id: str
    name: str = ''

    @property
    def user_type(self) -> str:
        return 'teacher'


UserIdentity = Union[StudentIdentity, TeacherIdentity]


def build_identity(user_type: str, user_id: str, name: str = '', class_name: str = '', major_name: str = '') -> UserIdentity:
    normalized_type = (user_type or '').strip().lower()
    user_id = (user_id or '').strip()
    if not user_id:
        raise UnauthorizedError('Missing user id', reason='missing_identity')
    if normalized_type == 'student':
        return StudentIdentity(id=user_id, name=name, class_name=class_name, major_name=major_name)
    if normalized_type == 'teacher':
        return TeacherIdentity(id=user_id, name=name)
    raise UnauthorizedError(f'Unsupported user type: {user_type!r}', reason='unsupported_user_type')


def require_student(identity: UserIdentity) -> StudentIdentity:
    if not isinstance(identity, StudentIdentity):
        raise UnauthorizedError('Student identity required', reason='student_required')
    return identity


def require_teacher(identity: UserIdentity) -> TeacherIdentity:
    if not isinstance(identity, TeacherIdentity):
        raise UnauthorizedError('Teacher identity required', reason='teacher_required')
    return identity
