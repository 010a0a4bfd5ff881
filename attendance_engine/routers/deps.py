from __future__ import annotations

from typing import Any

from fastapi import Depends, Header, HTTPException
from fastapi.routing import APIRoute
from starlette.requests import Request

from attendance_engine.core.errors import EngineError, ErrorKind
from attendance_engine.core.identity import TeacherIdentity, UserIdentity, build_identity, require_teacher
from attendance_engine.core.results import BatchResult, Result, ServiceError
from attendance_engine.db import current_endpoint


HTTP_STATUS_BY_KIND = {
    ErrorKind.VALIDATION: 400,
    ErrorKind.UNAUTHORIZED: 401,
    ErrorKind.FORBIDDEN: 403,
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.INVALID_OPERATION: 409,
    ErrorKind.STORAGE: 503,
    ErrorKind.UNKNOWN: 500,
}


class EndpointNameRoute(APIRoute):
    def get_route_handler(self):
        original_handler = super().get_route_handler()

        async def custom_handler(request: Request):
            token = current_endpoint.set(f'{request.method} {self.path}')
            try:
                return await original_handler(request)
            finally:
                current_endpoint.reset(token)

        return custom_handler


def error_to_http(error: ServiceError) -> HTTPException:
    return HTTPException(status_code=HTTP_STATUS_BY_KIND.get(error.kind, 500), detail=error.to_dict())


def _serialize(value: Any) -> Any:
    if isinstance(value, BatchResult):
        return value.to_dict()
    if hasattr(value, 'to_dict'):
        return value.to_dict()
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    return value


def result_to_response(result: Result) -> Any:
    if not result.ok:
        raise error_to_http(result.error)
    return _serialize(result.value)


def current_identity(
    x_user_id: str | None = Header(default=None),
    x_user_type: str | None = Header(default=None),
    x_user_name: str | None = Header(default=None),
    x_user_class: str | None = Header(default=None),
    x_user_major: str | None = Header(default=None),
) -> UserIdentity:
    try:
        return build_identity(
            x_user_type or '',
            x_user_id or '',
            name=x_user_name or '',
            class_name=x_user_class or '',
            major_name=x_user_major or '',
        )
    except EngineError as exc:
        raise error_to_http(ServiceError.from_exception(exc)) from exc


def teacher_identity(identity: UserIdentity = Depends(current_identity)) -> TeacherIdentity:
    try:
        return require_teacher(identity)
    except EngineError as exc:
        raise error_to_http(ServiceError.from_exception(exc)) from exc
