from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = 'validation_error'
    NOT_FOUND = 'not_found'
    UNAUTHORIZED = 'unauthorized'
    FORBIDDEN = 'forbidden'
    INVALID_OPERATION = 'invalid_operation'
    STORAGE = 'storage_error'
    UNKNOWN = 'unknown_error'


class EngineError(Exception):
    """Base of every expected failure raised inside the engine.

    `reason` is a short machine-readable code (``not_enrolled``, ``too_late``...)
    that batch outcomes and queue jobs persist; `message` is for humans.
    """

    kind: ErrorKind = ErrorKind.UNKNOWN

    def __init__(self, message: str, *, reason: str | None = None, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.reason = reason or self.kind.value
        self.details = details


class ValidationError(EngineError):
    kind = ErrorKind.VALIDATION


class NotFoundError(EngineError):
    kind = ErrorKind.NOT_FOUND


class UnauthorizedError(EngineError):
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(EngineError):
    kind = ErrorKind.FORBIDDEN


class InvalidOperationError(EngineError):
    kind = ErrorKind.INVALID_OPERATION


class StorageError(EngineError):
    kind = ErrorKind.STORAGE


class UnknownError(EngineError):
    kind = ErrorKind.UNKNOWN
