from __future__ import annotations

import functools
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Generic, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from attendance_engine.core.errors import EngineError, ErrorKind, StorageError


logger = logging.getLogger(__name__)

T = TypeVar('T')


@dataclass(frozen=True)
class ServiceError:
    kind: ErrorKind
    message: str
    reason: str = ''
    details: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(cls, exc: EngineError) -> 'ServiceError':
        return cls(kind=exc.kind, message=exc.message, reason=exc.reason, details=dict(exc.details))

    def to_dict(self) -> dict:
        return {
            'kind': self.kind.value,
            'reason': self.reason or self.kind.value,
            'message': self.message,
            'details': self.details,
        }


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either a value or one typed error, never both."""

    value: T | None = None
    error: ServiceError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T | None = None) -> 'Result[T]':
        return cls(value=value)

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, *, reason: str | None = None, **details: Any) -> 'Result[T]':
        return cls(error=ServiceError(kind=kind, message=message, reason=reason or kind.value, details=details))

    @classmethod
    def from_exception(cls, exc: EngineError) -> 'Result[T]':
        return cls(error=ServiceError.from_exception(exc))

    def unwrap(self) -> T:
        if self.error is not None:
            raise RuntimeError(f'unwrap on failed result: {self.error.kind.value} {self.error.message}')
        return self.value  # type: ignore[return-value]


@dataclass
class BatchItem:
    key: Any
    ok: bool
    value: Any = None
    error: ServiceError | None = None

    def to_dict(self) -> dict:
        payload: dict[str, Any] = {'key': self.key, 'ok': self.ok}
        if self.ok:
            payload['value'] = self.value
        elif self.error is not None:
            payload['error'] = self.error.to_dict()
        return payload


@dataclass
class BatchResult:
    items: list[BatchItem] = field(default_factory=list)

    @property
    def succeeded(self) -> list[BatchItem]:
        return [item for item in self.items if item.ok]

    @property
    def failed(self) -> list[BatchItem]:
        return [item for item in self.items if not item.ok]

    def add_success(self, key: Any, value: Any = None) -> None:
        self.items.append(BatchItem(key=key, ok=True, value=value))

    def add_failure(self, key: Any, exc: EngineError) -> None:
        self.items.append(BatchItem(key=key, ok=False, error=ServiceError.from_exception(exc)))

    def to_dict(self) -> dict:
        return {
            'succeeded': [item.to_dict() for item in self.succeeded],
            'failed': [item.to_dict() for item in self.failed],
            'succeeded_count': len(self.succeeded),
            'failed_count': len(self.failed),
        }


def _find_session(args: tuple, kwargs: dict) -> Session | None:
    candidate = kwargs.get('db')
    if isinstance(candidate, Session):
        return candidate
    if args and isinstance(args[0], Session):
        return args[0]
    return None


def _rollback_quietly(db: Session | None) -> None:
    if db is None:
        return
    try:
        db.rollback()
    except SQLAlchemyError:
        logger.exception('service_rollback_failed')


def service_call(func: Callable[..., T]) -> Callable[..., Result[T]]:
    """Run an engine operation and fold its outcome into a `Result`.

    Expected failures are raised as `EngineError` subclasses inside the
    operation; database faults become `StorageError`; anything else is logged
    and reported as `UnknownError`.
    """

    @functools.wraps(func)
    def wrapper(*args: Any, **kwargs: Any) -> Result[T]:
        db = _find_session(args, kwargs)
        try:
            return Result.success(func(*args, **kwargs))
        except EngineError as exc:
            _rollback_quietly(db)
            logger.info('service_rejected op=%s kind=%s reason=%s', func.__name__, exc.kind.value, exc.reason)
            return Result.from_exception(exc)
        except SQLAlchemyError as exc:
            _rollback_quietly(db)
            logger.exception('service_storage_error op=%s', func.__name__)
            return Result.from_exception(StorageError('Storage unavailable', reason='storage_unavailable', error=str(exc)))
        except Exception as exc:
            _rollback_quietly(db)
            logger.exception('service_unknown_error op=%s', func.__name__)
            return Result.failure(ErrorKind.UNKNOWN, 'Unexpected engine failure', error=str(exc))

    wrapper.raw = func  # type: ignore[attr-defined]
    return wrapper
