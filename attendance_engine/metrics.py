from __future__ import annotations

import functools
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from attendance_engine.config import settings


logger = logging.getLogger('attendance_engine.metrics')

CHECKIN_OUTCOMES = ('submitted', 'duplicate', 'succeeded', 'rejected', 'retried', 'failed')


@dataclass
class CheckinMinute:
    """Check-in pipeline activity bucketed by wall-clock minute."""

    minute_start: datetime
    outcomes: dict[str, int] = field(default_factory=dict)
    reasons: dict[str, int] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not self.outcomes


class MetricsExporter:
    def export_checkin_minute(self, minute: CheckinMinute) -> None:
        raise NotImplementedError


class LogMetricsExporter(MetricsExporter):
    def export_checkin_minute(self, minute: CheckinMinute) -> None:
        counts = ' '.join(f'{name}={minute.outcomes.get(name, 0)}' for name in CHECKIN_OUTCOMES)
        top_reasons = sorted(minute.reasons.items(), key=lambda item: (-item[1], item[0]))[:5]
        logger.info(
            'checkin_metrics minute=%s %s reasons=%s',
            minute.minute_start.isoformat(),
            counts,
            ','.join(f'{reason}:{count}' for reason, count in top_reasons) or '-',
        )


_exporter: MetricsExporter = LogMetricsExporter()


def set_metrics_exporter(exporter: MetricsExporter) -> None:
    global _exporter
    _exporter = exporter


class CheckinOutcomeCounter:
    """Counts pipeline outcomes per minute and hands full minutes to the exporter.

    Rejection and failure reasons are tallied next to the outcome totals so the
    export shows why check-ins were turned away, not just how many.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._lock = threading.Lock()
        self._current: CheckinMinute | None = None

    def _minute_of(self, ts: float) -> datetime:
        return datetime.fromtimestamp(int(ts // 60) * 60, tz=timezone.utc)

    def _export_locked(self) -> None:
        minute, self._current = self._current, None
        if minute is None or minute.is_empty():
            return
        try:
            _exporter.export_checkin_minute(minute)
        except Exception:
            logger.exception('metrics_export_failed minute=%s', minute.minute_start.isoformat())

    def record(self, outcome: str, reason: str | None = None) -> None:
        minute_start = self._minute_of(self._clock())
        with self._lock:
            if self._current is not None and self._current.minute_start != minute_start:
                self._export_locked()
            if self._current is None:
                self._current = CheckinMinute(minute_start=minute_start)
            self._current.outcomes[outcome] = self._current.outcomes.get(outcome, 0) + 1
            if reason:
                self._current.reasons[reason] = self._current.reasons.get(reason, 0) + 1

    def snapshot(self) -> CheckinMinute | None:
        with self._lock:
            if self._current is None:
                return None
            return CheckinMinute(
                minute_start=self._current.minute_start,
                outcomes=dict(self._current.outcomes),
                reasons=dict(self._current.reasons),
            )

    def flush(self) -> None:
        with self._lock:
            self._export_locked()


checkin_counter = CheckinOutcomeCounter()


def record_checkin_outcome(outcome: str, reason: str | None = None) -> None:
    checkin_counter.record(outcome, reason)


def flush_checkin_metrics() -> None:
    checkin_counter.flush()


def timed_service(label: str, *, threshold_ms: int | None = None) -> Callable[[Callable[..., object]], Callable[..., object]]:
    """Log calls slower than `threshold_ms` (default `metrics_slow_ms`)."""

    def decorator(func: Callable[..., object]) -> Callable[..., object]:
        threshold_value = threshold_ms if threshold_ms is not None else settings.metrics_slow_ms

        @functools.wraps(func)
        def wrapper(*args: object, **kwargs: object):
            started = time.perf_counter()
            try:
                return func(*args, **kwargs)
            finally:
                duration_ms = (time.perf_counter() - started) * 1000.0
                if duration_ms >= threshold_value:
                    logger.info('service_timer label=%s duration_ms=%.2f event=service', label, duration_ms)

        return wrapper

    return decorator


def run_timed_job(label: str, fn: Callable[[], object]) -> object:
    started = time.perf_counter()
    logger.info('job_start name=%s', label)
    status = 'ok'
    try:
        return fn()
    except Exception:
        status = 'failed'
        logger.exception('job_failed name=%s duration_ms=%.2f', label, (time.perf_counter() - started) * 1000.0)
        raise
    finally:
        logger.info('job_end name=%s status=%s duration_ms=%.2f', label, status, (time.perf_counter() - started) * 1000.0)
