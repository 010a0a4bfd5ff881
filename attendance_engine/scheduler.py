import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from attendance_engine.config import settings
from attendance_engine.db import SessionLocal
from attendance_engine.metrics import flush_checkin_metrics, run_timed_job
from attendance_engine.services.attendance_state import sweep_ended_sessions
from attendance_engine.services.checkin_pipeline import CheckinWorker


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)

_worker = CheckinWorker(SessionLocal)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task) -> None:
    run_timed_job(label, lambda: _with_db(task))


def checkin_worker_job():
    counts = _worker.run_once()
    if counts.get('claimed') or counts.get('requeued'):
        logger.info(
            'checkin_worker_tick worker=%s claimed=%s requeued=%s succeeded=%s rejected=%s queued=%s failed=%s',
            _worker.worker_id,
            counts.get('claimed', 0),
            counts.get('requeued', 0),
            counts.get('succeeded', 0),
            counts.get('rejected', 0),
            counts.get('queued', 0),
            counts.get('failed', 0),
        )


def absence_sweep_job():
    _run_job('absence_sweep', lambda db: sweep_ended_sessions(db))


def checkin_metrics_flush_job():
    flush_checkin_metrics()


def start_scheduler():
    scheduler.add_job(
        checkin_worker_job,
        'interval',
        seconds=settings.checkin_worker_interval_seconds,
        id='checkin_worker',
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        absence_sweep_job,
        'interval',
        minutes=settings.absence_sweep_interval_minutes,
        id='absence_sweep',
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(checkin_metrics_flush_job, 'interval', minutes=1, id='checkin_metrics_flush')

    if not scheduler.running:
        scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
