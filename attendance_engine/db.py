import logging
import time
from contextvars import ContextVar

from sqlalchemy import create_engine, event
from sqlalchemy.orm import declarative_base, sessionmaker

from attendance_engine.config import settings


# Set per request by the HTTP layer so slow queries name their endpoint.
current_endpoint: ContextVar[str] = ContextVar('current_endpoint', default='background')

_slow_logger = logging.getLogger('attendance_engine.db.slow_query')


def _is_sqlite(url: str) -> bool:
    return url.startswith('sqlite')


def build_engine(url: str):
    """Engine with the slow-query listener attached.

    SQLite gets a busy timeout and WAL so check-in workers and request
    handlers can write to one file without immediate `database is locked`.
    """
    if _is_sqlite(url):
        new_engine = create_engine(url, connect_args={'check_same_thread': False, 'timeout': 15})

        @event.listens_for(new_engine, 'connect')
        def _sqlite_pragmas(dbapi_connection, _record):
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute('PRAGMA journal_mode=WAL')
            finally:
                cursor.close()

    else:
        new_engine = create_engine(url, pool_pre_ping=True)

    event.listen(new_engine, 'before_cursor_execute', _before_cursor_execute)
    event.listen(new_engine, 'after_cursor_execute', _after_cursor_execute)
    return new_engine


def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    context._query_start_time = time.perf_counter()


def _after_cursor_execute(conn, cursor, statement, parameters, context, executemany):
    start = getattr(context, '_query_start_time', None)
    if start is None:
        return
    duration_ms = (time.perf_counter() - start) * 1000.0
    if duration_ms < settings.db_slow_query_ms:
        return
    _slow_logger.warning(
        'slow_query duration_ms=%.2f endpoint=%s sql=%s',
        duration_ms,
        current_endpoint.get(),
        ' '.join((statement or '').split())[:500],
    )


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
