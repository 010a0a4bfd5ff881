from __future__ import annotations

from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from attendance_engine.config import settings


APP_TIMEZONE = settings.app_timezone or 'Asia/Shanghai'
APP_ZONEINFO = ZoneInfo(APP_TIMEZONE)


class TimeProvider:
    def now(self) -> datetime:
        return datetime.now(APP_ZONEINFO)

    def today(self) -> date:
        return self.now().date()

    def local_now(self) -> datetime:
        """Naive wall-clock time in the application timezone, as stored in the database."""
        return self.now().replace(tzinfo=None)


class FixedTimeProvider(TimeProvider):
    def __init__(self, frozen_dt: datetime):
        self._frozen_dt = frozen_dt

    def now(self) -> datetime:
        if self._frozen_dt.tzinfo is None:
            return self._frozen_dt.replace(tzinfo=APP_ZONEINFO)
        return self._frozen_dt

    def advance(self, **delta: float) -> None:
        self._frozen_dt = self._frozen_dt + timedelta(**delta)


default_time_provider = TimeProvider()
