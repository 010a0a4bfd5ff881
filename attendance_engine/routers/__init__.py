from attendance_engine.routers import attendance, checkins, leave, periods, sessions

__all__ = [
    'attendance',
    'checkins',
    'leave',
    'periods',
    'sessions',
]
