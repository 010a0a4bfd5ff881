from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request

from attendance_engine.config import settings
from attendance_engine.db import Base, engine
from attendance_engine.metrics import flush_checkin_metrics
from attendance_engine.routers import attendance, checkins, leave, periods, sessions
from attendance_engine.routers.deps import EndpointNameRoute
from attendance_engine.scheduler import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    if settings.enable_scheduler:
        start_scheduler()
    yield
    stop_scheduler()
    flush_checkin_metrics()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)
app.router.route_class = EndpointNameRoute


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('attendance_engine.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
        )
    return response


app.include_router(periods.router)
app.include_router(sessions.router)
app.include_router(checkins.router)
app.include_router(leave.router)
app.include_router(attendance.router)


@app.get('/')
def root():
    return {'service': settings.app_name, 'env': settings.app_env}


@app.get('/health')
def health():
    return {'status': 'ok'}
