from contextlib import asynccontextmanager
import logging
import time

from fastapi import FastAPI, Request

from academy.config import settings
from academy.db import Base, SessionLocal, engine
from academy.routers import billing, conflicts, invoices, reschedule_requests, sessions, subscriptions, teachers
from academy.scheduler import start_scheduler, stop_scheduler
from academy.services.bootstrap_service import run_bootstrap

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s %(levelname)s %(name)s %(message)s',
)


@asynccontextmanager
async def lifespan(_: FastAPI):
    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        run_bootstrap(db)
    finally:
        db.close()
    start_scheduler()
    yield
    stop_scheduler()


app = FastAPI(title=settings.app_name, version='0.1.0', lifespan=lifespan)


@app.middleware('http')
async def slow_request_logger(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - started) * 1000.0
    if duration_ms >= settings.metrics_slow_ms:
        logging.getLogger('academy.request').info(
            'request_slow path=%s method=%s status_code=%s duration_ms=%.2f',
            request.url.path,
            request.method,
            response.status_code,
            duration_ms,
        )
    return response


app.include_router(sessions.router)
app.include_router(conflicts.router)
app.include_router(billing.router)
app.include_router(invoices.router)
app.include_router(subscriptions.router)
app.include_router(reschedule_requests.router)
app.include_router(teachers.router)


@app.get('/')
def root():
    return {'name': settings.app_name, 'env': settings.app_env}


@app.get('/health')
def health():
    return {'status': 'ok'}
