import logging

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.orm import Session

from academy.config import settings
from academy.core.periods import parse_hhmm
from academy.db import SessionLocal
from academy.metrics import run_timed_job
from academy.services.invoice_service import ensure_invoice_sequence, run_billing_cycle


scheduler = BackgroundScheduler(timezone=settings.app_timezone)
logger = logging.getLogger(__name__)


def _with_db(task):
    db: Session = SessionLocal()
    try:
        return task(db)
    finally:
        db.close()


def _run_job(label: str, task) -> None:
    run_timed_job(label, lambda: _with_db(task))


def billing_cycle_job():
    def _job(db: Session):
        ensure_invoice_sequence(db)
        summary = run_billing_cycle(db)
        if summary['failed']:
            logger.warning('billing_cycle_failures subscription_ids=%s', summary['failed'])
        return summary

    _run_job('billing_cycle', _job)


def start_scheduler():
    if not settings.enable_scheduler:
        logger.info('scheduler_disabled')
        return
    run_time = parse_hhmm(settings.billing_run_time)
    scheduler.add_job(
        billing_cycle_job,
        'cron',
        hour=run_time.hour,
        minute=run_time.minute,
        id='billing_cycle',
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )

    if not scheduler.running:
        scheduler.start()


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
