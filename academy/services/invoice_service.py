from __future__ import annotations

import logging
from datetime import date, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from academy.config import settings
from academy.core.errors import InvalidTransition, NotFound, SubscriptionInactive
from academy.core.periods import as_utc, format_month_range
from academy.core.time_provider import TimeProvider, default_time_provider
from academy.models import Invoice, InvoiceSequence, InvoiceStatus, StudentSubscription
from academy.services.billing_service import calculate_student_billing
from academy.services.notification_service import INVOICE_ISSUED, notify
from academy.services.subscription_service import advance_billing_period, current_billing_period, due_subscriptions


logger = logging.getLogger(__name__)

INVOICE_SEQUENCE_NAME = 'invoice'
DUPLICATE_PERIOD_MESSAGE = 'An invoice already exists for this subscription period'
INVOICE_STATUS_TRANSITIONS = {
    InvoiceStatus.PENDING.value: {InvoiceStatus.PAID.value, InvoiceStatus.CANCELLED.value},
}


def format_invoice_number(value: int) -> str:
    return f'{settings.invoice_prefix}-{value:0{settings.invoice_number_width}d}'


def _highest_issued_number(db: Session) -> int:
    prefix = f'{settings.invoice_prefix}-'
    highest = 0
    for (number,) in db.query(Invoice.invoice_number).filter(Invoice.invoice_number.like(f'{prefix}%')).all():
        suffix = number[len(prefix):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def ensure_invoice_sequence(db: Session) -> InvoiceSequence:
    """Create the sequence row, continuing after any invoice already issued."""
    row = db.get(InvoiceSequence, INVOICE_SEQUENCE_NAME)
    if row is not None:
        return row
    row = InvoiceSequence(name=INVOICE_SEQUENCE_NAME, last_value=_highest_issued_number(db))
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info('invoice_sequence_seeded last_value=%s', row.last_value)
    return row


def allocate_invoice_number(db: Session) -> str:
    """Take the next number inside the caller's transaction.

    The increment happens in SQL, so concurrent transactions serialize on the
    sequence row and a rolled-back caller never consumes a number.
    """
    bump = (
        update(InvoiceSequence)
        .where(InvoiceSequence.name == INVOICE_SEQUENCE_NAME)
        .values(last_value=InvoiceSequence.last_value + 1)
        .execution_options(synchronize_session=False)
    )
    result = db.execute(bump)
    if result.rowcount == 0:
        db.add(InvoiceSequence(name=INVOICE_SEQUENCE_NAME, last_value=_highest_issued_number(db) + 1))
        db.flush()
    value = db.execute(select(InvoiceSequence.last_value).where(InvoiceSequence.name == INVOICE_SEQUENCE_NAME)).scalar_one()
    number = format_invoice_number(int(value))
    logger.info('invoice_number_allocated number=%s', number)
    return number


def find_period_invoice(db: Session, subscription_id: int, period_start: date, period_end: date) -> Invoice | None:
    return (
        db.query(Invoice)
        .filter(
            Invoice.subscription_id == subscription_id,
            Invoice.period_start == period_start,
            Invoice.period_end == period_end,
            Invoice.status != InvoiceStatus.CANCELLED.value,
        )
        .first()
    )


def generate_invoice(
    db: Session,
    *,
    student_id: int,
    subscription_id: int,
    period_start: date,
    period_end: date,
    allow_inactive: bool = False,
    time_provider: TimeProvider = default_time_provider,
) -> Invoice | None:
    """Issue an invoice snapshotting the period's billing calculation.

    Returns None when the period holds no billable sessions.
    """
    calculation = calculate_student_billing(
        db,
        student_id=student_id,
        subscription_id=subscription_id,
        period_start=period_start,
        period_end=period_end,
    )
    if not calculation.has_data:
        logger.info(
            'invoice_skipped_no_data student_id=%s subscription_id=%s period=%s..%s',
            student_id,
            subscription_id,
            period_start.isoformat(),
            period_end.isoformat(),
        )
        return None
    if calculation.subscription_inactive and not allow_inactive:
        raise SubscriptionInactive(subscription_id)
    # Serializes issuers of the same subscription where row locks exist; the
    # partial unique index on open invoices covers the rest.
    db.query(StudentSubscription).filter(StudentSubscription.id == subscription_id).with_for_update().first()
    if find_period_invoice(db, subscription_id, period_start, period_end) is not None:
        db.rollback()
        raise ValueError(DUPLICATE_PERIOD_MESSAGE)

    try:
        invoice = Invoice(
            invoice_number=allocate_invoice_number(db),
            student_id=student_id,
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            months=format_month_range(period_start, period_end),
            sessions_scheduled=calculation.sessions_scheduled,
            sessions_attended=calculation.sessions_attended,
            absences=calculation.absences,
            free_absences_used=calculation.free_absences_used,
            total_hours_scheduled=calculation.total_hours_scheduled,
            total_hours_attended=calculation.total_hours_attended,
            billable_hours=calculation.billable_hours,
            hourly_rate=calculation.hourly_rate,
            total_amount=calculation.total_amount,
            currency=calculation.currency,
            status=InvoiceStatus.PENDING.value,
            issued_at=time_provider.utc_now(),
            due_date=time_provider.today() + timedelta(days=settings.invoice_due_days),
        )
        db.add(invoice)
        db.commit()
    except IntegrityError as exc:
        db.rollback()
        if find_period_invoice(db, subscription_id, period_start, period_end) is None:
            raise
        logger.warning(
            'invoice_duplicate_period subscription_id=%s period=%s..%s',
            subscription_id,
            period_start.isoformat(),
            period_end.isoformat(),
        )
        raise ValueError(DUPLICATE_PERIOD_MESSAGE) from exc
    except Exception:
        db.rollback()
        raise
    db.refresh(invoice)
    logger.info(
        'invoice_issued number=%s student_id=%s total=%s currency=%s',
        invoice.invoice_number,
        student_id,
        invoice.total_amount,
        invoice.currency,
    )
    notify(
        INVOICE_ISSUED,
        invoice_number=invoice.invoice_number,
        student_id=student_id,
        total_amount=str(invoice.total_amount),
        currency=invoice.currency,
        due_date=invoice.due_date.isoformat(),
    )
    return invoice


def get_invoice(db: Session, invoice_number: str) -> Invoice:
    invoice = db.query(Invoice).filter(Invoice.invoice_number == invoice_number).first()
    if invoice is None:
        raise NotFound('invoice', invoice_number)
    return invoice


def list_invoices(db: Session, *, student_id: int | None = None, status: str | None = None) -> list[Invoice]:
    query = db.query(Invoice)
    if student_id is not None:
        query = query.filter(Invoice.student_id == student_id)
    if status:
        query = query.filter(Invoice.status == status)
    return query.order_by(Invoice.id.asc()).all()


def set_invoice_status(
    db: Session,
    invoice_number: str,
    status: str,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> Invoice:
    invoice = (
        db.query(Invoice)
        .filter(Invoice.invoice_number == invoice_number)
        .with_for_update()
        .first()
    )
    if invoice is None:
        raise NotFound('invoice', invoice_number)
    if status not in INVOICE_STATUS_TRANSITIONS.get(invoice.status, set()):
        raise InvalidTransition(invoice.status, status, entity='invoice')
    invoice.status = status
    if status == InvoiceStatus.PAID.value:
        invoice.paid_at = time_provider.utc_now()
    else:
        invoice.cancelled_at = time_provider.utc_now()
    db.commit()
    db.refresh(invoice)
    logger.info('invoice_status_changed number=%s status=%s', invoice_number, status)
    return invoice


def run_billing_cycle(
    db: Session,
    *,
    today: date | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    """Invoice every elapsed period of every active subscription that is due.

    A failing subscription is logged and left on its current period so the
    next run retries it.
    """
    run_date = today or time_provider.today()
    summary: dict[str, Any] = {'run_date': run_date.isoformat(), 'invoices': [], 'empty_periods': 0, 'failed': []}
    for subscription in due_subscriptions(db, run_date):
        subscription_id = subscription.id
        student_id = subscription.student_id
        try:
            while subscription.next_payment_date <= run_date:
                period_start, period_end = current_billing_period(subscription)
                if find_period_invoice(db, subscription_id, period_start, period_end) is None:
                    invoice = generate_invoice(
                        db,
                        student_id=student_id,
                        subscription_id=subscription_id,
                        period_start=period_start,
                        period_end=period_end,
                        time_provider=time_provider,
                    )
                    if invoice is None:
                        summary['empty_periods'] += 1
                    else:
                        summary['invoices'].append(invoice.invoice_number)
                subscription = advance_billing_period(db, subscription_id)
        except Exception:
            db.rollback()
            logger.exception('billing_cycle_subscription_failed subscription_id=%s', subscription_id)
            summary['failed'].append(subscription_id)
    logger.info(
        'billing_cycle_completed run_date=%s invoices=%s empty_periods=%s failed=%s',
        summary['run_date'],
        len(summary['invoices']),
        summary['empty_periods'],
        len(summary['failed']),
    )
    return summary


def invoice_to_dict(invoice: Invoice) -> dict[str, Any]:
    return {
        'invoice_number': invoice.invoice_number,
        'student_id': invoice.student_id,
        'subscription_id': invoice.subscription_id,
        'period_start': invoice.period_start.isoformat(),
        'period_end': invoice.period_end.isoformat(),
        'months': invoice.months,
        'sessions_scheduled': invoice.sessions_scheduled,
        'sessions_attended': invoice.sessions_attended,
        'absences': invoice.absences,
        'free_absences_used': invoice.free_absences_used,
        'total_hours_scheduled': str(invoice.total_hours_scheduled),
        'total_hours_attended': str(invoice.total_hours_attended),
        'billable_hours': str(invoice.billable_hours),
        'hourly_rate': str(invoice.hourly_rate),
        'total_amount': str(invoice.total_amount),
        'currency': invoice.currency,
        'status': invoice.status,
        'issued_at': as_utc(invoice.issued_at).isoformat(),
        'due_date': invoice.due_date.isoformat(),
        'paid_at': as_utc(invoice.paid_at).isoformat() if invoice.paid_at else None,
    }
