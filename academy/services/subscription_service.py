from __future__ import annotations

import logging
from datetime import date, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy.orm import Session

from academy.config import settings
from academy.core.errors import InvalidTransition, NotFound
from academy.core.periods import CADENCES, next_payment_date, payment_date_after
from academy.core.time_provider import TimeProvider, default_time_provider
from academy.models import Role, StudentSubscription, SubscriptionPlan, SubscriptionStatus, User


logger = logging.getLogger(__name__)


def create_plan(
    db: Session,
    *,
    name: str,
    hourly_rate: Decimal | str | int,
    hours_per_month: Decimal | str | int = 0,
    max_free_absences: int = 0,
    currency: str | None = None,
    cadence: str = 'month',
    cadence_multiplier: int = 1,
) -> SubscriptionPlan:
    rate = Decimal(str(hourly_rate))
    hours = Decimal(str(hours_per_month))
    if rate < 0 or hours < 0 or max_free_absences < 0:
        raise ValueError('Plan amounts must be non-negative')
    if cadence not in CADENCES:
        raise ValueError(f'cadence must be one of {", ".join(CADENCES)}')
    if cadence_multiplier < 1:
        raise ValueError('cadence_multiplier must be at least 1')
    plan = SubscriptionPlan(
        name=name.strip(),
        hourly_rate=rate,
        hours_per_month=hours,
        max_free_absences=int(max_free_absences),
        currency=(currency or settings.default_currency).upper(),
        cadence=cadence,
        cadence_multiplier=int(cadence_multiplier),
    )
    db.add(plan)
    db.commit()
    db.refresh(plan)
    logger.info('subscription_plan_created plan_id=%s cadence=%s', plan.id, cadence)
    return plan


def get_plan(db: Session, plan_id: int) -> SubscriptionPlan:
    plan = db.get(SubscriptionPlan, plan_id)
    if plan is None:
        raise NotFound('subscription plan', plan_id)
    return plan


def get_subscription(db: Session, subscription_id: int) -> StudentSubscription:
    row = db.get(StudentSubscription, subscription_id)
    if row is None:
        raise NotFound('subscription', subscription_id)
    return row


def get_active_subscription(db: Session, student_id: int) -> StudentSubscription | None:
    return (
        db.query(StudentSubscription)
        .filter(
            StudentSubscription.student_id == student_id,
            StudentSubscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .first()
    )


def _deactivate_active(db: Session, student_id: int, on_date: date) -> int:
    rows = (
        db.query(StudentSubscription)
        .filter(
            StudentSubscription.student_id == student_id,
            StudentSubscription.status == SubscriptionStatus.ACTIVE.value,
        )
        .with_for_update()
        .all()
    )
    for row in rows:
        row.status = SubscriptionStatus.INACTIVE.value
        row.deactivated_on = on_date
    db.flush()
    return len(rows)


def subscribe_student(
    db: Session,
    *,
    student_id: int,
    plan_id: int,
    start_date: date,
    time_provider: TimeProvider = default_time_provider,
) -> StudentSubscription:
    """Start a subscription; any currently active one for the student is deactivated."""
    student = db.get(User, student_id)
    if student is None or student.role != Role.STUDENT.value:
        raise NotFound('student', student_id)
    plan = get_plan(db, plan_id)
    try:
        replaced = _deactivate_active(db, student_id, time_provider.today())
        row = StudentSubscription(
            student_id=student_id,
            plan_id=plan.id,
            start_date=start_date,
            current_period_start=start_date,
            next_payment_date=next_payment_date(start_date, plan.cadence, plan.cadence_multiplier),
            status=SubscriptionStatus.ACTIVE.value,
        )
        db.add(row)
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(row)
    logger.info(
        'student_subscribed subscription_id=%s student_id=%s plan_id=%s replaced=%s',
        row.id,
        student_id,
        plan.id,
        replaced,
    )
    return row


def deactivate_subscription(
    db: Session,
    subscription_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> StudentSubscription:
    row = get_subscription(db, subscription_id)
    if row.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransition(row.status, 'deactivate', entity='subscription')
    row.status = SubscriptionStatus.INACTIVE.value
    row.deactivated_on = time_provider.today()
    db.commit()
    db.refresh(row)
    logger.info('subscription_deactivated subscription_id=%s', subscription_id)
    return row


def reactivate_subscription(
    db: Session,
    subscription_id: int,
    *,
    time_provider: TimeProvider = default_time_provider,
) -> StudentSubscription:
    row = get_subscription(db, subscription_id)
    if row.status == SubscriptionStatus.ACTIVE.value:
        raise InvalidTransition(row.status, 'reactivate', entity='subscription')
    try:
        _deactivate_active(db, row.student_id, time_provider.today())
        row.status = SubscriptionStatus.ACTIVE.value
        row.deactivated_on = None
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(row)
    logger.info('subscription_reactivated subscription_id=%s', subscription_id)
    return row


def current_billing_period(row: StudentSubscription) -> tuple[date, date]:
    return row.current_period_start, row.next_payment_date - timedelta(days=1)


def advance_billing_period(db: Session, subscription_id: int) -> StudentSubscription:
    """Roll the subscription forward by one cadence step."""
    row = get_subscription(db, subscription_id)
    if row.status != SubscriptionStatus.ACTIVE.value:
        raise InvalidTransition(row.status, 'advance', entity='subscription')
    plan = row.plan
    row.current_period_start = row.next_payment_date
    row.next_payment_date = payment_date_after(row.start_date, row.next_payment_date, plan.cadence, plan.cadence_multiplier)
    db.commit()
    db.refresh(row)
    logger.info(
        'subscription_period_advanced subscription_id=%s period_start=%s next_payment_date=%s',
        subscription_id,
        row.current_period_start.isoformat(),
        row.next_payment_date.isoformat(),
    )
    return row


def was_active_during(row: StudentSubscription, period_start: date, period_end: date) -> bool:
    """True when the subscription covered at least one day of the period."""
    if row.start_date > period_end:
        return False
    if row.status == SubscriptionStatus.ACTIVE.value:
        return True
    return row.deactivated_on is not None and row.deactivated_on >= period_start


def due_subscriptions(db: Session, on_date: date) -> list[StudentSubscription]:
    return (
        db.query(StudentSubscription)
        .filter(
            StudentSubscription.status == SubscriptionStatus.ACTIVE.value,
            StudentSubscription.next_payment_date <= on_date,
        )
        .order_by(StudentSubscription.id.asc())
        .all()
    )


def list_subscriptions(db: Session, *, student_id: int | None = None, status: str | None = None) -> list[StudentSubscription]:
    query = db.query(StudentSubscription)
    if student_id is not None:
        query = query.filter(StudentSubscription.student_id == student_id)
    if status:
        query = query.filter(StudentSubscription.status == status)
    return query.order_by(StudentSubscription.start_date.desc(), StudentSubscription.id.desc()).all()


def subscription_to_dict(row: StudentSubscription) -> dict[str, Any]:
    period_start, period_end = current_billing_period(row)
    return {
        'id': row.id,
        'student_id': row.student_id,
        'plan_id': row.plan_id,
        'start_date': row.start_date.isoformat(),
        'current_period_start': period_start.isoformat(),
        'current_period_end': period_end.isoformat(),
        'next_payment_date': row.next_payment_date.isoformat(),
        'status': row.status,
        'deactivated_on': row.deactivated_on.isoformat() if row.deactivated_on else None,
    }


def plan_to_dict(plan: SubscriptionPlan) -> dict[str, Any]:
    return {
        'id': plan.id,
        'name': plan.name,
        'hourly_rate': str(plan.hourly_rate),
        'hours_per_month': str(plan.hours_per_month),
        'max_free_absences': plan.max_free_absences,
        'currency': plan.currency,
        'cadence': plan.cadence,
        'cadence_multiplier': plan.cadence_multiplier,
    }
