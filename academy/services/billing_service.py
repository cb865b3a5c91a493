"""Turn a student's session and attendance history into an amount owed.

Sessions count toward a period by the local date of their start in the
academy timezone. Only ``complete`` and ``absence`` sessions are billed;
sessions still open are reported as ``pending_sessions``.
"""
from __future__ import annotations

import calendar
import logging
from dataclasses import asdict, dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Iterable

from sqlalchemy import and_
from sqlalchemy.orm import Session

from academy.config import settings
from academy.core.errors import InvalidRange, NotFound
from academy.core.periods import duration_hours, local_dates_to_utc_bounds
from academy.core.session_states import BILLABLE_STATUSES, AttendanceStatus, SessionStatus, is_terminal
from academy.metrics import timed_service
from academy.models import AttendanceRecord, ClassSession, Role, StudentSubscription, User
from academy.services.subscription_service import get_active_subscription, was_active_during


logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal('0.01')
HOURS_QUANT = Decimal('0.0001')
ZERO = Decimal('0')


@dataclass(frozen=True)
class SessionAttendance:
    session_id: int
    session_status: str
    hours: Decimal
    attendance_status: str


@dataclass(frozen=True)
class BillingCalculation:
    student_id: int
    subscription_id: int
    period_start: date
    period_end: date
    sessions_scheduled: int
    sessions_attended: int
    absences: int
    free_absences_used: int
    max_free_absences: int
    total_hours_scheduled: Decimal
    total_hours_attended: Decimal
    average_session_hours: Decimal
    billable_hours: Decimal
    hourly_rate: Decimal
    total_amount: Decimal
    currency: str
    pending_sessions: int = 0
    subscription_inactive: bool = False
    has_data: bool = True

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class NoBillingData:
    student_id: int
    subscription_id: int
    period_start: date
    period_end: date
    currency: str
    pending_sessions: int = 0
    subscription_inactive: bool = False
    has_data: bool = False
    total_amount: Decimal = Decimal('0.00')

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


def _serialize(payload: dict[str, Any]) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for key, value in payload.items():
        if isinstance(value, Decimal):
            out[key] = str(value)
        elif isinstance(value, date):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def round_money(value: Decimal) -> Decimal:
    return value.quantize(MONEY_QUANT, rounding=ROUND_HALF_UP)


def round_hours(value: Decimal) -> Decimal:
    return value.quantize(HOURS_QUANT, rounding=ROUND_HALF_UP)


def compute_billing(
    rows: Iterable[SessionAttendance],
    *,
    student_id: int,
    subscription_id: int,
    period_start: date,
    period_end: date,
    hourly_rate: Decimal,
    max_free_absences: int,
    currency: str,
    subscription_inactive: bool = False,
) -> BillingCalculation | NoBillingData:
    """Aggregate already-fetched rows for one student into a billing figure.

    Absences beyond the free allowance are billed at the average scheduled
    session length of the period.
    """
    sessions_scheduled = 0
    sessions_attended = 0
    absences = 0
    pending_sessions = 0
    hours_scheduled = ZERO
    hours_attended = ZERO

    for row in rows:
        if row.session_status not in {status.value for status in BILLABLE_STATUSES}:
            if not is_terminal(row.session_status):
                pending_sessions += 1
            continue
        sessions_scheduled += 1
        hours_scheduled += row.hours
        if row.attendance_status == AttendanceStatus.PRESENT.value:
            sessions_attended += 1
            hours_attended += row.hours
        elif row.attendance_status == AttendanceStatus.ABSENT.value:
            absences += 1

    if sessions_scheduled == 0:
        return NoBillingData(
            student_id=student_id,
            subscription_id=subscription_id,
            period_start=period_start,
            period_end=period_end,
            currency=currency,
            pending_sessions=pending_sessions,
            subscription_inactive=subscription_inactive,
        )

    allowance = max(int(max_free_absences), 0)
    free_absences_used = min(absences, allowance)
    billed_absences = max(0, absences - allowance)
    average_hours = hours_scheduled / Decimal(sessions_scheduled)
    billable_hours = hours_attended + Decimal(billed_absences) * average_hours
    rate = Decimal(str(hourly_rate))

    return BillingCalculation(
        student_id=student_id,
        subscription_id=subscription_id,
        period_start=period_start,
        period_end=period_end,
        sessions_scheduled=sessions_scheduled,
        sessions_attended=sessions_attended,
        absences=absences,
        free_absences_used=free_absences_used,
        max_free_absences=allowance,
        total_hours_scheduled=round_hours(hours_scheduled),
        total_hours_attended=round_hours(hours_attended),
        average_session_hours=round_hours(average_hours),
        billable_hours=round_hours(billable_hours),
        hourly_rate=round_money(rate),
        total_amount=round_money(billable_hours * rate),
        currency=currency,
        pending_sessions=pending_sessions,
        subscription_inactive=subscription_inactive,
    )


def _fetch_student_sessions(
    db: Session,
    student_id: int,
    period_start: date,
    period_end: date,
    tz_name: str,
) -> list[SessionAttendance]:
    lower, upper = local_dates_to_utc_bounds(period_start, period_end, tz_name)
    rows = (
        db.query(
            ClassSession.id,
            ClassSession.status,
            ClassSession.start_at,
            ClassSession.end_at,
            AttendanceRecord.attendance_status,
        )
        .join(
            AttendanceRecord,
            and_(
                AttendanceRecord.session_id == ClassSession.id,
                AttendanceRecord.participant_id == student_id,
                AttendanceRecord.participant_role == Role.STUDENT.value,
            ),
        )
        .filter(
            ClassSession.start_at >= lower,
            ClassSession.start_at < upper,
            ClassSession.status != SessionStatus.CANCELLED.value,
        )
        .order_by(ClassSession.start_at.asc())
        .all()
    )
    return [
        SessionAttendance(
            session_id=session_id,
            session_status=status,
            hours=duration_hours(start_at, end_at),
            attendance_status=attendance_status,
        )
        for session_id, status, start_at, end_at, attendance_status in rows
    ]


def _load_subscription(db: Session, student_id: int, subscription_id: int) -> StudentSubscription:
    student = db.get(User, student_id)
    if student is None or student.role != Role.STUDENT.value:
        raise NotFound('student', student_id)
    subscription = db.get(StudentSubscription, subscription_id)
    if subscription is None or subscription.student_id != student_id:
        raise NotFound('subscription', subscription_id)
    return subscription


@timed_service('calculate_student_billing')
def calculate_student_billing(
    db: Session,
    *,
    student_id: int,
    subscription_id: int,
    period_start: date,
    period_end: date,
    tz_name: str | None = None,
) -> BillingCalculation | NoBillingData:
    if period_end < period_start:
        raise InvalidRange(
            'period_end is before period_start',
            start=period_start.isoformat(),
            end=period_end.isoformat(),
        )
    subscription = _load_subscription(db, student_id, subscription_id)
    plan = subscription.plan
    rows = _fetch_student_sessions(db, student_id, period_start, period_end, tz_name or settings.app_timezone)
    result = compute_billing(
        rows,
        student_id=student_id,
        subscription_id=subscription_id,
        period_start=period_start,
        period_end=period_end,
        hourly_rate=plan.hourly_rate,
        max_free_absences=plan.max_free_absences,
        currency=plan.currency,
        subscription_inactive=not was_active_during(subscription, period_start, period_end),
    )
    logger.info(
        'billing_calculated student_id=%s subscription_id=%s period=%s..%s has_data=%s total=%s',
        student_id,
        subscription_id,
        period_start.isoformat(),
        period_end.isoformat(),
        result.has_data,
        result.total_amount,
    )
    return result


def month_bounds(year: int, month: int) -> tuple[date, date]:
    if month < 1 or month > 12:
        raise ValueError('month must be between 1 and 12')
    return date(year, month, 1), date(year, month, calendar.monthrange(year, month)[1])


def generate_monthly_billing(
    db: Session,
    *,
    student_id: int,
    year: int,
    month: int,
    subscription_id: int | None = None,
) -> BillingCalculation | NoBillingData:
    """Billing for one calendar month under the given or currently active subscription."""
    period_start, period_end = month_bounds(year, month)
    if subscription_id is None:
        active = get_active_subscription(db, student_id)
        if active is None:
            raise NotFound('active subscription for student', student_id)
        subscription_id = active.id
    return calculate_student_billing(
        db,
        student_id=student_id,
        subscription_id=subscription_id,
        period_start=period_start,
        period_end=period_end,
    )
