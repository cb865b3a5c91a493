from __future__ import annotations

import logging
from datetime import time

from sqlalchemy.orm import Session

from academy.core.errors import InvalidRange, NotFound
from academy.models import Role, TeacherAvailabilitySlot, TeacherUnavailability, User


logger = logging.getLogger(__name__)


def _require_teacher(db: Session, teacher_id: int) -> User:
    teacher = db.get(User, teacher_id)
    if teacher is None or teacher.role != Role.TEACHER.value:
        raise NotFound('teacher', teacher_id)
    return teacher


def _validate_window(weekday: int, start_time_value: time, end_time_value: time) -> None:
    if weekday < 0 or weekday > 6:
        raise ValueError('weekday must be between 0 (Monday) and 6 (Sunday)')
    if end_time_value <= start_time_value:
        raise InvalidRange('end_time must be after start_time', start=start_time_value.isoformat(), end=end_time_value.isoformat())


def create_teacher_unavailability(
    db: Session,
    *,
    teacher_id: int,
    weekday: int,
    start_time_value: time,
    end_time_value: time,
    reason: str = '',
) -> TeacherUnavailability:
    _require_teacher(db, teacher_id)
    _validate_window(weekday, start_time_value, end_time_value)

    existing = (
        db.query(TeacherUnavailability)
        .filter(
            TeacherUnavailability.teacher_id == teacher_id,
            TeacherUnavailability.weekday == weekday,
            TeacherUnavailability.start_time < end_time_value,
            TeacherUnavailability.end_time > start_time_value,
        )
        .first()
    )
    if existing:
        raise ValueError('Block overlaps an existing blocked slot')

    row = TeacherUnavailability(
        teacher_id=teacher_id,
        weekday=weekday,
        start_time=start_time_value,
        end_time=end_time_value,
        reason=(reason or '').strip(),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info('teacher_unavailability_created teacher_id=%s block_id=%s weekday=%s', teacher_id, row.id, weekday)
    return row


def delete_teacher_unavailability(db: Session, *, teacher_id: int, block_id: int) -> bool:
    row = (
        db.query(TeacherUnavailability)
        .filter(TeacherUnavailability.id == block_id, TeacherUnavailability.teacher_id == teacher_id)
        .first()
    )
    if not row:
        return False
    db.delete(row)
    db.commit()
    return True


def list_teacher_unavailability(db: Session, teacher_id: int) -> list[TeacherUnavailability]:
    return (
        db.query(TeacherUnavailability)
        .filter(TeacherUnavailability.teacher_id == teacher_id)
        .order_by(TeacherUnavailability.weekday.asc(), TeacherUnavailability.start_time.asc())
        .all()
    )


def replace_weekly_availability(
    db: Session,
    *,
    teacher_id: int,
    slots: list[tuple[int, time, time]],
) -> list[TeacherAvailabilitySlot]:
    """Replace the teacher's declared weekly availability in one transaction.

    An empty list removes every slot, which means "available at any time".
    """
    _require_teacher(db, teacher_id)
    for weekday, start_value, end_value in slots:
        _validate_window(weekday, start_value, end_value)

    ordered = sorted(slots)
    for (day_a, start_a, end_a), (day_b, start_b, end_b) in zip(ordered, ordered[1:]):
        if day_a == day_b and start_b < end_a:
            raise ValueError('Availability slots overlap on the same day')

    db.query(TeacherAvailabilitySlot).filter(TeacherAvailabilitySlot.teacher_id == teacher_id).delete(synchronize_session=False)
    rows = [
        TeacherAvailabilitySlot(teacher_id=teacher_id, weekday=weekday, start_time=start_value, end_time=end_value)
        for weekday, start_value, end_value in ordered
    ]
    db.add_all(rows)
    db.commit()
    for row in rows:
        db.refresh(row)
    logger.info('teacher_availability_replaced teacher_id=%s slots=%s', teacher_id, len(rows))
    return rows


def list_weekly_availability(db: Session, teacher_id: int) -> list[TeacherAvailabilitySlot]:
    return (
        db.query(TeacherAvailabilitySlot)
        .filter(TeacherAvailabilitySlot.teacher_id == teacher_id)
        .order_by(TeacherAvailabilitySlot.weekday.asc(), TeacherAvailabilitySlot.start_time.asc())
        .all()
    )
