"""Teacher double-booking detection against recurring weekly commitments.

Proposed slots and commitments are compared as half-open ``[start, end)``
minute ranges on the same weekday in the teacher's timezone. Every overlap is
reported; callers decide which conflict types block.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import and_
from sqlalchemy.orm import Session

from academy.config import settings
from academy.core.periods import (
    MINUTES_PER_DAY,
    WEEKDAY_NAMES,
    format_minutes,
    local_dates_to_utc_bounds,
    minutes_since_midnight,
    utc_to_local,
)
from academy.core.session_states import TERMINAL_STATUSES
from academy.metrics import timed_service
from academy.models import AttendanceRecord, ClassGroup, ClassSession, Role, TeacherAvailabilitySlot, TeacherUnavailability, User


logger = logging.getLogger(__name__)

CONFLICT_SCHEDULE = 'schedule'
CONFLICT_AVAILABILITY = 'availability'


@dataclass(frozen=True)
class ProposedSlot:
    weekday: int  # Monday=0 ... Sunday=6
    start_minute: int
    end_minute: int  # up to 1440 for a slot ending at midnight

    def label(self) -> str:
        return f'{format_minutes(self.start_minute)} - {format_minutes(self.end_minute)}'


@dataclass(frozen=True)
class Commitment:
    weekday: int
    start_minute: int
    end_minute: int
    kind: str
    label: str
    source_id: int | None = None


@dataclass(frozen=True)
class AvailabilityWindow:
    weekday: int
    start_minute: int
    end_minute: int


@dataclass(frozen=True)
class Conflict:
    type: str
    day: str
    message: str
    new_time: str
    existing_time: str | None = None
    source_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'type': self.type,
            'day': self.day,
            'message': self.message,
            'existing_time': self.existing_time,
            'new_time': self.new_time,
            'source_id': self.source_id,
        }


@dataclass
class ConflictReport:
    teacher_id: int | None
    conflicts: list[Conflict] = field(default_factory=list)

    @property
    def has_conflict(self) -> bool:
        return bool(self.conflicts)

    @property
    def schedule_conflicts(self) -> list[Conflict]:
        return [row for row in self.conflicts if row.type == CONFLICT_SCHEDULE]

    @property
    def availability_conflicts(self) -> list[Conflict]:
        return [row for row in self.conflicts if row.type == CONFLICT_AVAILABILITY]

    def to_dict(self) -> dict[str, Any]:
        return {
            'teacher_id': self.teacher_id,
            'has_conflict': self.has_conflict,
            'conflicts': [row.to_dict() for row in self.conflicts],
        }


def intervals_overlap(a_start: int, a_end: int, b_start: int, b_end: int) -> bool:
    return a_start < b_end and b_start < a_end


def slots_for_local_range(local_start: datetime, local_end: datetime) -> list[ProposedSlot]:
    """Split a local wall-clock range into per-weekday slots at each midnight."""
    if local_end <= local_start:
        return []
    slots: list[ProposedSlot] = []
    cursor = local_start.replace(tzinfo=None)
    end = local_end.replace(tzinfo=None)
    while cursor < end:
        next_midnight = datetime.combine(cursor.date() + timedelta(days=1), datetime.min.time())
        segment_end = min(end, next_midnight)
        end_minute = MINUTES_PER_DAY if segment_end == next_midnight else minutes_since_midnight(segment_end.time())
        slots.append(
            ProposedSlot(
                weekday=cursor.weekday(),
                start_minute=minutes_since_midnight(cursor.time()),
                end_minute=end_minute,
            )
        )
        cursor = segment_end
    return slots


def detect_conflicts(
    proposed: Iterable[ProposedSlot],
    commitments: Iterable[Commitment],
    availability: Iterable[AvailabilityWindow] | None = None,
) -> list[Conflict]:
    """Every conflict between the proposed slots and existing commitments.

    ``availability`` is the teacher's declared weekly availability. ``None``
    means none was declared and the teacher is treated as always available.
    """
    commitments = list(commitments)
    windows = list(availability) if availability is not None else None
    conflicts: list[Conflict] = []
    for slot in proposed:
        day = WEEKDAY_NAMES[slot.weekday]
        for commitment in commitments:
            if commitment.weekday != slot.weekday:
                continue
            if not intervals_overlap(slot.start_minute, slot.end_minute, commitment.start_minute, commitment.end_minute):
                continue
            conflicts.append(
                Conflict(
                    type=commitment.kind,
                    day=day,
                    message=commitment.label,
                    existing_time=f'{format_minutes(commitment.start_minute)} - {format_minutes(commitment.end_minute)}',
                    new_time=slot.label(),
                    source_id=commitment.source_id,
                )
            )
        if windows is None:
            continue
        day_windows = [row for row in windows if row.weekday == slot.weekday]
        if not day_windows:
            conflicts.append(
                Conflict(
                    type=CONFLICT_AVAILABILITY,
                    day=day,
                    message='No availability set for this day',
                    new_time=slot.label(),
                )
            )
            continue
        fits = any(row.start_minute <= slot.start_minute and slot.end_minute <= row.end_minute for row in day_windows)
        if not fits:
            ranges = ', '.join(f'{format_minutes(row.start_minute)} - {format_minutes(row.end_minute)}' for row in day_windows)
            conflicts.append(
                Conflict(
                    type=CONFLICT_AVAILABILITY,
                    day=day,
                    message=f'Outside available hours ({ranges})',
                    existing_time=ranges,
                    new_time=slot.label(),
                )
            )
    return conflicts


def _resolve_timezone(db: Session, user_id: int, tz_name: str | None) -> str:
    if tz_name:
        return tz_name
    user = db.get(User, user_id)
    if user is not None and user.timezone:
        return user.timezone
    return settings.app_timezone


def _session_commitments(
    db: Session,
    *,
    participant_id: int,
    participant_role: str,
    tz_name: str,
    start_date: date,
    end_date: date,
    exclude_session_ids: Iterable[int] = (),
) -> list[Commitment]:
    lower, upper = local_dates_to_utc_bounds(start_date, end_date, tz_name)
    excluded = [int(value) for value in exclude_session_ids]
    query = (
        db.query(ClassSession, ClassGroup.title)
        .join(ClassGroup, ClassGroup.id == ClassSession.class_id)
        .join(
            AttendanceRecord,
            and_(
                AttendanceRecord.session_id == ClassSession.id,
                AttendanceRecord.participant_id == participant_id,
                AttendanceRecord.participant_role == participant_role,
            ),
        )
        .filter(
            ClassSession.status.notin_([status.value for status in TERMINAL_STATUSES]),
            ClassSession.start_at < upper,
            ClassSession.end_at > lower,
        )
    )
    if excluded:
        query = query.filter(ClassSession.id.notin_(excluded))

    commitments: list[Commitment] = []
    for session, title in query.all():
        local_start = utc_to_local(session.start_at, tz_name)
        local_end = utc_to_local(session.end_at, tz_name)
        for slot in slots_for_local_range(local_start, local_end):
            commitments.append(
                Commitment(
                    weekday=slot.weekday,
                    start_minute=slot.start_minute,
                    end_minute=slot.end_minute,
                    kind=CONFLICT_SCHEDULE,
                    label=f'Conflicts with existing class "{title}"',
                    source_id=session.id,
                )
            )
    return commitments


def _unavailability_commitments(db: Session, teacher_id: int) -> list[Commitment]:
    rows = db.query(TeacherUnavailability).filter(TeacherUnavailability.teacher_id == teacher_id).all()
    return [
        Commitment(
            weekday=row.weekday,
            start_minute=minutes_since_midnight(row.start_time),
            end_minute=minutes_since_midnight(row.end_time),
            kind=CONFLICT_AVAILABILITY,
            label=f'Teacher unavailable: {row.reason}' if row.reason else 'Teacher marked unavailable',
            source_id=row.id,
        )
        for row in rows
    ]


def _availability_windows(db: Session, teacher_id: int) -> list[AvailabilityWindow] | None:
    rows = db.query(TeacherAvailabilitySlot).filter(TeacherAvailabilitySlot.teacher_id == teacher_id).all()
    if not rows:
        return None
    return [
        AvailabilityWindow(
            weekday=row.weekday,
            start_minute=minutes_since_midnight(row.start_time),
            end_minute=minutes_since_midnight(row.end_time),
        )
        for row in rows
    ]


@timed_service('check_teacher_conflicts')
def check_teacher_conflicts(
    db: Session,
    teacher_id: int,
    proposed: list[ProposedSlot],
    *,
    start_date: date,
    end_date: date,
    tz_name: str | None = None,
    exclude_session_ids: Iterable[int] = (),
) -> ConflictReport:
    """Check a weekly pattern active between ``start_date`` and ``end_date``.

    Existing sessions of the teacher inside that date window are projected to
    weekly commitments in ``tz_name`` (the teacher's own timezone by default).
    """
    zone = _resolve_timezone(db, teacher_id, tz_name)
    commitments = _session_commitments(
        db,
        participant_id=teacher_id,
        participant_role=Role.TEACHER.value,
        tz_name=zone,
        start_date=start_date,
        end_date=end_date,
        exclude_session_ids=exclude_session_ids,
    )
    commitments.extend(_unavailability_commitments(db, teacher_id))
    conflicts = detect_conflicts(proposed, commitments, _availability_windows(db, teacher_id))
    if conflicts:
        logger.info(
            'teacher_conflicts_detected teacher_id=%s count=%s',
            teacher_id,
            len(conflicts),
            extra={'conflict_types': sorted({row.type for row in conflicts})},
        )
    return ConflictReport(teacher_id=teacher_id, conflicts=conflicts)


def check_range_conflicts(
    db: Session,
    teacher_id: int,
    start_at: datetime,
    end_at: datetime,
    *,
    tz_name: str | None = None,
    exclude_session_ids: Iterable[int] = (),
) -> ConflictReport:
    """Check one concrete occurrence given as absolute instants."""
    zone = _resolve_timezone(db, teacher_id, tz_name)
    local_start = utc_to_local(start_at, zone)
    local_end = utc_to_local(end_at, zone)
    return check_teacher_conflicts(
        db,
        teacher_id,
        slots_for_local_range(local_start, local_end),
        start_date=local_start.date(),
        end_date=local_end.date(),
        tz_name=zone,
        exclude_session_ids=exclude_session_ids,
    )


def check_multiple_teacher_conflicts(
    db: Session,
    teacher_ids: Iterable[int],
    start_at: datetime,
    end_at: datetime,
    *,
    exclude_session_ids: Iterable[int] = (),
) -> dict[int, ConflictReport]:
    excluded = list(exclude_session_ids)
    return {
        int(teacher_id): check_range_conflicts(db, int(teacher_id), start_at, end_at, exclude_session_ids=excluded)
        for teacher_id in teacher_ids
    }


def check_student_conflicts(
    db: Session,
    student_id: int,
    start_at: datetime,
    end_at: datetime,
    *,
    exclude_session_ids: Iterable[int] = (),
) -> list[Conflict]:
    zone = _resolve_timezone(db, student_id, None)
    local_start = utc_to_local(start_at, zone)
    local_end = utc_to_local(end_at, zone)
    commitments = _session_commitments(
        db,
        participant_id=student_id,
        participant_role=Role.STUDENT.value,
        tz_name=zone,
        start_date=local_start.date(),
        end_date=local_end.date(),
        exclude_session_ids=exclude_session_ids,
    )
    return detect_conflicts(slots_for_local_range(local_start, local_end), commitments)
