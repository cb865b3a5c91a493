from __future__ import annotations

import logging
from datetime import date, datetime, time, timedelta
from typing import Any, Callable, Iterable

from sqlalchemy import and_
from sqlalchemy.orm import Session
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from academy.config import settings
from academy.core.errors import InvalidRange, InvalidTransition, NotFound, ScheduleConflict, SessionTerminal
from academy.core.periods import as_utc, local_to_utc, to_storage, utc_to_local
from academy.core.session_states import (
    AttendanceStatus,
    SessionAction,
    SessionStatus,
    allowed_actions,
    coerce_action,
    is_terminal,
    next_status,
)
from academy.core.time_provider import TimeProvider, default_time_provider
from academy.models import AttendanceRecord, ClassGroup, ClassSession, Role, SessionHistory, User
from academy.services import conflict_service
from academy.services.notification_service import ABSENCE_MARKED, CLASS_CANCELLED, SESSION_RESCHEDULED, notify


logger = logging.getLogger(__name__)

STALE_WRITE_ATTEMPTS = 3
MARKABLE_ATTENDANCE = (AttendanceStatus.PRESENT.value, AttendanceStatus.ABSENT.value, AttendanceStatus.EXPECTED.value)

HISTORY_NOTES = {
    SessionAction.INITIATE: 'Class initiated',
    SessionAction.START: 'Class started',
    SessionAction.END: 'Class ended',
    SessionAction.MARK_ABSENCE: 'Students marked absent',
    SessionAction.LEAVE: 'Class cancelled',
    SessionAction.RESCHEDULE: 'Class rescheduled',
}


def _validate_range(start_at: datetime, end_at: datetime) -> tuple[datetime, datetime]:
    start_value = to_storage(start_at)
    end_value = to_storage(end_at)
    if end_value <= start_value:
        raise InvalidRange(
            'Session end must be after its start',
            start=as_utc(start_value).isoformat(),
            end=as_utc(end_value).isoformat(),
        )
    return start_value, end_value


def _validate_participants(db: Session, teacher_ids: list[int], student_ids: list[int]) -> None:
    if not teacher_ids:
        raise ValueError('A session needs at least one teacher')
    everyone = list(teacher_ids) + list(student_ids)
    if len(set(everyone)) != len(everyone):
        raise ValueError('Participants must be unique per session')
    users = {row.id: row for row in db.query(User).filter(User.id.in_(everyone)).all()}
    for teacher_id in teacher_ids:
        user = users.get(teacher_id)
        if user is None or user.role != Role.TEACHER.value:
            raise NotFound('teacher', teacher_id)
    for student_id in student_ids:
        user = users.get(student_id)
        if user is None or user.role != Role.STUDENT.value:
            raise NotFound('student', student_id)


def _gate_conflicts(
    db: Session,
    teacher_ids: Iterable[int],
    start_at: datetime,
    end_at: datetime,
    *,
    exclude_session_ids: Iterable[int] = (),
    allow_availability_override: bool | None = None,
) -> list[dict[str, Any]]:
    """Raise ScheduleConflict for blocking conflicts; return tolerated ones."""
    override = settings.allow_availability_override if allow_availability_override is None else allow_availability_override
    reports = conflict_service.check_multiple_teacher_conflicts(
        db,
        teacher_ids,
        start_at,
        end_at,
        exclude_session_ids=exclude_session_ids,
    )
    found: list[dict[str, Any]] = []
    blocking = False
    for teacher_id, report in reports.items():
        for conflict in report.conflicts:
            found.append({'teacher_id': teacher_id, **conflict.to_dict()})
            if conflict.type == conflict_service.CONFLICT_SCHEDULE or not override:
                blocking = True
    if blocking:
        raise ScheduleConflict(found)
    if found:
        logger.warning('availability_conflicts_overridden count=%s', len(found), extra={'conflicts': found})
    return found


def _record_history(
    db: Session,
    session: ClassSession,
    *,
    action: str,
    from_status: str,
    actor_id: int | None,
    notes: str = '',
) -> SessionHistory:
    row = SessionHistory(
        session_id=session.id,
        action=action,
        from_status=from_status,
        to_status=session.status,
        actor_id=actor_id,
        notes=notes,
    )
    db.add(row)
    return row


def _build_session(
    db: Session,
    *,
    class_id: int,
    start_at: datetime,
    end_at: datetime,
    teacher_ids: list[int],
    student_ids: list[int],
) -> ClassSession:
    session = ClassSession(
        class_id=class_id,
        start_at=start_at,
        end_at=end_at,
        status=SessionStatus.SCHEDULED.value,
    )
    for position, teacher_id in enumerate(teacher_ids):
        session.attendance.append(
            AttendanceRecord(
                participant_id=teacher_id,
                participant_role=Role.TEACHER.value,
                position=position,
                attendance_status=AttendanceStatus.SCHEDULED.value,
            )
        )
    for student_id in student_ids:
        session.attendance.append(
            AttendanceRecord(
                participant_id=student_id,
                participant_role=Role.STUDENT.value,
                position=0,
                attendance_status=AttendanceStatus.SCHEDULED.value,
            )
        )
    db.add(session)
    return session


def _require_class(db: Session, class_id: int) -> ClassGroup:
    class_group = db.get(ClassGroup, class_id)
    if class_group is None:
        raise NotFound('class', class_id)
    return class_group


def create_session(
    db: Session,
    *,
    class_id: int,
    start_at: datetime,
    end_at: datetime,
    teacher_ids: list[int],
    student_ids: list[int] | None = None,
    actor_id: int | None = None,
    allow_availability_override: bool | None = None,
) -> ClassSession:
    student_ids = list(student_ids or [])
    teacher_ids = list(teacher_ids)
    start_value, end_value = _validate_range(start_at, end_at)
    _require_class(db, class_id)
    _validate_participants(db, teacher_ids, student_ids)
    _gate_conflicts(
        db,
        teacher_ids,
        start_value,
        end_value,
        allow_availability_override=allow_availability_override,
    )

    try:
        session = _build_session(
            db,
            class_id=class_id,
            start_at=start_value,
            end_at=end_value,
            teacher_ids=teacher_ids,
            student_ids=student_ids,
        )
        db.flush()
        _record_history(db, session, action='create', from_status='', actor_id=actor_id, notes='Class scheduled')
        db.commit()
    except Exception:
        db.rollback()
        raise
    db.refresh(session)
    logger.info(
        'session_created session_id=%s class_id=%s teachers=%s students=%s',
        session.id,
        class_id,
        len(teacher_ids),
        len(student_ids),
    )
    return session


def expand_weekly_sessions(
    db: Session,
    *,
    class_id: int,
    weekdays: list[int],
    start_time_value: time,
    end_time_value: time,
    start_date: date,
    end_date: date,
    teacher_ids: list[int],
    student_ids: list[int] | None = None,
    tz_name: str | None = None,
    actor_id: int | None = None,
    allow_availability_override: bool | None = None,
) -> list[ClassSession]:
    """Create one session per matching weekday between the dates (inclusive).

    All occurrences are created or none are. Every conflict of every
    occurrence is reported in a single ScheduleConflict.
    """
    if end_date < start_date:
        raise InvalidRange('end_date is before start_date', start=start_date.isoformat(), end=end_date.isoformat())
    if not weekdays:
        raise ValueError('At least one weekday is required')
    class_group = _require_class(db, class_id)
    zone = tz_name or class_group.timezone or settings.app_timezone
    student_ids = list(student_ids or [])
    teacher_ids = list(teacher_ids)
    _validate_participants(db, teacher_ids, student_ids)
    crosses_midnight = end_time_value <= start_time_value

    occurrences: list[tuple[datetime, datetime]] = []
    cursor = start_date
    while cursor <= end_date:
        if cursor.weekday() in weekdays:
            end_day = cursor + timedelta(days=1) if crosses_midnight else cursor
            occurrences.append(
                (
                    to_storage(local_to_utc(cursor, start_time_value, zone)),
                    to_storage(local_to_utc(end_day, end_time_value, zone)),
                )
            )
        cursor += timedelta(days=1)
    if not occurrences:
        return []

    conflicts: list[dict[str, Any]] = []
    for occurrence_start, occurrence_end in occurrences:
        try:
            _gate_conflicts(
                db,
                teacher_ids,
                occurrence_start,
                occurrence_end,
                allow_availability_override=allow_availability_override,
            )
        except ScheduleConflict as exc:
            for row in exc.conflicts:
                conflicts.append({'occurrence_start': as_utc(occurrence_start).isoformat(), **row})
    if conflicts:
        raise ScheduleConflict(conflicts, message=f'{len(conflicts)} conflicts across the recurrence')

    sessions: list[ClassSession] = []
    try:
        for occurrence_start, occurrence_end in occurrences:
            sessions.append(
                _build_session(
                    db,
                    class_id=class_id,
                    start_at=occurrence_start,
                    end_at=occurrence_end,
                    teacher_ids=teacher_ids,
                    student_ids=student_ids,
                )
            )
        db.flush()
        for session in sessions:
            _record_history(db, session, action='create', from_status='', actor_id=actor_id, notes='Class scheduled (recurring)')
        db.commit()
    except Exception:
        db.rollback()
        raise
    for session in sessions:
        db.refresh(session)
    logger.info('weekly_sessions_expanded class_id=%s count=%s', class_id, len(sessions))
    return sessions


def _locked_session(db: Session, session_id: int) -> ClassSession:
    session = (
        db.query(ClassSession)
        .filter(ClassSession.id == session_id)
        .with_for_update()
        .populate_existing()
        .first()
    )
    if session is None:
        raise NotFound('session', session_id)
    return session


def run_locked(db: Session, session_id: int, action: str, mutate: Callable[[ClassSession], Any]) -> Any:
    """Apply ``mutate`` to a freshly read session and commit it as one unit.

    A concurrent writer that committed first makes the versioned UPDATE stale;
    the unit is rolled back and re-validated against the new state.
    """
    for attempt in range(1, STALE_WRITE_ATTEMPTS + 1):
        session = _locked_session(db, session_id)
        try:
            result = mutate(session)
            db.commit()
            return result
        except StaleDataError:
            db.rollback()
            logger.warning('session_stale_write session_id=%s action=%s attempt=%s', session_id, action, attempt)
        except Exception:
            db.rollback()
            raise
    current_status = _locked_session(db, session_id).status
    db.rollback()
    raise InvalidTransition(current_status, action)


def transition_session(
    db: Session,
    session: ClassSession,
    action: str | SessionAction,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
    new_start: datetime | None = None,
    allow_availability_override: bool | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> dict[str, Any]:
    """Mutate ``session`` inside the caller's unit of work without committing.

    Returns the notification to emit once the caller has committed, or an
    empty dict.
    """
    requested = coerce_action(action)
    previous = session.status
    target = next_status(previous, requested)
    if requested == SessionAction.RESCHEDULE and new_start is None:
        raise ValueError('new_start is required to reschedule')
    now = time_provider.utc_now()
    notes = HISTORY_NOTES[requested]
    event: dict[str, Any] = {}

    if requested == SessionAction.INITIATE:
        for record in session.attendance:
            if record.attendance_status == AttendanceStatus.SCHEDULED.value:
                record.attendance_status = AttendanceStatus.EXPECTED.value
    elif requested == SessionAction.START:
        session.actual_start = now
    elif requested == SessionAction.END:
        session.actual_end = now
    elif requested == SessionAction.MARK_ABSENCE:
        session.actual_end = now
        for record in session.attendance:
            if record.participant_role == Role.STUDENT.value:
                record.attendance_status = AttendanceStatus.ABSENT.value
                record.marked_at = now
                record.marked_by = actor_id
        event = {'name': ABSENCE_MARKED, 'session_id': session.id, 'student_ids': session.student_ids}
    elif requested == SessionAction.LEAVE:
        session.cancellation_reason = (reason or '').strip() or None
        session.cancelled_by = actor_id
        event = {
            'name': CLASS_CANCELLED,
            'session_id': session.id,
            'reason': session.cancellation_reason,
            'participant_ids': [row.participant_id for row in session.attendance],
        }
    elif requested == SessionAction.RESCHEDULE:
        duration = session.end_at - session.start_at
        start_value = to_storage(new_start)
        end_value = start_value + duration
        _gate_conflicts(
            db,
            session.teacher_ids,
            start_value,
            end_value,
            exclude_session_ids=[session.id],
            allow_availability_override=allow_availability_override,
        )
        old_start = session.start_at
        session.start_at = start_value
        session.end_at = end_value
        notes = f'Rescheduled from {as_utc(old_start).isoformat()} to {as_utc(start_value).isoformat()}'
        if reason:
            notes = f'{notes}: {reason}'
        event = {
            'name': SESSION_RESCHEDULED,
            'session_id': session.id,
            'old_start': as_utc(old_start).isoformat(),
            'new_start': as_utc(start_value).isoformat(),
            'participant_ids': [row.participant_id for row in session.attendance],
        }

    session.status = target.value
    _record_history(db, session, action=requested.value, from_status=previous, actor_id=actor_id, notes=notes)
    return event


def emit_session_event(event: dict[str, Any]) -> None:
    if not event:
        return
    payload = dict(event)
    name = payload.pop('name')
    notify(name, **payload)


def apply_transition(
    db: Session,
    session_id: int,
    action: str | SessionAction,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
    new_start: datetime | None = None,
    allow_availability_override: bool | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> ClassSession:
    requested = coerce_action(action)

    def _mutate(session: ClassSession) -> dict[str, Any]:
        return transition_session(
            db,
            session,
            requested,
            actor_id=actor_id,
            reason=reason,
            new_start=new_start,
            allow_availability_override=allow_availability_override,
            time_provider=time_provider,
        )

    event = run_locked(db, session_id, requested.value, _mutate)
    session = get_session(db, session_id)
    logger.info(
        'session_transition_applied session_id=%s action=%s status=%s',
        session_id,
        requested.value,
        session.status,
    )
    emit_session_event(event)
    return session


def initiate_session(db: Session, session_id: int, *, actor_id: int | None = None) -> ClassSession:
    return apply_transition(db, session_id, SessionAction.INITIATE, actor_id=actor_id)


def start_session(
    db: Session,
    session_id: int,
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> ClassSession:
    return apply_transition(db, session_id, SessionAction.START, actor_id=actor_id, time_provider=time_provider)


def end_session(
    db: Session,
    session_id: int,
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> ClassSession:
    return apply_transition(db, session_id, SessionAction.END, actor_id=actor_id, time_provider=time_provider)


def mark_session_absence(db: Session, session_id: int, *, actor_id: int | None = None) -> ClassSession:
    return apply_transition(db, session_id, SessionAction.MARK_ABSENCE, actor_id=actor_id)


def leave_session(db: Session, session_id: int, *, actor_id: int | None = None, reason: str | None = None) -> ClassSession:
    return apply_transition(db, session_id, SessionAction.LEAVE, actor_id=actor_id, reason=reason)


def reschedule_session(
    db: Session,
    session_id: int,
    new_start: datetime,
    *,
    actor_id: int | None = None,
    reason: str | None = None,
    allow_availability_override: bool | None = None,
) -> ClassSession:
    return apply_transition(
        db,
        session_id,
        SessionAction.RESCHEDULE,
        actor_id=actor_id,
        reason=reason,
        new_start=new_start,
        allow_availability_override=allow_availability_override,
    )


def _normalize_mark(value: str | bool) -> str:
    if isinstance(value, bool):
        return AttendanceStatus.PRESENT.value if value else AttendanceStatus.ABSENT.value
    status = str(value).strip().lower()
    if status not in MARKABLE_ATTENDANCE:
        raise ValueError(f'Invalid attendance status {value}')
    return status


def _ensure_markable(session: ClassSession) -> None:
    if is_terminal(session.status):
        raise SessionTerminal(session.id, session.status)
    if session.status != SessionStatus.RUNNING.value:
        raise InvalidTransition(session.status, 'mark_attendance')


def bulk_mark_attendance(
    db: Session,
    session_id: int,
    marks: dict[int, str | bool],
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> list[AttendanceRecord]:
    """Set attendance for several participants of a running session at once."""
    normalized = {int(participant_id): _normalize_mark(value) for participant_id, value in marks.items()}
    if not normalized:
        raise ValueError('No attendance marks supplied')

    def _mutate(session: ClassSession) -> list[AttendanceRecord]:
        _ensure_markable(session)
        by_participant = {row.participant_id: row for row in session.attendance}
        now = time_provider.utc_now()
        changed: list[AttendanceRecord] = []
        for participant_id, status in normalized.items():
            record = by_participant.get(participant_id)
            if record is None:
                raise NotFound('attendance record', f'{session_id}/{participant_id}')
            record.attendance_status = status
            record.marked_at = now
            record.marked_by = actor_id
            changed.append(record)
        # Bump the row version so concurrent transitions on this session serialize.
        session.updated_at = now
        flag_modified(session, 'updated_at')
        return changed

    records = run_locked(db, session_id, 'mark_attendance', _mutate)
    for record in records:
        db.refresh(record)
    logger.info('attendance_marked session_id=%s count=%s', session_id, len(records))
    return records


def mark_attendance(
    db: Session,
    session_id: int,
    participant_id: int,
    status: str | bool,
    *,
    actor_id: int | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> AttendanceRecord:
    return bulk_mark_attendance(
        db,
        session_id,
        {participant_id: status},
        actor_id=actor_id,
        time_provider=time_provider,
    )[0]


def get_session(db: Session, session_id: int) -> ClassSession:
    session = db.get(ClassSession, session_id)
    if session is None:
        raise NotFound('session', session_id)
    return session


def list_sessions(
    db: Session,
    *,
    teacher_id: int | None = None,
    student_id: int | None = None,
    class_id: int | None = None,
    start_at: datetime | None = None,
    end_at: datetime | None = None,
    statuses: Iterable[str] | None = None,
) -> list[ClassSession]:
    query = db.query(ClassSession)
    for participant_id, role in ((teacher_id, Role.TEACHER.value), (student_id, Role.STUDENT.value)):
        if participant_id is None:
            continue
        query = query.filter(
            ClassSession.attendance.any(
                and_(
                    AttendanceRecord.participant_id == participant_id,
                    AttendanceRecord.participant_role == role,
                )
            )
        )
    if class_id is not None:
        query = query.filter(ClassSession.class_id == class_id)
    if start_at is not None:
        query = query.filter(ClassSession.end_at > to_storage(start_at))
    if end_at is not None:
        query = query.filter(ClassSession.start_at < to_storage(end_at))
    if statuses:
        query = query.filter(ClassSession.status.in_(list(statuses)))
    return query.order_by(ClassSession.start_at.asc(), ClassSession.id.asc()).all()


def list_session_history(db: Session, session_id: int) -> list[SessionHistory]:
    return (
        db.query(SessionHistory)
        .filter(SessionHistory.session_id == session_id)
        .order_by(SessionHistory.id.asc())
        .all()
    )


def session_to_dict(session: ClassSession, tz_name: str | None = None) -> dict[str, Any]:
    zone = tz_name or (session.class_group.timezone if session.class_group else None) or settings.app_timezone
    return {
        'id': session.id,
        'class_id': session.class_id,
        'status': session.status,
        'version': session.version,
        'start_at': as_utc(session.start_at).isoformat(),
        'end_at': as_utc(session.end_at).isoformat(),
        'local_start': utc_to_local(session.start_at, zone).isoformat(),
        'local_end': utc_to_local(session.end_at, zone).isoformat(),
        'timezone': zone,
        'teacher_ids': session.teacher_ids,
        'student_ids': session.student_ids,
        'attendance': [
            {
                'participant_id': row.participant_id,
                'role': row.participant_role,
                'status': row.attendance_status,
            }
            for row in session.attendance
        ],
        'actual_start': as_utc(session.actual_start).isoformat() if session.actual_start else None,
        'actual_end': as_utc(session.actual_end).isoformat() if session.actual_end else None,
        'cancellation_reason': session.cancellation_reason,
        'allowed_actions': allowed_actions(session.status),
    }
