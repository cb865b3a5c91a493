from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import AttendanceMarkRequest, ProposedRange, RecurringSessionRequest, SessionCreateRequest, TransitionRequest
from academy.services.class_session_service import (
    apply_transition,
    bulk_mark_attendance,
    create_session,
    expand_weekly_sessions,
    get_session,
    list_session_history,
    session_to_dict,
)
from academy.services.conflict_service import check_multiple_teacher_conflicts


router = APIRouter(prefix='/sessions', tags=['Sessions'])


@router.post('', status_code=201)
def create(payload: SessionCreateRequest, db: Session = Depends(get_db)):
    try:
        row = create_session(
            db,
            class_id=payload.class_id,
            start_at=payload.start_at,
            end_at=payload.end_at,
            teacher_ids=payload.teacher_ids,
            student_ids=payload.student_ids,
            actor_id=payload.actor_id,
            allow_availability_override=payload.allow_availability_override,
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return session_to_dict(row)


@router.post('/recurring', status_code=201)
def create_recurring(payload: RecurringSessionRequest, db: Session = Depends(get_db)):
    try:
        rows = expand_weekly_sessions(
            db,
            class_id=payload.class_id,
            weekdays=payload.weekdays,
            start_time_value=payload.start_time,
            end_time_value=payload.end_time,
            start_date=payload.start_date,
            end_date=payload.end_date,
            teacher_ids=payload.teacher_ids,
            student_ids=payload.student_ids,
            tz_name=payload.timezone,
            actor_id=payload.actor_id,
            allow_availability_override=payload.allow_availability_override,
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return {'count': len(rows), 'sessions': [session_to_dict(row) for row in rows]}


@router.get('/{session_id}')
def get_one(session_id: int, db: Session = Depends(get_db)):
    try:
        row = get_session(db, session_id)
    except LookupError as exc:
        raise to_http_exception(exc) from exc
    return session_to_dict(row)


@router.get('/{session_id}/history')
def history(session_id: int, db: Session = Depends(get_db)):
    try:
        get_session(db, session_id)
    except LookupError as exc:
        raise to_http_exception(exc) from exc
    return [
        {
            'action': row.action,
            'from_status': row.from_status,
            'to_status': row.to_status,
            'actor_id': row.actor_id,
            'notes': row.notes,
            'created_at': row.created_at.isoformat(),
        }
        for row in list_session_history(db, session_id)
    ]


@router.post('/{session_id}/transition')
def transition(session_id: int, payload: TransitionRequest, db: Session = Depends(get_db)):
    try:
        row = apply_transition(
            db,
            session_id,
            payload.action,
            actor_id=payload.actor_id,
            reason=payload.reason,
            new_start=payload.new_start,
            allow_availability_override=payload.allow_availability_override,
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return session_to_dict(row)


@router.post('/{session_id}/conflicts')
def conflicts(session_id: int, payload: ProposedRange, db: Session = Depends(get_db)):
    try:
        row = get_session(db, session_id)
        if payload.end_at <= payload.start_at:
            raise ValueError('end_at must be after start_at')
        reports = check_multiple_teacher_conflicts(
            db,
            row.teacher_ids,
            payload.start_at,
            payload.end_at,
            exclude_session_ids=[row.id],
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return {
        'session_id': session_id,
        'has_conflict': any(report.has_conflict for report in reports.values()),
        'teachers': [report.to_dict() for report in reports.values()],
    }


@router.post('/{session_id}/attendance')
def attendance(session_id: int, payload: AttendanceMarkRequest, db: Session = Depends(get_db)):
    try:
        records = bulk_mark_attendance(db, session_id, payload.marks, actor_id=payload.actor_id)
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return {
        'session_id': session_id,
        'attendance': [
            {'participant_id': row.participant_id, 'role': row.participant_role, 'status': row.attendance_status}
            for row in records
        ],
    }
