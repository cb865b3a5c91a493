from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.orm import Session

from academy.core.errors import InvalidTransition, NotFound
from academy.core.periods import as_utc, to_storage
from academy.core.session_states import SessionAction, SessionStatus
from academy.core.time_provider import TimeProvider, default_time_provider
from academy.models import ClassSession, RescheduleRequest, RescheduleRequestStatus, Role, User
from academy.services.class_session_service import emit_session_event, get_session, run_locked, transition_session
from academy.services.notification_service import RESCHEDULE_APPROVED, RESCHEDULE_REJECTED, RESCHEDULE_REQUESTED, notify


logger = logging.getLogger(__name__)


def _require_user(db: Session, user_id: int) -> User:
    user = db.get(User, user_id)
    if user is None:
        raise NotFound('user', user_id)
    return user


def _require_admin(db: Session, user_id: int) -> User:
    user = _require_user(db, user_id)
    if user.role != Role.ADMIN.value:
        raise PermissionError('Admin role required to resolve reschedule requests')
    return user


def get_request(db: Session, request_id: int) -> RescheduleRequest:
    row = db.get(RescheduleRequest, request_id)
    if row is None:
        raise NotFound('reschedule request', request_id)
    return row


def create_reschedule_request(
    db: Session,
    *,
    session_id: int,
    requested_by: int,
    proposed_start: datetime,
    reason: str,
) -> RescheduleRequest:
    if not (reason or '').strip():
        raise ValueError('A reason is required to request a reschedule')
    requester = _require_user(db, requested_by)
    session = get_session(db, session_id)
    if requester.role != Role.ADMIN.value and requested_by not in session.teacher_ids:
        raise PermissionError('Only an assigned teacher or an admin can request a reschedule')
    if session.status != SessionStatus.SCHEDULED.value:
        raise InvalidTransition(session.status, SessionAction.RESCHEDULE.value)

    row = RescheduleRequest(
        session_id=session_id,
        requested_by=requested_by,
        proposed_start=to_storage(proposed_start),
        reason=reason.strip(),
        status=RescheduleRequestStatus.PENDING.value,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    logger.info('reschedule_requested request_id=%s session_id=%s requested_by=%s', row.id, session_id, requested_by)
    notify(
        RESCHEDULE_REQUESTED,
        request_id=row.id,
        session_id=session_id,
        requested_by=requested_by,
        proposed_start=as_utc(row.proposed_start).isoformat(),
        reason=row.reason,
    )
    return row


def _ensure_pending(row: RescheduleRequest) -> None:
    if row.status != RescheduleRequestStatus.PENDING.value:
        raise InvalidTransition(row.status, 'resolve', entity='reschedule request')


def approve_reschedule_request(
    db: Session,
    request_id: int,
    *,
    admin_id: int,
    note: str = '',
    allow_availability_override: bool | None = None,
    time_provider: TimeProvider = default_time_provider,
) -> RescheduleRequest:
    """Move the session to the proposed time and close the request together.

    A conflicting proposed time raises ScheduleConflict and leaves both the
    session and the request untouched.
    """
    _require_admin(db, admin_id)
    request_row = get_request(db, request_id)
    _ensure_pending(request_row)
    session_id = request_row.session_id
    proposed_start = request_row.proposed_start

    def _mutate(session: ClassSession) -> dict[str, Any]:
        row = (
            db.query(RescheduleRequest)
            .filter(RescheduleRequest.id == request_id)
            .with_for_update()
            .populate_existing()
            .one()
        )
        _ensure_pending(row)
        event = transition_session(
            db,
            session,
            SessionAction.RESCHEDULE,
            actor_id=admin_id,
            reason=row.reason,
            new_start=proposed_start,
            allow_availability_override=allow_availability_override,
            time_provider=time_provider,
        )
        row.status = RescheduleRequestStatus.APPROVED.value
        row.processed_by = admin_id
        row.processed_at = time_provider.utc_now()
        row.resolution_note = (note or '').strip()
        return event

    event = run_locked(db, session_id, 'approve_reschedule', _mutate)
    request_row = get_request(db, request_id)
    logger.info('reschedule_approved request_id=%s session_id=%s admin_id=%s', request_id, session_id, admin_id)
    emit_session_event(event)
    notify(
        RESCHEDULE_APPROVED,
        request_id=request_id,
        session_id=session_id,
        requested_by=request_row.requested_by,
        new_start=as_utc(proposed_start).isoformat(),
    )
    return request_row


def reject_reschedule_request(
    db: Session,
    request_id: int,
    *,
    admin_id: int,
    note: str = '',
    time_provider: TimeProvider = default_time_provider,
) -> RescheduleRequest:
    _require_admin(db, admin_id)
    row = (
        db.query(RescheduleRequest)
        .filter(RescheduleRequest.id == request_id)
        .with_for_update()
        .first()
    )
    if row is None:
        raise NotFound('reschedule request', request_id)
    _ensure_pending(row)
    row.status = RescheduleRequestStatus.REJECTED.value
    row.processed_by = admin_id
    row.processed_at = time_provider.utc_now()
    row.resolution_note = (note or '').strip()
    db.commit()
    db.refresh(row)
    logger.info('reschedule_rejected request_id=%s admin_id=%s', request_id, admin_id)
    notify(
        RESCHEDULE_REJECTED,
        request_id=row.id,
        session_id=row.session_id,
        requested_by=row.requested_by,
        note=row.resolution_note,
    )
    return row


def list_reschedule_requests(
    db: Session,
    *,
    status: str | None = None,
    session_id: int | None = None,
    requested_by: int | None = None,
) -> list[RescheduleRequest]:
    query = db.query(RescheduleRequest)
    if status:
        query = query.filter(RescheduleRequest.status == status)
    if session_id is not None:
        query = query.filter(RescheduleRequest.session_id == session_id)
    if requested_by is not None:
        query = query.filter(RescheduleRequest.requested_by == requested_by)
    return query.order_by(RescheduleRequest.created_at.desc(), RescheduleRequest.id.desc()).all()


def request_to_dict(row: RescheduleRequest) -> dict[str, Any]:
    return {
        'id': row.id,
        'session_id': row.session_id,
        'requested_by': row.requested_by,
        'reason': row.reason,
        'proposed_start': as_utc(row.proposed_start).isoformat(),
        'status': row.status,
        'resolution_note': row.resolution_note,
        'processed_by': row.processed_by,
        'processed_at': as_utc(row.processed_at).isoformat() if row.processed_at else None,
    }
