from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import RescheduleRequestCreate, RescheduleResolution
from academy.services.reschedule_service import (
    approve_reschedule_request,
    create_reschedule_request,
    list_reschedule_requests,
    reject_reschedule_request,
    request_to_dict,
)


router = APIRouter(prefix='/reschedule-requests', tags=['Reschedule Requests'])


@router.post('', status_code=201)
def create(payload: RescheduleRequestCreate, db: Session = Depends(get_db)):
    try:
        row = create_reschedule_request(
            db,
            session_id=payload.session_id,
            requested_by=payload.requested_by,
            proposed_start=payload.proposed_start,
            reason=payload.reason,
        )
    except (ValueError, LookupError, PermissionError) as exc:
        raise to_http_exception(exc) from exc
    return request_to_dict(row)


@router.get('')
def list_all(
    status: str | None = Query(default=None),
    session_id: int | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return [request_to_dict(row) for row in list_reschedule_requests(db, status=status, session_id=session_id)]


@router.post('/{request_id}/approve')
def approve(request_id: int, payload: RescheduleResolution, db: Session = Depends(get_db)):
    try:
        row = approve_reschedule_request(
            db,
            request_id,
            admin_id=payload.admin_id,
            note=payload.note,
            allow_availability_override=payload.allow_availability_override,
        )
    except (ValueError, LookupError, PermissionError) as exc:
        raise to_http_exception(exc) from exc
    return request_to_dict(row)


@router.post('/{request_id}/reject')
def reject(request_id: int, payload: RescheduleResolution, db: Session = Depends(get_db)):
    try:
        row = reject_reschedule_request(db, request_id, admin_id=payload.admin_id, note=payload.note)
    except (ValueError, LookupError, PermissionError) as exc:
        raise to_http_exception(exc) from exc
    return request_to_dict(row)
