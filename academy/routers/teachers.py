from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import UnavailabilityPayload, WeeklyAvailabilityPayload
from academy.services.teacher_availability_service import (
    create_teacher_unavailability,
    delete_teacher_unavailability,
    list_teacher_unavailability,
    list_weekly_availability,
    replace_weekly_availability,
)


router = APIRouter(prefix='/teachers', tags=['Teachers'])


def _window(row) -> dict:
    return {
        'id': row.id,
        'weekday': row.weekday,
        'start_time': row.start_time.strftime('%H:%M'),
        'end_time': row.end_time.strftime('%H:%M'),
    }


@router.get('/{teacher_id}/unavailability')
def list_unavailability(teacher_id: int, db: Session = Depends(get_db)):
    return [{**_window(row), 'reason': row.reason} for row in list_teacher_unavailability(db, teacher_id)]


@router.post('/{teacher_id}/unavailability', status_code=201)
def create_unavailability(teacher_id: int, payload: UnavailabilityPayload, db: Session = Depends(get_db)):
    try:
        row = create_teacher_unavailability(
            db,
            teacher_id=teacher_id,
            weekday=payload.weekday,
            start_time_value=payload.start_time,
            end_time_value=payload.end_time,
            reason=payload.reason,
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return {**_window(row), 'reason': row.reason}


@router.delete('/{teacher_id}/unavailability/{block_id}')
def remove_unavailability(teacher_id: int, block_id: int, db: Session = Depends(get_db)):
    if not delete_teacher_unavailability(db, teacher_id=teacher_id, block_id=block_id):
        raise HTTPException(status_code=404, detail='Blocked slot not found')
    return {'deleted': True}


@router.get('/{teacher_id}/availability')
def get_availability(teacher_id: int, db: Session = Depends(get_db)):
    return [_window(row) for row in list_weekly_availability(db, teacher_id)]


@router.put('/{teacher_id}/availability')
def put_availability(teacher_id: int, payload: WeeklyAvailabilityPayload, db: Session = Depends(get_db)):
    try:
        rows = replace_weekly_availability(
            db,
            teacher_id=teacher_id,
            slots=[(slot.weekday, slot.start_time, slot.end_time) for slot in payload.slots],
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return [_window(row) for row in rows]
