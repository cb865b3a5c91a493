from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import SlotConflictRequest
from academy.services.conflict_service import check_multiple_teacher_conflicts


router = APIRouter(prefix='/conflicts', tags=['Conflicts'])


@router.post('/check')
def check(payload: SlotConflictRequest, db: Session = Depends(get_db)):
    if payload.end_at <= payload.start_at:
        raise to_http_exception(ValueError('end_at must be after start_at'))
    try:
        reports = check_multiple_teacher_conflicts(db, payload.teacher_ids, payload.start_at, payload.end_at)
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return {
        'has_conflict': any(report.has_conflict for report in reports.values()),
        'teachers': [report.to_dict() for report in reports.values()],
    }
