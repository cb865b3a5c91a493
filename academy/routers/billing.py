from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import BillingCalculateRequest
from academy.services.billing_service import calculate_student_billing


router = APIRouter(prefix='/billing', tags=['Billing'])


@router.post('/calculate')
def calculate(payload: BillingCalculateRequest, db: Session = Depends(get_db)):
    try:
        result = calculate_student_billing(
            db,
            student_id=payload.student_id,
            subscription_id=payload.subscription_id,
            period_start=payload.period.start,
            period_end=payload.period.end,
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return result.to_dict()
