from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import PlanCreateRequest, SubscriptionCreateRequest
from academy.services.subscription_service import (
    create_plan,
    deactivate_subscription,
    list_subscriptions,
    plan_to_dict,
    reactivate_subscription,
    subscribe_student,
    subscription_to_dict,
)


router = APIRouter(prefix='/subscriptions', tags=['Subscriptions'])


@router.post('/plans', status_code=201)
def create_plan_endpoint(payload: PlanCreateRequest, db: Session = Depends(get_db)):
    try:
        plan = create_plan(
            db,
            name=payload.name,
            hourly_rate=payload.hourly_rate,
            hours_per_month=payload.hours_per_month,
            max_free_absences=payload.max_free_absences,
            currency=payload.currency,
            cadence=payload.cadence,
            cadence_multiplier=payload.cadence_multiplier,
        )
    except ValueError as exc:
        raise to_http_exception(exc) from exc
    return plan_to_dict(plan)


@router.post('', status_code=201)
def subscribe(payload: SubscriptionCreateRequest, db: Session = Depends(get_db)):
    try:
        row = subscribe_student(db, student_id=payload.student_id, plan_id=payload.plan_id, start_date=payload.start_date)
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return subscription_to_dict(row)


@router.get('')
def list_all(
    student_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return [subscription_to_dict(row) for row in list_subscriptions(db, student_id=student_id, status=status)]


@router.post('/{subscription_id}/deactivate')
def deactivate(subscription_id: int, db: Session = Depends(get_db)):
    try:
        row = deactivate_subscription(db, subscription_id)
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return subscription_to_dict(row)


@router.post('/{subscription_id}/reactivate')
def reactivate(subscription_id: int, db: Session = Depends(get_db)):
    try:
        row = reactivate_subscription(db, subscription_id)
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return subscription_to_dict(row)
