from fastapi import APIRouter, Depends, Query, Response
from sqlalchemy.orm import Session

from academy.core.http_errors import to_http_exception
from academy.db import get_db
from academy.schemas import InvoiceCreateRequest, InvoiceStatusRequest
from academy.services.invoice_service import generate_invoice, get_invoice, invoice_to_dict, list_invoices, set_invoice_status


router = APIRouter(prefix='/invoices', tags=['Invoices'])


@router.post('', status_code=201)
def create(payload: InvoiceCreateRequest, response: Response, db: Session = Depends(get_db)):
    try:
        invoice = generate_invoice(
            db,
            student_id=payload.student_id,
            subscription_id=payload.subscription_id,
            period_start=payload.period.start,
            period_end=payload.period.end,
            allow_inactive=payload.allow_inactive,
        )
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    if invoice is None:
        response.status_code = 200
        return {'issued': False, 'detail': 'No billable sessions in this period'}
    return {'issued': True, 'invoice': invoice_to_dict(invoice)}


@router.get('')
def list_all(
    student_id: int | None = Query(default=None),
    status: str | None = Query(default=None),
    db: Session = Depends(get_db),
):
    return [invoice_to_dict(row) for row in list_invoices(db, student_id=student_id, status=status)]


@router.get('/{invoice_number}')
def get_one(invoice_number: str, db: Session = Depends(get_db)):
    try:
        invoice = get_invoice(db, invoice_number)
    except LookupError as exc:
        raise to_http_exception(exc) from exc
    return invoice_to_dict(invoice)


@router.post('/{invoice_number}/status')
def update_status(invoice_number: str, payload: InvoiceStatusRequest, db: Session = Depends(get_db)):
    try:
        invoice = set_invoice_status(db, invoice_number, payload.status)
    except (ValueError, LookupError) as exc:
        raise to_http_exception(exc) from exc
    return invoice_to_dict(invoice)
