from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_actor, get_db
from app.schemas.billing import (
    DunningRunResponse,
    InvoiceCancelRequest,
    InvoiceDisputeRequest,
    InvoiceGenerationRequest,
    InvoiceGenerationResponse,
    InvoiceRead,
    InvoiceRefundRequest,
)
from app.schemas.common import ListResponse
from app.services import billing as billing_service
from app.services.billing.gateway import get_gateway
from app.services.response import list_response

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.get("", response_model=ListResponse[InvoiceRead])
def list_invoices(
    subscription_id: str | None = None,
    status: str | None = None,
    dunning_status: str | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items = billing_service.invoices.list(
        db, subscription_id, status, dunning_status, order_by, order_dir, limit, offset
    )
    return list_response(items, limit, offset)


@router.post("/generate", response_model=InvoiceGenerationResponse)
def generate_due_invoices(payload: InvoiceGenerationRequest, db: Session = Depends(get_db)):
    return billing_service.invoices.generate_due_invoices(
        db, run_at=payload.run_at, batch_size=payload.batch_size, dry_run=payload.dry_run
    )


@router.post("/dunning/advance", response_model=DunningRunResponse)
def advance_dunning(db: Session = Depends(get_db)):
    return billing_service.dunning.advance_dunning(db, gateway=get_gateway())


@router.get("/{invoice_id}", response_model=InvoiceRead)
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    return billing_service.invoices.get(db, invoice_id)


@router.post("/{invoice_id}/payments", response_model=InvoiceRead)
def record_payment_attempt(
    invoice_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return billing_service.payments.record_payment_attempt(
        db, invoice_id, gateway=get_gateway(), actor=actor
    )


@router.post("/{invoice_id}/cancel", response_model=InvoiceRead)
def cancel_invoice(
    invoice_id: str,
    payload: InvoiceCancelRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return billing_service.invoices.cancel_invoice(db, invoice_id, payload.reason, actor=actor)


@router.post("/{invoice_id}/refund", response_model=InvoiceRead)
def refund_invoice(
    invoice_id: str,
    payload: InvoiceRefundRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return billing_service.invoices.refund_invoice(
        db, invoice_id, payload.amount, payload.reason, actor=actor
    )


@router.post("/{invoice_id}/dispute", response_model=InvoiceRead)
def mark_disputed(
    invoice_id: str,
    payload: InvoiceDisputeRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return billing_service.invoices.mark_disputed(
        db, invoice_id, payload.disputed, payload.notes, actor=actor
    )
