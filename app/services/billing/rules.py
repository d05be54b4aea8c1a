"""Invoice status machine, dunning schedule and invoice numbering."""

import math
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import DunningStatus, Invoice, InvoiceStatus
from app.services.clock import as_utc
from app.services.common import to_decimal
from app.services.exceptions import ConflictError, InvalidStateTransitionError

DUNNING_SCHEDULE_DAYS = (3, 7, 14, 21)
MAX_DUNNING_LEVEL = len(DUNNING_SCHEDULE_DAYS)

INVOICE_TRANSITIONS: dict[InvoiceStatus, frozenset[InvoiceStatus]] = {
    InvoiceStatus.draft: frozenset({InvoiceStatus.pending, InvoiceStatus.cancelled}),
    InvoiceStatus.pending: frozenset(
        {InvoiceStatus.paid, InvoiceStatus.failed, InvoiceStatus.cancelled}
    ),
    InvoiceStatus.paid: frozenset({InvoiceStatus.refunded}),
    InvoiceStatus.failed: frozenset(),
    InvoiceStatus.cancelled: frozenset(),
    InvoiceStatus.refunded: frozenset(),
}

DUNNING_TRANSITIONS: dict[DunningStatus, frozenset[DunningStatus]] = {
    DunningStatus.not_required: frozenset({DunningStatus.in_progress}),
    DunningStatus.in_progress: frozenset(
        {
            DunningStatus.grace_period,
            DunningStatus.suspended,
            DunningStatus.resolved,
            DunningStatus.failed,
        }
    ),
    DunningStatus.grace_period: frozenset(),
    DunningStatus.suspended: frozenset(),
    DunningStatus.resolved: frozenset(),
    DunningStatus.failed: frozenset(),
}


def validate_invoice_transition(current: InvoiceStatus, requested: InvoiceStatus) -> None:
    if requested not in INVOICE_TRANSITIONS.get(current, frozenset()):
        raise InvalidStateTransitionError(
            current,
            requested,
            message=(
                f"Invoice cannot move from {current.value} to {requested.value}"
            ),
        )


def validate_dunning_transition(current: DunningStatus, requested: DunningStatus) -> None:
    if requested not in DUNNING_TRANSITIONS.get(current, frozenset()):
        raise InvalidStateTransitionError(
            current,
            requested,
            message=f"Dunning cannot move from {current.value} to {requested.value}",
        )


def is_overdue(invoice: Invoice, now: datetime) -> bool:
    return (
        invoice.status == InvoiceStatus.pending
        and as_utc(invoice.due_date) < now
        and to_decimal(invoice.balance_amount) > 0
    )


def can_be_paid(invoice: Invoice) -> bool:
    return invoice.status == InvoiceStatus.pending and to_decimal(invoice.balance_amount) > 0


def should_start_dunning(invoice: Invoice, now: datetime) -> bool:
    return (
        is_overdue(invoice, now)
        and (invoice.payment_attempts or 0) >= 1
        and invoice.dunning_status == DunningStatus.not_required
    )


def get_days_overdue(invoice: Invoice, now: datetime) -> int:
    """Whole days past due, rounding partial days up; 0 when not overdue."""
    due = as_utc(invoice.due_date)
    if not is_overdue(invoice, now):
        return 0
    return math.ceil((now - due).total_seconds() / 86400)


def get_next_dunning_date(invoice: Invoice) -> datetime | None:
    if invoice.dunning_status != DunningStatus.in_progress:
        return None
    level = invoice.dunning_level or 0
    if level >= MAX_DUNNING_LEVEL:
        return None
    return as_utc(invoice.due_date) + timedelta(days=DUNNING_SCHEDULE_DAYS[level])


def recalculate_balance(invoice: Invoice) -> Decimal:
    balance = to_decimal(invoice.total_amount) - to_decimal(invoice.paid_amount)
    if balance < 0:
        raise ConflictError(
            "Paid amount exceeds the invoice total",
            context={"invoice_id": str(invoice.id)},
        )
    invoice.balance_amount = balance
    return balance


def generate_invoice_number(db: Session, issued_at: datetime, attempts: int = 5) -> str:
    prefix = settings.billing_invoice_number_prefix
    for _ in range(attempts):
        candidate = f"{prefix}-{issued_at:%Y%m}-{uuid.uuid4().hex[:8].upper()}"
        exists = (
            db.query(Invoice.id).filter(Invoice.invoice_number == candidate).first()
        )
        if not exists:
            return candidate
    raise ConflictError("Could not allocate a unique invoice number")
