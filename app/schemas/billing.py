from __future__ import annotations

from datetime import datetime, timedelta
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field

from app.models.billing import DunningStatus, InvoiceStatus
from app.services.billing.rules import DUNNING_SCHEDULE_DAYS


class InvoiceLineItem(BaseModel):
    type: str
    product_id: str | None = None
    name: str
    sku: str | None = None
    quantity: int
    unit_price: Decimal
    discount: Decimal
    tax: Decimal
    total: Decimal


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    invoice_number: str
    status: InvoiceStatus
    dunning_status: DunningStatus
    period_start: datetime
    period_end: datetime
    subtotal_amount: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    tax_rate: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance_amount: Decimal
    currency: str
    invoice_date: datetime
    due_date: datetime
    paid_date: datetime | None = None
    cancelled_date: datetime | None = None
    refunded_date: datetime | None = None
    payment_attempts: int
    last_payment_attempt_date: datetime | None = None
    next_retry_date: datetime | None = None
    payment_transaction_id: str | None = None
    last_payment_error: str | None = None
    last_payment_error_code: str | None = None
    line_items: list[InvoiceLineItem] = Field(default_factory=list)
    has_proration: bool
    proration_details: dict | None = None
    customer_details: dict | None = None
    billing_address: dict | None = None
    dunning_level: int
    dunning_started_at: datetime | None = None
    suspension_date: datetime | None = None
    is_disputed: bool
    is_sent: bool
    sent_date: datetime | None = None
    notes: str | None = None
    metadata: dict | None = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    created_at: datetime
    updated_at: datetime

    @computed_field
    @property
    def next_dunning_date(self) -> datetime | None:
        if self.dunning_status != DunningStatus.in_progress:
            return None
        if self.dunning_level >= len(DUNNING_SCHEDULE_DAYS):
            return None
        return self.due_date + timedelta(days=DUNNING_SCHEDULE_DAYS[self.dunning_level])


class InvoiceCancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)


class InvoiceRefundRequest(BaseModel):
    amount: Decimal | None = Field(default=None, gt=0)
    reason: str | None = Field(default=None, max_length=500)


class InvoiceDisputeRequest(BaseModel):
    disputed: bool = True
    notes: str | None = None


class InvoiceGenerationRequest(BaseModel):
    run_at: datetime | None = None
    batch_size: int | None = Field(default=None, ge=1, le=5000)
    dry_run: bool = False


class InvoiceGenerationResponse(BaseModel):
    run_at: datetime
    subscriptions_scanned: int
    invoices_created: int
    skipped: int
    errors: int = 0
    invoice_ids: list[str]
    dry_run: bool


class DunningRunResponse(BaseModel):
    started: int
    retried: int
    resolved: int
    suspended: int
    subscriptions_cancelled: int
    errors: int = 0
