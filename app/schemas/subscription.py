from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field, model_validator

from app.models.subscription import (
    BillingCycle,
    CancellationReason,
    SubscriptionStatus,
)


class SubscriptionProductLineCreate(BaseModel):
    product_id: UUID
    quantity: int = Field(default=1, ge=1)
    unit_price: Decimal | None = Field(default=None, ge=0)
    discount_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    discount_percentage: Decimal = Field(default=Decimal("0.00"), ge=0, le=100)
    is_recurring: bool = True
    is_setup_fee: bool = False
    billing_frequency_days: int | None = Field(default=None, ge=1)
    is_usage_based: bool = False
    usage_config: dict | None = None
    usage_limit: Decimal | None = Field(default=None, ge=0)
    has_trial: bool = False
    trial_days: int | None = Field(default=None, ge=0)
    configuration: dict | None = None
    metadata: dict | None = None
    notes: str | None = None
    sort_order: int = 0

    @model_validator(mode="after")
    def _setup_fee_is_one_time(self) -> SubscriptionProductLineCreate:
        if self.is_setup_fee and self.is_recurring:
            raise ValueError("setup fee lines cannot be recurring")
        return self


class SubscriptionProductLineRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID
    product_id: UUID
    product_name: str
    product_sku: str | None = None
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    total_price: Decimal
    is_recurring: bool
    is_setup_fee: bool
    billing_frequency_days: int | None = None
    added_date: datetime
    removal_date: datetime | None = None
    last_billed_date: datetime | None = None
    is_usage_based: bool
    usage_config: dict | None = None
    current_usage: Decimal | None = None
    usage_limit: Decimal | None = None
    has_trial: bool
    trial_days: int | None = None
    trial_end_date: datetime | None = None
    configuration: dict | None = None
    metadata: dict | None = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    notes: str | None = None
    sort_order: int
    is_active: bool


class SubscriptionBase(BaseModel):
    name: str | None = Field(default=None, max_length=160)
    description: str | None = None
    billing_cycle: BillingCycle = BillingCycle.monthly
    custom_billing_days: int | None = Field(default=None, ge=1, le=3650)
    billing_day_of_month: int = Field(default=1, ge=1, le=28)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    base_amount: Decimal = Field(default=Decimal("0.00"), ge=0)
    discount_amount: Decimal | None = Field(default=None, ge=0)
    discount_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    tax_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    start_date: datetime | None = None
    end_date: datetime | None = None
    has_trial: bool = False
    trial_days: int | None = Field(default=None, ge=0)
    notice_period_days: int | None = Field(default=None, ge=0)
    payment_provider: str | None = Field(default=None, max_length=60)
    payment_method_last4: str | None = Field(default=None, min_length=4, max_length=4)
    payment_method_type: str | None = Field(default=None, max_length=40)
    auto_renew: bool = True
    max_retry_attempts: int | None = Field(default=None, ge=0, le=10)
    metadata: dict | None = None
    settings: dict | None = None
    usage_limits: dict | None = None


class SubscriptionCreate(SubscriptionBase):
    account_id: UUID
    parent_subscription_id: UUID | None = None
    products: list[SubscriptionProductLineCreate] = Field(default_factory=list)

    @model_validator(mode="after")
    def _validate_dates(self) -> SubscriptionCreate:
        if self.start_date and self.end_date and self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        if self.has_trial and not self.trial_days:
            raise ValueError("trial_days is required when has_trial is set")
        return self


class SubscriptionUpdate(BaseModel):
    status: SubscriptionStatus | None = None
    name: str | None = Field(default=None, max_length=160)
    description: str | None = None
    billing_cycle: BillingCycle | None = None
    custom_billing_days: int | None = Field(default=None, ge=1, le=3650)
    billing_day_of_month: int | None = Field(default=None, ge=1, le=28)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    base_amount: Decimal | None = Field(default=None, ge=0)
    discount_amount: Decimal | None = Field(default=None, ge=0)
    discount_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    tax_percentage: Decimal | None = Field(default=None, ge=0, le=100)
    start_date: datetime | None = None
    end_date: datetime | None = None
    has_trial: bool | None = None
    trial_days: int | None = Field(default=None, ge=0)
    notice_period_days: int | None = Field(default=None, ge=0)
    payment_provider: str | None = Field(default=None, max_length=60)
    payment_method_last4: str | None = Field(default=None, min_length=4, max_length=4)
    payment_method_type: str | None = Field(default=None, max_length=40)
    auto_renew: bool | None = None
    max_retry_attempts: int | None = Field(default=None, ge=0, le=10)
    metadata: dict | None = None
    settings: dict | None = None
    usage_limits: dict | None = None
    current_usage: dict | None = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    account_id: UUID
    parent_subscription_id: UUID | None = None
    status: SubscriptionStatus
    name: str | None = None
    description: str | None = None
    billing_cycle: BillingCycle
    custom_billing_days: int | None = None
    billing_day_of_month: int
    currency: str
    base_amount: Decimal
    discount_amount: Decimal
    discount_percentage: Decimal
    tax_percentage: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    start_date: datetime
    end_date: datetime | None = None
    next_billing_date: datetime | None = None
    last_billing_date: datetime | None = None
    has_trial: bool
    trial_days: int | None = None
    trial_end_date: datetime | None = None
    paused_at: datetime | None = None
    resumed_at: datetime | None = None
    planned_resume_date: datetime | None = None
    pause_reason: str | None = None
    total_paused_days: int
    cancellation_date: datetime | None = None
    cancellation_effective_date: datetime | None = None
    cancellation_reason: CancellationReason | None = None
    cancellation_notes: str | None = None
    notice_period_days: int
    payment_provider: str | None = None
    payment_method_last4: str | None = None
    payment_method_type: str | None = None
    auto_renew: bool
    max_retry_attempts: int
    metadata: dict | None = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    settings: dict | None = None
    usage_limits: dict | None = None
    current_usage: dict | None = None
    is_deleted: bool
    deleted_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    product_lines: list[SubscriptionProductLineRead] = Field(default_factory=list)

    @computed_field
    @property
    def recurring_products_total(self) -> Decimal:
        total = Decimal("0.00")
        for line in self.product_lines:
            if line.is_active and line.is_recurring and line.removal_date is None:
                total += line.total_price
        return total


class SubscriptionCancelRequest(BaseModel):
    cancellation_reason: CancellationReason
    cancellation_notes: str | None = None
    cancellation_effective_date: datetime | None = None
    immediate_cancel: bool = False
    cancel_children: bool = True


class SubscriptionPauseRequest(BaseModel):
    pause_effective_date: datetime | None = None
    planned_resume_date: datetime | None = None
    pause_reason: str | None = Field(default=None, max_length=200)
    pause_children: bool = False


class SubscriptionResumeRequest(BaseModel):
    resume_effective_date: datetime | None = None
    next_billing_date: datetime | None = None
    resume_reason: str | None = Field(default=None, max_length=200)
    prorate_first_charge: bool = True
    recalculate_end_date: bool = True
    resume_children: bool = False


class SubscriptionFilters(BaseModel):
    account_id: UUID | None = None
    parent_subscription_id: UUID | None = None
    status: list[SubscriptionStatus] | None = None
    billing_cycle: list[BillingCycle] | None = None
    currency: str | None = None
    auto_renew: bool | None = None
    has_trial: bool | None = None
    is_parent: bool | None = None
    is_child: bool | None = None
    search: str | None = None
    start_date_from: datetime | None = None
    start_date_to: datetime | None = None
    next_billing_from: datetime | None = None
    next_billing_to: datetime | None = None
    min_amount: Decimal | None = None
    max_amount: Decimal | None = None
    expiring_in_days: int | None = Field(default=None, ge=0)
    billing_in_days: int | None = Field(default=None, ge=0)
    include_deleted: bool = False


class HierarchyValidationRead(BaseModel):
    valid: bool
    depth: int
    message: str | None = None
    parent_count: int = 0
    child_levels: int = 0


class SubscriptionStatsRead(BaseModel):
    total: int
    by_status: dict[str, int]
    by_billing_cycle: dict[str, int]
    monthly_recurring_revenue: dict[str, Decimal]


class SubscriptionExpiryResponse(BaseModel):
    run_at: datetime
    expired: int
    dry_run: bool
