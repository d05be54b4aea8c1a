import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.db import Base


class SubscriptionStatus(enum.Enum):
    pending = "pending"
    active = "active"
    paused = "paused"
    cancelled = "cancelled"
    expired = "expired"


class BillingCycle(enum.Enum):
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"
    custom = "custom"


class CancellationReason(enum.Enum):
    customer_request = "customer_request"
    non_payment = "non_payment"
    fraud = "fraud"
    other = "other"


class Subscription(Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index("ix_subscriptions_account_id", "account_id"),
        Index("ix_subscriptions_parent_id", "parent_subscription_id"),
        Index("ix_subscriptions_status_next_billing", "status", "next_billing_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    account_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("accounts.id"), nullable=False
    )
    parent_subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id")
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.pending, nullable=False
    )
    name: Mapped[str | None] = mapped_column(String(160))
    description: Mapped[str | None] = mapped_column(Text)

    billing_cycle: Mapped[BillingCycle] = mapped_column(
        Enum(BillingCycle), default=BillingCycle.monthly, nullable=False
    )
    custom_billing_days: Mapped[int | None] = mapped_column(Integer)
    billing_day_of_month: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    base_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    discount_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("0.00")
    )
    tax_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    next_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_billing_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    # Period start most recently claimed by the invoice sweep.
    last_invoiced_period_start: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )

    has_trial: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_days: Mapped[int | None] = mapped_column(Integer)
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    resumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    planned_resume_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    pause_reason: Mapped[str | None] = mapped_column(String(200))
    total_paused_days: Mapped[int] = mapped_column(Integer, default=0)

    cancellation_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancellation_effective_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    cancellation_reason: Mapped[CancellationReason | None] = mapped_column(
        Enum(CancellationReason)
    )
    cancellation_notes: Mapped[str | None] = mapped_column(Text)
    notice_period_days: Mapped[int] = mapped_column(Integer, default=30)

    payment_provider: Mapped[str | None] = mapped_column(String(60))
    payment_method_last4: Mapped[str | None] = mapped_column(String(4))
    payment_method_type: Mapped[str | None] = mapped_column(String(40))

    auto_renew: Mapped[bool] = mapped_column(Boolean, default=True)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, default=3)

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    settings: Mapped[dict | None] = mapped_column(JSON)
    usage_limits: Mapped[dict | None] = mapped_column(JSON)
    current_usage: Mapped[dict | None] = mapped_column(JSON)

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    account = relationship("Account", back_populates="subscriptions")
    parent = relationship(
        "Subscription", remote_side=[id], back_populates="children"
    )
    children = relationship("Subscription", back_populates="parent")
    product_lines = relationship(
        "SubscriptionProductLine",
        back_populates="subscription",
        order_by="SubscriptionProductLine.sort_order",
    )
    invoices = relationship("Invoice", back_populates="subscription")
    events = relationship("SubscriptionEvent", back_populates="subscription")


class SubscriptionProductLine(Base):
    __tablename__ = "subscription_product_lines"
    __table_args__ = (
        Index("ix_subscription_product_lines_subscription", "subscription_id"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False
    )
    product_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("products.id"), nullable=False
    )
    # Snapshot taken at attach time; never refreshed from the catalog.
    product_name: Mapped[str] = mapped_column(String(200), nullable=False)
    product_sku: Mapped[str | None] = mapped_column(String(80))

    quantity: Mapped[int] = mapped_column(Integer, default=1)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    discount_percentage: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), default=Decimal("0.00")
    )
    total_price: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    is_recurring: Mapped[bool] = mapped_column(Boolean, default=True)
    is_setup_fee: Mapped[bool] = mapped_column(Boolean, default=False)
    billing_frequency_days: Mapped[int | None] = mapped_column(Integer)
    added_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    removal_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_billed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    is_usage_based: Mapped[bool] = mapped_column(Boolean, default=False)
    usage_config: Mapped[dict | None] = mapped_column(JSON)
    current_usage: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))
    usage_limit: Mapped[Decimal | None] = mapped_column(Numeric(14, 4))

    has_trial: Mapped[bool] = mapped_column(Boolean, default=False)
    trial_days: Mapped[int | None] = mapped_column(Integer)
    trial_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    configuration: Mapped[dict | None] = mapped_column(JSON)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    notes: Mapped[str | None] = mapped_column(Text)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    subscription = relationship("Subscription", back_populates="product_lines")
    product = relationship("Product")
