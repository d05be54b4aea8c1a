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


class InvoiceStatus(enum.Enum):
    draft = "draft"
    pending = "pending"
    paid = "paid"
    failed = "failed"
    cancelled = "cancelled"
    refunded = "refunded"


class DunningStatus(enum.Enum):
    not_required = "not_required"
    in_progress = "in_progress"
    grace_period = "grace_period"
    suspended = "suspended"
    resolved = "resolved"
    failed = "failed"


class Invoice(Base):
    __tablename__ = "invoices"
    __table_args__ = (
        Index("ix_invoices_subscription_id", "subscription_id"),
        Index("ix_invoices_status_due_date", "status", "due_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False
    )
    invoice_number: Mapped[str] = mapped_column(String(60), unique=True, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.draft, nullable=False
    )
    dunning_status: Mapped[DunningStatus] = mapped_column(
        Enum(DunningStatus), default=DunningStatus.not_required, nullable=False
    )

    period_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    subtotal_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    discount_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    tax_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0.00"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    paid_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    balance_amount: Mapped[Decimal] = mapped_column(
        Numeric(12, 2), default=Decimal("0.00")
    )
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    invoice_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    payment_attempts: Mapped[int] = mapped_column(Integer, default=0)
    last_payment_attempt_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True)
    )
    next_retry_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    payment_transaction_id: Mapped[str | None] = mapped_column(String(120))
    last_payment_error: Mapped[str | None] = mapped_column(Text)
    last_payment_error_code: Mapped[str | None] = mapped_column(String(60))

    # Frozen at generation time.
    line_items: Mapped[list | None] = mapped_column(JSON)
    has_proration: Mapped[bool] = mapped_column(Boolean, default=False)
    proration_details: Mapped[dict | None] = mapped_column(JSON)
    customer_details: Mapped[dict | None] = mapped_column(JSON)
    billing_address: Mapped[dict | None] = mapped_column(JSON)

    dunning_level: Mapped[int] = mapped_column(Integer, default=0)
    dunning_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    suspension_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    is_disputed: Mapped[bool] = mapped_column(Boolean, default=False)
    is_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    sent_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    notes: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    subscription = relationship("Subscription", back_populates="invoices")
