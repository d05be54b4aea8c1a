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
from app.models.subscription import SubscriptionStatus


class SubscriptionEventType(enum.Enum):
    # lifecycle
    created = "created"
    activated = "activated"
    paused = "paused"
    resumed = "resumed"
    cancelled = "cancelled"
    expired = "expired"
    deleted = "deleted"
    # billing
    invoice_generated = "invoice_generated"
    payment_succeeded = "payment_succeeded"
    payment_failed = "payment_failed"
    payment_retry = "payment_retry"
    invoice_cancelled = "invoice_cancelled"
    invoice_refunded = "invoice_refunded"
    # modification
    updated = "updated"
    upgraded = "upgraded"
    downgraded = "downgraded"
    product_added = "product_added"
    product_removed = "product_removed"
    # hierarchy
    parent_assigned = "parent_assigned"
    child_added = "child_added"
    child_removed = "child_removed"


class EventCategory(enum.Enum):
    lifecycle = "lifecycle"
    billing = "billing"
    modification = "modification"
    hierarchy = "hierarchy"


class SubscriptionEvent(Base):
    __tablename__ = "subscription_events"
    __table_args__ = (
        Index("ix_subscription_events_subscription_created", "subscription_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    # Null only for error events of creates that never produced a row.
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id")
    )
    event_type: Mapped[SubscriptionEventType] = mapped_column(
        Enum(SubscriptionEventType), nullable=False
    )
    category: Mapped[EventCategory] = mapped_column(Enum(EventCategory), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    previous_status: Mapped[SubscriptionStatus | None] = mapped_column(
        Enum(SubscriptionStatus)
    )
    new_status: Mapped[SubscriptionStatus | None] = mapped_column(Enum(SubscriptionStatus))

    amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    currency: Mapped[str | None] = mapped_column(String(3))
    invoice_number: Mapped[str | None] = mapped_column(String(60))

    actor: Mapped[str | None] = mapped_column(String(120))
    event_source: Mapped[str | None] = mapped_column(String(40))
    related_product_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    related_subscription_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))

    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    previous_state: Mapped[dict | None] = mapped_column(JSON)
    new_state: Mapped[dict | None] = mapped_column(JSON)
    changes: Mapped[dict | None] = mapped_column(JSON)

    is_error: Mapped[bool] = mapped_column(Boolean, default=False)
    error_code: Mapped[str | None] = mapped_column(String(60))
    error_message: Mapped[str | None] = mapped_column(Text)

    customer_notified: Mapped[bool] = mapped_column(Boolean, default=False)
    notification_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    webhook_sent: Mapped[bool] = mapped_column(Boolean, default=False)
    webhook_sent_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    webhook_response_code: Mapped[int | None] = mapped_column(Integer)
    dispatch_attempts: Mapped[int] = mapped_column(Integer, default=0)
    next_dispatch_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    requires_review: Mapped[bool] = mapped_column(Boolean, default=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reviewed_by: Mapped[str | None] = mapped_column(String(120))
    review_notes: Mapped[str | None] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC)
    )

    subscription = relationship("Subscription", back_populates="events")
