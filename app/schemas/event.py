from datetime import datetime
from decimal import Decimal
from uuid import UUID

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from app.models.subscription import SubscriptionStatus
from app.models.subscription_event import EventCategory, SubscriptionEventType


class SubscriptionEventRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    subscription_id: UUID | None = None
    event_type: SubscriptionEventType
    category: EventCategory
    description: str | None = None
    previous_status: SubscriptionStatus | None = None
    new_status: SubscriptionStatus | None = None
    amount: Decimal | None = None
    currency: str | None = None
    invoice_number: str | None = None
    actor: str | None = None
    event_source: str | None = None
    related_product_id: UUID | None = None
    related_subscription_id: UUID | None = None
    metadata: dict | None = Field(
        default=None, validation_alias=AliasChoices("metadata_", "metadata")
    )
    previous_state: dict | None = None
    new_state: dict | None = None
    changes: dict | None = None
    is_error: bool
    error_code: str | None = None
    error_message: str | None = None
    customer_notified: bool
    notification_sent_at: datetime | None = None
    webhook_sent: bool
    webhook_sent_at: datetime | None = None
    webhook_response_code: int | None = None
    requires_review: bool
    reviewed_at: datetime | None = None
    reviewed_by: str | None = None
    review_notes: str | None = None
    created_at: datetime


class EventReviewRequest(BaseModel):
    reviewed_by: str = Field(min_length=1, max_length=120)
    review_notes: str | None = None


class EventDispatchResponse(BaseModel):
    examined: int
    notified: int
    webhooks: int
    deferred: int
