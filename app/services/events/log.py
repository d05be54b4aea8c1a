"""Read access to the event log and review marking."""

from __future__ import annotations

import logging

from sqlalchemy.orm import Session

from app.models.subscription_event import EventCategory, SubscriptionEvent, SubscriptionEventType
from app.services.clock import Clock, system_clock
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_raise,
    validate_enum,
)
from app.services.exceptions import ConflictError

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = {
    "created_at": SubscriptionEvent.created_at,
    "event_type": SubscriptionEvent.event_type,
    "category": SubscriptionEvent.category,
}


class SubscriptionEvents:
    def __init__(self, clock: Clock | None = None):
        self.clock = clock or system_clock

    def get(self, db: Session, event_id) -> SubscriptionEvent:
        return get_or_raise(db, SubscriptionEvent, event_id, "Subscription event")

    def list(
        self,
        db: Session,
        subscription_id: str | None = None,
        event_type: str | None = None,
        category: str | None = None,
        is_error: bool | None = None,
        requires_review: bool | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[SubscriptionEvent]:
        query = db.query(SubscriptionEvent)
        if subscription_id:
            query = query.filter(SubscriptionEvent.subscription_id == coerce_uuid(subscription_id))
        if event_type:
            query = query.filter(
                SubscriptionEvent.event_type
                == validate_enum(event_type, SubscriptionEventType, "event_type")
            )
        if category:
            query = query.filter(
                SubscriptionEvent.category == validate_enum(category, EventCategory, "category")
            )
        if is_error is not None:
            query = query.filter(SubscriptionEvent.is_error.is_(is_error))
        if requires_review is not None:
            query = query.filter(SubscriptionEvent.requires_review.is_(requires_review))
            if requires_review:
                query = query.filter(SubscriptionEvent.reviewed_at.is_(None))
        query = apply_ordering(query, order_by, order_dir, _ORDER_COLUMNS)
        return apply_pagination(query, limit, offset).all()

    def mark_reviewed(self, db: Session, event_id, reviewed_by: str,
                      notes: str | None = None) -> SubscriptionEvent:
        event = self.get(db, event_id)
        if event.reviewed_at is not None:
            raise ConflictError(
                "Event has already been reviewed",
                context={"event_id": str(event.id), "reviewed_by": event.reviewed_by},
            )
        event.reviewed_at = self.clock.now()
        event.reviewed_by = reviewed_by
        event.review_notes = notes
        db.commit()
        db.refresh(event)
        logger.info(f"Event {event.id} reviewed by {reviewed_by}")
        return event


subscription_events = SubscriptionEvents()
