"""Append-only audit trail for subscription mutations.

``record`` adds an event to the caller's session so it commits (or rolls
back) together with the mutation it documents. ``record_error`` is used
after a failed mutation has been rolled back and writes the error event in
its own commit.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from typing import Any

from sqlalchemy import inspect
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.metrics import count_operation
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_event import SubscriptionEvent, SubscriptionEventType
from app.services.clock import Clock, as_utc, system_clock
from app.services.events.types import category_for, diff_states, json_safe, to_log_format
from app.services.common import coerce_uuid
from app.services.exceptions import SubscriptionError, ValidationFailedError

logger = logging.getLogger(__name__)

_SNAPSHOT_EXCLUDE = {"created_at", "updated_at"}


def snapshot(subscription: Subscription) -> dict[str, Any]:
    """JSON-safe copy of the subscription's column values."""
    state = {}
    for attr in inspect(Subscription).column_attrs:
        if attr.key in _SNAPSHOT_EXCLUDE:
            continue
        value = getattr(subscription, attr.key)
        if isinstance(value, datetime):
            value = as_utc(value)
        state[attr.key.rstrip("_")] = json_safe(value)
    return state


class EventRecorder:
    def __init__(self, clock: Clock | None = None):
        self.clock = clock or system_clock

    def record(
        self,
        db: Session,
        subscription_id,
        event_type: SubscriptionEventType,
        *,
        description: str | None = None,
        previous_status: SubscriptionStatus | None = None,
        new_status: SubscriptionStatus | None = None,
        previous_state: dict | None = None,
        new_state: dict | None = None,
        changes: dict | None = None,
        amount: Decimal | None = None,
        currency: str | None = None,
        invoice_number: str | None = None,
        related_product_id=None,
        related_subscription_id=None,
        actor: str | None = None,
        event_source: str | None = "api",
        metadata: dict | None = None,
        is_error: bool = False,
        error_code: str | None = None,
        error_message: str | None = None,
        requires_review: bool = False,
    ) -> SubscriptionEvent:
        if changes is None and previous_state is not None and new_state is not None:
            changes = diff_states(previous_state, new_state)
        event = SubscriptionEvent(
            subscription_id=subscription_id,
            event_type=event_type,
            category=category_for(event_type),
            description=description,
            previous_status=previous_status,
            new_status=new_status,
            previous_state=previous_state,
            new_state=new_state,
            changes=changes,
            amount=amount,
            currency=currency,
            invoice_number=invoice_number,
            related_product_id=related_product_id,
            related_subscription_id=related_subscription_id,
            actor=actor,
            event_source=event_source,
            metadata_=json_safe(metadata) if metadata else None,
            is_error=is_error,
            error_code=error_code,
            error_message=error_message,
            requires_review=requires_review,
            created_at=self.clock.now(),
        )
        db.add(event)
        return event

    def record_error(
        self,
        db: Session,
        subscription_id,
        event_type: SubscriptionEventType,
        exc: Exception,
        *,
        description: str | None = None,
        actor: str | None = None,
        event_source: str | None = "api",
        metadata: dict | None = None,
    ) -> SubscriptionEvent | None:
        """Persist an error-flagged event for a failed operation.

        The caller must already have rolled back the failed mutation. If the
        referenced subscription no longer exists the reference is dropped.
        """
        if subscription_id is not None:
            try:
                subscription_id = coerce_uuid(subscription_id)
            except ValidationFailedError:
                subscription_id = None
        if subscription_id is not None and db.get(Subscription, subscription_id) is None:
            subscription_id = None
        if isinstance(exc, SubscriptionError):
            error_code = exc.code
            message = exc.message
            context = exc.context
        else:
            error_code = exc.__class__.__name__
            message = str(exc)
            context = None
        details = dict(metadata or {})
        if context:
            details["error_context"] = context
        event = self.record(
            db,
            subscription_id,
            event_type,
            description=description or f"{event_type.value} failed",
            actor=actor,
            event_source=event_source,
            metadata=details or None,
            is_error=True,
            error_code=error_code,
            error_message=message,
        )
        db.commit()
        logger.warning(f"Recorded failed operation event: {to_log_format(event)}")
        return event

    def record_sweep_failure(
        self,
        db: Session,
        operation: str,
        event_type: SubscriptionEventType,
        exc: Exception,
        subscription_id=None,
        metadata: dict | None = None,
    ) -> SubscriptionEvent | None:
        """Roll back one failed sweep item and leave an error event in its place."""
        db.rollback()
        count_operation(operation, "error")
        details = {"operation": operation}
        details.update(metadata or {})
        return self.record_error(
            db,
            subscription_id,
            event_type,
            exc,
            event_source="scheduler",
            metadata=details,
        )

    @contextmanager
    def guard(
        self,
        db: Session,
        operation: str,
        event_type: SubscriptionEventType,
        subscription_id=None,
        actor: str | None = None,
        event_source: str | None = "api",
    ):
        """Transaction boundary for one operation.

        Yields a mutable scope; set ``scope["subscription_id"]`` once the
        owning subscription is known so a rejection is recorded against it.
        Domain errors roll back, leave an error event and re-raise; storage
        errors roll back and re-raise without an event.
        """
        scope = {"subscription_id": subscription_id}
        try:
            yield scope
        except SubscriptionError as exc:
            db.rollback()
            count_operation(operation, "rejected")
            target = scope.get("subscription_id")
            logger.warning(f"{operation} rejected for {target}: {exc.message}")
            try:
                self.record_error(
                    db,
                    target,
                    event_type,
                    exc,
                    actor=actor,
                    event_source=event_source,
                    metadata={
                        "operation": operation,
                        "subscription_id": str(target) if target else None,
                    },
                )
            except SQLAlchemyError:
                db.rollback()
                logger.exception(f"Failed to record error event for {operation}")
            raise
        except SQLAlchemyError:
            db.rollback()
            count_operation(operation, "error")
            logger.exception(f"{operation} failed for {scope.get('subscription_id')}")
            raise
        else:
            count_operation(operation, "success")
