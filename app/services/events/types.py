"""Event classification for the subscription audit trail.

Categories, severities and the derived notify/webhook predicates. The
predicates read only the event type and the stored "sent" flags, so
evaluating them repeatedly always gives the same answer.
"""

import enum
from datetime import date, datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from app.models.subscription_event import (
    EventCategory,
    SubscriptionEvent,
    SubscriptionEventType,
)


class EventSeverity(enum.Enum):
    info = "info"
    warning = "warning"
    error = "error"
    critical = "critical"


_CATEGORY_BY_TYPE: dict[SubscriptionEventType, EventCategory] = {
    SubscriptionEventType.created: EventCategory.lifecycle,
    SubscriptionEventType.activated: EventCategory.lifecycle,
    SubscriptionEventType.paused: EventCategory.lifecycle,
    SubscriptionEventType.resumed: EventCategory.lifecycle,
    SubscriptionEventType.cancelled: EventCategory.lifecycle,
    SubscriptionEventType.expired: EventCategory.lifecycle,
    SubscriptionEventType.deleted: EventCategory.lifecycle,
    SubscriptionEventType.invoice_generated: EventCategory.billing,
    SubscriptionEventType.payment_succeeded: EventCategory.billing,
    SubscriptionEventType.payment_failed: EventCategory.billing,
    SubscriptionEventType.payment_retry: EventCategory.billing,
    SubscriptionEventType.invoice_cancelled: EventCategory.billing,
    SubscriptionEventType.invoice_refunded: EventCategory.billing,
    SubscriptionEventType.updated: EventCategory.modification,
    SubscriptionEventType.upgraded: EventCategory.modification,
    SubscriptionEventType.downgraded: EventCategory.modification,
    SubscriptionEventType.product_added: EventCategory.modification,
    SubscriptionEventType.product_removed: EventCategory.modification,
    SubscriptionEventType.parent_assigned: EventCategory.hierarchy,
    SubscriptionEventType.child_added: EventCategory.hierarchy,
    SubscriptionEventType.child_removed: EventCategory.hierarchy,
}

CUSTOMER_NOTIFICATION_EVENTS = frozenset(
    {
        SubscriptionEventType.activated,
        SubscriptionEventType.cancelled,
        SubscriptionEventType.payment_failed,
        SubscriptionEventType.expired,
    }
)


def category_for(event_type: SubscriptionEventType) -> EventCategory:
    return _CATEGORY_BY_TYPE[event_type]


def severity(event: SubscriptionEvent) -> EventSeverity:
    if event.is_error and event.event_type == SubscriptionEventType.payment_failed:
        return EventSeverity.critical
    if event.is_error:
        return EventSeverity.error
    if event.requires_review:
        return EventSeverity.warning
    return EventSeverity.info


def should_notify_customer(event: SubscriptionEvent) -> bool:
    return event.event_type in CUSTOMER_NOTIFICATION_EVENTS and not event.customer_notified


def should_trigger_webhook(event: SubscriptionEvent) -> bool:
    return not event.is_error and not event.webhook_sent


def to_log_format(event: SubscriptionEvent) -> dict[str, Any]:
    return {
        "id": str(event.id) if event.id else None,
        "subscription_id": str(event.subscription_id) if event.subscription_id else None,
        "event_type": event.event_type.value,
        "category": event.category.value if event.category else None,
        "severity": severity(event).value,
        "description": event.description,
        "actor": event.actor,
        "is_error": bool(event.is_error),
        "error_code": event.error_code,
        "created_at": event.created_at.isoformat() if event.created_at else None,
    }


def json_safe(value: Any) -> Any:
    """Convert a value into something a JSON column can store."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    return value


def diff_states(before: dict[str, Any], after: dict[str, Any]) -> dict[str, dict[str, Any]]:
    """Field-level ``{field: {"old", "new"}}`` diff of two snapshots."""
    changes = {}
    for key in sorted(set(before) | set(after)):
        old, new = before.get(key), after.get(key)
        if old != new:
            changes[key] = {"old": old, "new": new}
    return changes


def event_payload(event: SubscriptionEvent) -> dict[str, Any]:
    """Detached representation handed to notification/webhook capabilities."""
    payload = to_log_format(event)
    payload.update(
        {
            "previous_status": event.previous_status.value if event.previous_status else None,
            "new_status": event.new_status.value if event.new_status else None,
            "amount": json_safe(event.amount),
            "currency": event.currency,
            "invoice_number": event.invoice_number,
            "related_subscription_id": json_safe(event.related_subscription_id),
            "related_product_id": json_safe(event.related_product_id),
            "changes": event.changes,
            "metadata": event.metadata_,
        }
    )
    return payload
