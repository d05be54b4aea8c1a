"""Customer notification capability.

The subscription core does not send e-mail or SMS itself; this default
implementation writes the notification to the log so an external delivery
pipeline can pick it up.
"""

import logging

logger = logging.getLogger(__name__)

# Message subject used per notifying event type.
EVENT_TYPE_TO_SUBJECT = {
    "activated": "Your subscription is active",
    "cancelled": "Your subscription has been cancelled",
    "payment_failed": "We could not process your payment",
    "expired": "Your subscription has expired",
}


class LoggingNotifier:
    def notify(self, event: dict) -> bool:
        subject = EVENT_TYPE_TO_SUBJECT.get(event.get("event_type"))
        if subject is None:
            logger.debug(f"No customer notification for event type {event.get('event_type')}")
            return False
        logger.info(
            "customer_notification",
            extra={
                "subject": subject,
                "subscription_id": event.get("subscription_id"),
                "event_id": event.get("id"),
            },
        )
        return True
