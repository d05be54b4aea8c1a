"""Outbound dispatch of recorded subscription events.

Events are persisted first by the recorder; this module hands pending ones
to the notification and webhook capabilities and marks them sent. Each
call is bounded by a timeout; a timeout or failure leaves the flag unset and
holds the event back with exponential backoff. An event that keeps failing
is dropped from selection after ``EVENT_DISPATCH_MAX_ATTEMPTS`` and flagged
for review.
"""

import logging
from datetime import datetime, timedelta
from typing import Protocol

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.models.subscription_event import SubscriptionEvent
from app.services.clock import Clock, system_clock
from app.services.events.types import (
    CUSTOMER_NOTIFICATION_EVENTS,
    event_payload,
    should_notify_customer,
    should_trigger_webhook,
)
from app.services.timeouts import CallTimedOut, call_with_timeout

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    def notify(self, event: dict) -> bool: ...


class WebhookDispatcher(Protocol):
    def dispatch(self, event: dict) -> int: ...


class EventDispatcher:
    """Routes pending events to the notifier and the webhook dispatcher."""

    def __init__(
        self,
        notifier: Notifier | None = None,
        webhooks: WebhookDispatcher | None = None,
        clock: Clock | None = None,
        timeout: float | None = None,
    ):
        self.notifier = notifier
        self.webhooks = webhooks
        self.clock = clock or system_clock
        self.timeout = timeout if timeout is not None else settings.event_dispatch_timeout_seconds
        self.max_attempts = settings.event_dispatch_max_attempts
        self.retry_seconds = settings.event_dispatch_retry_seconds

    def pending_events(self, db: Session, limit: int) -> list[SubscriptionEvent]:
        now = self.clock.now()
        conditions = []
        if self.notifier is not None:
            conditions.append(
                and_(
                    SubscriptionEvent.customer_notified.is_(False),
                    SubscriptionEvent.event_type.in_(list(CUSTOMER_NOTIFICATION_EVENTS)),
                )
            )
        if self.webhooks is not None:
            conditions.append(
                and_(
                    SubscriptionEvent.webhook_sent.is_(False),
                    SubscriptionEvent.is_error.is_(False),
                )
            )
        if not conditions:
            return []
        return (
            db.query(SubscriptionEvent)
            .filter(or_(*conditions))
            .filter(SubscriptionEvent.dispatch_attempts < self.max_attempts)
            .filter(
                or_(
                    SubscriptionEvent.next_dispatch_at.is_(None),
                    SubscriptionEvent.next_dispatch_at <= now,
                )
            )
            .order_by(SubscriptionEvent.created_at.asc())
            .limit(limit)
            .all()
        )

    def dispatch(self, db: Session, event: SubscriptionEvent) -> dict[str, bool]:
        """Deliver one event. Returns which deliveries completed in this call."""
        result = {"notified": False, "webhook": False}
        now: datetime = self.clock.now()
        payload = event_payload(event)

        if self.notifier is not None and should_notify_customer(event):
            try:
                delivered = call_with_timeout(
                    "notifier", self.timeout, self.notifier.notify, payload
                )
            except CallTimedOut:
                delivered = False
            except Exception as exc:
                logger.exception(f"Notifier failed for event {event.id}: {exc}")
                delivered = False
            if delivered:
                event.customer_notified = True
                event.notification_sent_at = now
                result["notified"] = True

        if self.webhooks is not None and should_trigger_webhook(event):
            try:
                status = call_with_timeout(
                    "webhook", self.timeout, self.webhooks.dispatch, payload
                )
            except CallTimedOut:
                status = None
            except Exception as exc:
                logger.exception(f"Webhook dispatch failed for event {event.id}: {exc}")
                status = None
            if status is not None:
                event.webhook_response_code = status
            if status is not None and 200 <= status < 300:
                event.webhook_sent = True
                event.webhook_sent_at = now
                result["webhook"] = True
        return result

    def dispatch_pending(self, db: Session, limit: int | None = None) -> dict[str, int]:
        limit = limit or settings.event_dispatch_batch_size
        summary = {"examined": 0, "notified": 0, "webhooks": 0, "deferred": 0}
        for event in self.pending_events(db, limit):
            summary["examined"] += 1
            outcome = self.dispatch(db, event)
            summary["notified"] += int(outcome["notified"])
            summary["webhooks"] += int(outcome["webhook"])
            if (self.notifier is not None and should_notify_customer(event)) or (
                self.webhooks is not None and should_trigger_webhook(event)
            ):
                summary["deferred"] += 1
                self._defer(event)
            db.commit()
        logger.info(f"Event dispatch run: {summary}")
        return summary

    def _defer(self, event: SubscriptionEvent) -> None:
        attempts = (event.dispatch_attempts or 0) + 1
        event.dispatch_attempts = attempts
        if attempts >= self.max_attempts:
            event.next_dispatch_at = None
            event.requires_review = True
            logger.warning(f"Event {event.id} undeliverable after {attempts} attempt(s)")
            return
        delay = self.retry_seconds * 2 ** (attempts - 1)
        event.next_dispatch_at = self.clock.now() + timedelta(seconds=delay)


_dispatcher: EventDispatcher | None = None


def get_dispatcher() -> EventDispatcher:
    """Process-wide dispatcher wired to the configured capabilities."""
    global _dispatcher
    if _dispatcher is None:
        from app.services.events.handlers.notification import LoggingNotifier
        from app.services.events.handlers.webhook import HttpWebhookDispatcher

        webhooks = None
        if settings.webhook_url:
            webhooks = HttpWebhookDispatcher(
                settings.webhook_url,
                secret=settings.webhook_secret,
                timeout=settings.event_dispatch_timeout_seconds,
            )
        _dispatcher = EventDispatcher(notifier=LoggingNotifier(), webhooks=webhooks)
    return _dispatcher
