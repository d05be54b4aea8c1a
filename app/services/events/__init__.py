"""Subscription audit events.

Usage:
    from app.services.events import EventRecorder
    from app.models.subscription_event import SubscriptionEventType

    recorder = EventRecorder(clock)
    recorder.record(db, sub.id, SubscriptionEventType.activated, ...)
    db.commit()
"""

from app.services.events.dispatcher import EventDispatcher, get_dispatcher
from app.services.events.recorder import EventRecorder, snapshot

__all__ = ["EventDispatcher", "EventRecorder", "get_dispatcher", "snapshot"]
