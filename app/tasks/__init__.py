from app.tasks.billing import advance_dunning, generate_due_invoices, retry_due_payments
from app.tasks.events import dispatch_pending_events
from app.tasks.subscriptions import expire_due_subscriptions

__all__ = [
    "advance_dunning",
    "dispatch_pending_events",
    "expire_due_subscriptions",
    "generate_due_invoices",
    "retry_due_payments",
]
