from app.models.account import Account  # noqa: F401
from app.models.billing import DunningStatus, Invoice, InvoiceStatus  # noqa: F401
from app.models.catalog import Product  # noqa: F401
from app.models.subscription import (  # noqa: F401
    BillingCycle,
    CancellationReason,
    Subscription,
    SubscriptionProductLine,
    SubscriptionStatus,
)
from app.models.subscription_event import (  # noqa: F401
    EventCategory,
    SubscriptionEvent,
    SubscriptionEventType,
)
