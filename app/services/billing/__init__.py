"""Billing services package.

Invoice generation, payment attempts and dunning for subscriptions:
    from app.services import billing as billing_service
    billing_service.invoices.generate_due_invoices(db)
"""

from app.services.billing.dunning import Dunning
from app.services.billing.gateway import (
    HttpPaymentGateway,
    PaymentGateway,
    PaymentResult,
    get_gateway,
)
from app.services.billing.invoices import Invoices
from app.services.billing.payments import Payments

# Singleton instances for service access
invoices = Invoices()
payments = Payments()
dunning = Dunning(payments=payments)

__all__ = [
    "Dunning",
    "HttpPaymentGateway",
    "Invoices",
    "PaymentGateway",
    "PaymentResult",
    "Payments",
    "dunning",
    "get_gateway",
    "invoices",
    "payments",
]
