"""Payment gateway capability and its HTTP adapter."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Protocol

import httpx

from app.config import settings
from app.models.billing import Invoice
from app.services.exceptions import PaymentAttemptFailedError

logger = logging.getLogger(__name__)


@dataclass
class PaymentResult:
    success: bool
    transaction_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class PaymentGateway(Protocol):
    def charge(self, invoice: dict[str, Any]) -> PaymentResult: ...


def charge_payload(invoice: Invoice) -> dict[str, Any]:
    """Detached copy of the fields a gateway needs to charge an invoice."""
    return {
        "invoice_id": str(invoice.id),
        "invoice_number": invoice.invoice_number,
        "subscription_id": str(invoice.subscription_id),
        "amount": str(invoice.balance_amount),
        "currency": invoice.currency,
        "customer": dict(invoice.customer_details or {}),
        "attempt": (invoice.payment_attempts or 0) + 1,
    }


def amount_to_minor_units(amount: Decimal | str) -> int:
    """Convert a major-unit amount to minor units (cents)."""
    return int(Decimal(str(amount)) * 100)


class HttpPaymentGateway:
    """Charges invoices through a JSON HTTP API.

    The remote endpoint receives ``POST {base_url}/charges`` and answers
    with ``{"status": "succeeded" | "failed", "transaction_id", "error_code",
    "message"}``. Declines are returned as failed results; transport errors
    raise ``PaymentAttemptFailedError``.
    """

    def __init__(
        self,
        base_url: str,
        secret_key: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.secret_key = secret_key
        self.timeout = timeout
        self.transport = transport

    def charge(self, invoice: dict[str, Any]) -> PaymentResult:
        headers = {"Idempotency-Key": f"{invoice['invoice_id']}:{invoice['attempt']}"}
        if self.secret_key:
            headers["Authorization"] = f"Bearer {self.secret_key}"
        body = {
            "reference": invoice["invoice_number"],
            "amount": amount_to_minor_units(invoice["amount"]),
            "currency": invoice["currency"],
            "customer": invoice.get("customer") or {},
            "metadata": {
                "invoice_id": invoice["invoice_id"],
                "subscription_id": invoice["subscription_id"],
            },
        }
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                resp = client.post(f"{self.base_url}/charges", json=body, headers=headers)
        except httpx.RequestError as exc:
            logger.error(f"Payment gateway request failed: {exc}")
            raise PaymentAttemptFailedError(
                "Payment gateway unreachable", error_code="gateway_unreachable"
            ) from exc

        if resp.status_code >= 500:
            raise PaymentAttemptFailedError(
                f"Payment gateway error ({resp.status_code})",
                error_code=f"http_{resp.status_code}",
            )
        try:
            data = resp.json() if resp.content else {}
        except ValueError:
            logger.warning(
                f"Payment gateway answered {resp.status_code} with a non-JSON body"
            )
            data = {}
        if not isinstance(data, dict):
            data = {}
        if resp.is_success and data.get("status") == "succeeded":
            return PaymentResult(success=True, transaction_id=data.get("transaction_id"))
        return PaymentResult(
            success=False,
            transaction_id=data.get("transaction_id"),
            error_code=data.get("error_code") or f"http_{resp.status_code}",
            error_message=data.get("message") or "Payment declined",
        )


def get_gateway() -> PaymentGateway | None:
    if not settings.payment_gateway_url:
        return None
    return HttpPaymentGateway(
        settings.payment_gateway_url,
        secret_key=settings.payment_gateway_secret_key,
        timeout=settings.billing_payment_timeout_seconds,
    )
