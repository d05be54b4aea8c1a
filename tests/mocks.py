"""Mock utilities for testing external dependencies."""

import time

from app.services.billing.gateway import PaymentResult


class FakeGateway:
    """Payment gateway returning scripted results in order."""

    def __init__(self, *results: PaymentResult):
        self.results = list(results)
        self.calls: list[dict] = []

    def charge(self, invoice: dict) -> PaymentResult:
        self.calls.append(invoice)
        if self.results:
            return self.results.pop(0)
        return PaymentResult(success=False, error_code="declined", error_message="Declined")


class SlowGateway:
    """Payment gateway that answers only after ``delay`` seconds."""

    def __init__(self, delay: float = 0.5):
        self.delay = delay

    def charge(self, invoice: dict) -> PaymentResult:
        time.sleep(self.delay)
        return PaymentResult(success=True, transaction_id="txn_slow")


class FakeNotifier:
    """Customer notifier that records payloads."""

    def __init__(self, delivered: bool = True):
        self.delivered = delivered
        self.sent: list[dict] = []

    def notify(self, event: dict) -> bool:
        self.sent.append(event)
        return self.delivered


class FakeWebhooks:
    """Webhook dispatcher answering with a fixed status code or raising.

    Event types listed in ``failing_types`` always get a 422.
    """

    def __init__(self, status_code: int = 200, error: Exception | None = None,
                 failing_types: tuple[str, ...] = ()):
        self.status_code = status_code
        self.error = error
        self.failing_types = failing_types
        self.sent: list[dict] = []

    def dispatch(self, event: dict) -> int:
        self.sent.append(event)
        if self.error is not None:
            raise self.error
        if event["event_type"] in self.failing_types:
            return 422
        return self.status_code
