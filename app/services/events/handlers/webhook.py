"""HTTP webhook capability for subscription events."""

import hashlib
import hmac
import json
import logging

import httpx

logger = logging.getLogger(__name__)


def _compute_signature(payload: str, secret: str) -> str:
    """Compute HMAC-SHA256 signature for payload verification."""
    return hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


class HttpWebhookDispatcher:
    """POSTs event payloads to a single endpoint and returns the HTTP status."""

    def __init__(self, url: str, secret: str | None = None, timeout: float = 10.0,
                 transport: httpx.BaseTransport | None = None):
        self.url = url
        self.secret = secret
        self.timeout = timeout
        self.transport = transport

    def dispatch(self, event: dict) -> int:
        payload_json = json.dumps(
            {"event": event.get("event_type"), "data": event}, default=str
        )
        headers = {
            "Content-Type": "application/json",
            "X-Event-Type": str(event.get("event_type")),
            "X-Event-Id": str(event.get("id")),
        }
        if self.secret:
            headers["X-Webhook-Signature"] = _compute_signature(payload_json, self.secret)
        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.url, content=payload_json, headers=headers)
        except (httpx.RequestError, httpx.TimeoutException) as exc:
            logger.warning(f"Webhook delivery to {self.url} failed: {exc}")
            raise
        if not response.is_success:
            logger.warning(
                f"Webhook delivery failed to {self.url}: HTTP {response.status_code}"
            )
        return response.status_code
