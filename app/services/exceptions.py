"""Subscription domain errors.

Services raise these; the API layer turns them into typed JSON error
responses (see ``app.errors``). Infrastructure failures are not modelled
here and propagate as-is.
"""

from typing import Any


class SubscriptionError(Exception):
    """Base error for the subscription core.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error kind
        status_code: HTTP status code used at the API boundary
        context: Additional data about the failing entities
    """

    code = "subscription_error"
    status_code = 400

    def __init__(
        self,
        message: str,
        context: dict[str, Any] | None = None,
        code: str | None = None,
        status_code: int | None = None,
    ):
        self.message = message
        self.context = context or {}
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.context}


class NotFoundError(SubscriptionError):
    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, entity_id=None, message: str | None = None):
        context = {"entity": entity}
        if entity_id is not None:
            context["id"] = str(entity_id)
        super().__init__(message or f"{entity} not found", context=context)


class ConflictError(SubscriptionError):
    code = "conflict"
    status_code = 409


class InvalidStateTransitionError(SubscriptionError):
    code = "invalid_state_transition"
    status_code = 409

    def __init__(self, current, requested, message: str | None = None):
        current_value = getattr(current, "value", current)
        requested_value = getattr(requested, "value", requested)
        super().__init__(
            message
            or f"Cannot transition subscription from {current_value} to {requested_value}",
            context={"current_status": current_value, "requested_status": requested_value},
        )


class NotCancellableError(InvalidStateTransitionError):
    code = "not_cancellable"

    def __init__(self, current):
        current_value = getattr(current, "value", current)
        super().__init__(
            current,
            "cancelled",
            message=f"Subscription cannot be cancelled while {current_value}",
        )


class InvalidHierarchyError(SubscriptionError):
    code = "invalid_hierarchy"
    status_code = 422


class ValidationFailedError(SubscriptionError):
    code = "validation_failed"
    status_code = 400


class PaymentAttemptFailedError(SubscriptionError):
    """Gateway reported a failure or did not answer in time.

    Recorded on the invoice and in the event log; the sweep never lets it
    escape.
    """

    code = "payment_attempt_failed"
    status_code = 402

    def __init__(self, message: str, error_code: str | None = None, context=None):
        self.gateway_error_code = error_code
        super().__init__(message, context=context)
