"""Payment attempts against pending invoices."""

import logging
from datetime import datetime, timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.metrics import PAYMENT_ATTEMPTS
from app.models.billing import DunningStatus, Invoice, InvoiceStatus
from app.models.subscription import Subscription
from app.models.subscription_event import SubscriptionEventType
from app.services.billing.gateway import PaymentGateway, PaymentResult, charge_payload
from app.services.billing.rules import (
    can_be_paid,
    recalculate_balance,
    validate_invoice_transition,
)
from app.services.clock import Clock, system_clock
from app.services.common import coerce_uuid, to_decimal
from app.services.events.recorder import EventRecorder
from app.services.exceptions import ConflictError, NotFoundError, PaymentAttemptFailedError
from app.services.lifecycle import needs_payment_retry
from app.services.timeouts import CallTimedOut, call_with_timeout

logger = logging.getLogger(__name__)


def lock_invoice(db: Session, invoice_id) -> Invoice:
    invoice = (
        db.query(Invoice)
        .filter(Invoice.id == coerce_uuid(invoice_id))
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if not invoice:
        raise NotFoundError("Invoice", invoice_id)
    return invoice


class Payments:
    def __init__(
        self,
        clock: Clock | None = None,
        gateway: PaymentGateway | None = None,
        timeout: float | None = None,
    ):
        self.clock = clock or system_clock
        self.gateway = gateway
        self.timeout = (
            timeout if timeout is not None else settings.billing_payment_timeout_seconds
        )
        self.recorder = EventRecorder(self.clock)

    def charge(self, gateway: PaymentGateway, invoice: Invoice) -> PaymentResult:
        """Call the gateway with a bounded wait.

        Timeouts and gateway faults come back as failed results so the
        caller records them as an attempt.
        """
        try:
            return call_with_timeout(
                "payment_gateway", self.timeout, gateway.charge, charge_payload(invoice)
            )
        except CallTimedOut:
            return PaymentResult(
                success=False,
                error_code="timeout",
                error_message=f"Payment gateway did not answer within {self.timeout}s",
            )
        except PaymentAttemptFailedError as exc:
            return PaymentResult(
                success=False,
                error_code=exc.gateway_error_code or exc.code,
                error_message=exc.message,
            )
        except Exception as exc:
            logger.exception(f"Payment gateway raised for invoice {invoice.invoice_number}")
            return PaymentResult(
                success=False,
                error_code="gateway_error",
                error_message=f"{exc.__class__.__name__}: {exc}",
            )

    def apply_result(
        self,
        db: Session,
        invoice: Invoice,
        result: PaymentResult,
        now: datetime,
        actor: str | None = None,
        event_source: str = "api",
    ) -> None:
        """Write the outcome of one attempt onto the invoice and the event log."""
        subscription = db.get(Subscription, invoice.subscription_id)
        invoice.payment_attempts = (invoice.payment_attempts or 0) + 1
        invoice.last_payment_attempt_date = now

        if result.success:
            validate_invoice_transition(invoice.status, InvoiceStatus.paid)
            amount = to_decimal(invoice.balance_amount)
            invoice.status = InvoiceStatus.paid
            invoice.paid_amount = to_decimal(invoice.total_amount)
            recalculate_balance(invoice)
            invoice.paid_date = now
            invoice.payment_transaction_id = result.transaction_id
            invoice.next_retry_date = None
            invoice.last_payment_error = None
            invoice.last_payment_error_code = None
            if invoice.dunning_status == DunningStatus.in_progress:
                invoice.dunning_status = DunningStatus.resolved
            PAYMENT_ATTEMPTS.labels(outcome="succeeded").inc()
            self.recorder.record(
                db,
                invoice.subscription_id,
                SubscriptionEventType.payment_succeeded,
                description=f"Payment received for {invoice.invoice_number}",
                amount=amount,
                currency=invoice.currency,
                invoice_number=invoice.invoice_number,
                actor=actor,
                event_source=event_source,
                metadata={
                    "invoice_id": invoice.id,
                    "transaction_id": result.transaction_id,
                    "attempt": invoice.payment_attempts,
                },
            )
            logger.info(f"Invoice {invoice.invoice_number} paid")
            return

        retry = subscription is not None and needs_payment_retry(
            subscription, invoice.payment_attempts
        )
        invoice.next_retry_date = (
            now + timedelta(hours=settings.billing_payment_retry_hours) if retry else None
        )
        invoice.last_payment_error = result.error_message
        invoice.last_payment_error_code = result.error_code
        PAYMENT_ATTEMPTS.labels(outcome="timeout" if result.error_code == "timeout" else "failed").inc()
        self.recorder.record(
            db,
            invoice.subscription_id,
            SubscriptionEventType.payment_failed,
            description=f"Payment failed for {invoice.invoice_number}",
            amount=invoice.balance_amount,
            currency=invoice.currency,
            invoice_number=invoice.invoice_number,
            actor=actor,
            event_source=event_source,
            metadata={
                "invoice_id": invoice.id,
                "attempt": invoice.payment_attempts,
                "next_retry_date": invoice.next_retry_date,
            },
            is_error=True,
            error_code=result.error_code or PaymentAttemptFailedError.code,
            error_message=result.error_message,
            requires_review=not retry,
        )
        logger.warning(
            f"Payment attempt {invoice.payment_attempts} failed for "
            f"{invoice.invoice_number}: {result.error_code} {result.error_message}"
        )

    def record_payment_attempt(
        self,
        db: Session,
        invoice_id,
        gateway: PaymentGateway | None = None,
        actor: str | None = None,
    ) -> Invoice:
        """Charge one invoice now.

        A declined or timed-out charge is not an error for the caller: it is
        recorded on the invoice and in the event log and the invoice is
        returned.
        """
        with self.recorder.guard(
            db, "record_payment_attempt", SubscriptionEventType.payment_failed, actor=actor
        ) as scope:
            now = self.clock.now()
            invoice = lock_invoice(db, invoice_id)
            scope["subscription_id"] = invoice.subscription_id
            if not can_be_paid(invoice):
                raise ConflictError(
                    f"Invoice {invoice.invoice_number} cannot be paid while "
                    f"{invoice.status.value} with balance {invoice.balance_amount}",
                    context={"invoice_id": str(invoice.id), "status": invoice.status.value},
                )
            gateway = gateway or self.gateway
            if gateway is None:
                raise ConflictError("No payment gateway is configured")
            result = self.charge(gateway, invoice)
            self.apply_result(db, invoice, result, now, actor=actor)
            db.commit()
            db.refresh(invoice)
        return invoice

    def retry_due_payments(
        self,
        db: Session,
        gateway: PaymentGateway | None = None,
        batch_size: int | None = None,
    ) -> dict:
        """Retry pending invoices whose scheduled retry time has passed."""
        gateway = gateway or self.gateway
        now = self.clock.now()
        summary = {"examined": 0, "paid": 0, "failed": 0, "errors": 0}
        if gateway is None:
            logger.info("Payment retry skipped: no gateway configured")
            return summary
        due_ids = [
            row[0]
            for row in db.query(Invoice.id)
            .filter(Invoice.status == InvoiceStatus.pending)
            .filter(Invoice.dunning_status == DunningStatus.not_required)
            .filter(Invoice.next_retry_date.isnot(None))
            .filter(Invoice.next_retry_date <= now)
            .filter(Invoice.balance_amount > 0)
            .order_by(Invoice.next_retry_date.asc())
            .limit(batch_size or settings.billing_sweep_batch_size)
            .all()
        ]
        for invoice_id in due_ids:
            subscription_id = None
            try:
                invoice = lock_invoice(db, invoice_id)
                subscription_id = invoice.subscription_id
                if not can_be_paid(invoice):
                    db.rollback()
                    continue
                summary["examined"] += 1
                result = self.charge(gateway, invoice)
                self.apply_result(db, invoice, result, now, event_source="scheduler")
                db.commit()
            except OperationalError:
                db.rollback()
                logger.exception(f"Payment retry run aborted at invoice {invoice_id}")
                raise
            except Exception as exc:
                logger.exception(f"Payment retry failed for invoice {invoice_id}")
                self.recorder.record_sweep_failure(
                    db,
                    "retry_due_payments",
                    SubscriptionEventType.payment_failed,
                    exc,
                    subscription_id,
                    metadata={"invoice_id": invoice_id},
                )
                summary["errors"] += 1
                continue
            summary["paid" if result.success else "failed"] += 1
        logger.info(f"Payment retry run: {summary}")
        return summary
