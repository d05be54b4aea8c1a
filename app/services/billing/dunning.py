"""Dunning sweep for overdue invoices.

Candidates enter dunning at level 0. At each scheduled offset past the due
date the payment is retried (when a gateway is available) and the level
rises; when the schedule is exhausted the invoice is suspended and the
subscription is cancelled for non-payment.
"""

import logging
from datetime import datetime
from typing import Any

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.billing import DunningStatus, Invoice, InvoiceStatus
from app.models.subscription import CancellationReason, Subscription, SubscriptionStatus
from app.models.subscription_event import SubscriptionEventType
from app.services.billing.gateway import PaymentGateway
from app.services.billing.payments import Payments, lock_invoice
from app.services.billing.rules import (
    DUNNING_SCHEDULE_DAYS,
    get_days_overdue,
    get_next_dunning_date,
    should_start_dunning,
    validate_dunning_transition,
    validate_invoice_transition,
)
from app.services.clock import Clock, system_clock
from app.services.events.recorder import EventRecorder, snapshot
from app.services.lifecycle import can_be_cancelled
from app.services.locking import lock_subscriptions

logger = logging.getLogger(__name__)


class Dunning:
    def __init__(
        self,
        clock: Clock | None = None,
        gateway: PaymentGateway | None = None,
        payments: Payments | None = None,
    ):
        self.clock = clock or system_clock
        self.gateway = gateway
        self.payments = payments or Payments(self.clock, gateway)
        self.recorder = EventRecorder(self.clock)

    def advance_dunning(
        self,
        db: Session,
        gateway: PaymentGateway | None = None,
        batch_size: int | None = None,
    ) -> dict[str, Any]:
        gateway = gateway or self.gateway or self.payments.gateway
        now = self.clock.now()
        batch_size = batch_size or settings.billing_sweep_batch_size
        summary = {
            "started": 0,
            "retried": 0,
            "resolved": 0,
            "suspended": 0,
            "subscriptions_cancelled": 0,
            "errors": 0,
        }

        candidate_ids = [
            row[0]
            for row in db.query(Invoice.id)
            .filter(Invoice.status == InvoiceStatus.pending)
            .filter(Invoice.dunning_status == DunningStatus.not_required)
            .filter(Invoice.due_date < now)
            .filter(Invoice.balance_amount > 0)
            .filter(Invoice.payment_attempts >= 1)
            .order_by(Invoice.due_date.asc())
            .limit(batch_size)
            .all()
        ]
        for invoice_id in candidate_ids:
            subscription_id = None
            try:
                invoice = lock_invoice(db, invoice_id)
                subscription_id = invoice.subscription_id
                if not should_start_dunning(invoice, now):
                    db.rollback()
                    continue
                self._start(db, invoice, now)
                db.commit()
            except OperationalError:
                db.rollback()
                logger.exception(f"Dunning sweep aborted at invoice {invoice_id}")
                raise
            except Exception as exc:
                logger.exception(f"Could not start dunning for invoice {invoice_id}")
                self._record_failure(db, exc, subscription_id, invoice_id)
                summary["errors"] += 1
                continue
            summary["started"] += 1

        in_progress_ids = [
            row[0]
            for row in db.query(Invoice.id)
            .filter(Invoice.status == InvoiceStatus.pending)
            .filter(Invoice.dunning_status == DunningStatus.in_progress)
            .order_by(Invoice.due_date.asc())
            .limit(batch_size)
            .all()
        ]
        for invoice_id in in_progress_ids:
            subscription_id = None
            try:
                invoice = lock_invoice(db, invoice_id)
                subscription_id = invoice.subscription_id
                outcome = self._step(db, invoice, now, gateway)
                db.commit()
            except OperationalError:
                db.rollback()
                logger.exception(f"Dunning sweep aborted at invoice {invoice_id}")
                raise
            except Exception as exc:
                logger.exception(f"Dunning step failed for invoice {invoice_id}")
                self._record_failure(db, exc, subscription_id, invoice_id)
                summary["errors"] += 1
                continue
            for key in outcome:
                summary[key] += 1

        logger.info(f"Dunning sweep: {summary}")
        return summary

    def _record_failure(self, db: Session, exc: Exception, subscription_id, invoice_id) -> None:
        self.recorder.record_sweep_failure(
            db,
            "advance_dunning",
            SubscriptionEventType.payment_retry,
            exc,
            subscription_id,
            metadata={"invoice_id": invoice_id},
        )

    def _start(self, db: Session, invoice: Invoice, now: datetime) -> None:
        validate_dunning_transition(invoice.dunning_status, DunningStatus.in_progress)
        invoice.dunning_status = DunningStatus.in_progress
        invoice.dunning_level = 0
        invoice.dunning_started_at = now
        invoice.next_retry_date = None
        self.recorder.record(
            db,
            invoice.subscription_id,
            SubscriptionEventType.payment_retry,
            description=f"Dunning started for {invoice.invoice_number}",
            amount=invoice.balance_amount,
            currency=invoice.currency,
            invoice_number=invoice.invoice_number,
            event_source="scheduler",
            metadata={
                "invoice_id": invoice.id,
                "dunning_level": 0,
                "days_overdue": get_days_overdue(invoice, now),
                "next_dunning_date": get_next_dunning_date(invoice),
            },
        )

    def _step(self, db: Session, invoice: Invoice, now: datetime,
              gateway: PaymentGateway | None) -> list[str]:
        """Run whatever is due for one invoice; returns summary keys to bump."""
        outcome: list[str] = []
        next_date = get_next_dunning_date(invoice)
        if next_date is not None:
            if next_date > now:
                return outcome
            if gateway is not None:
                result = self.payments.charge(gateway, invoice)
                self.payments.apply_result(db, invoice, result, now, event_source="scheduler")
                outcome.append("retried")
                if result.success:
                    outcome.append("resolved")
                    return outcome
            invoice.dunning_level = (invoice.dunning_level or 0) + 1
            self.recorder.record(
                db,
                invoice.subscription_id,
                SubscriptionEventType.payment_retry,
                description=(
                    f"Dunning level {invoice.dunning_level} for {invoice.invoice_number}"
                ),
                amount=invoice.balance_amount,
                currency=invoice.currency,
                invoice_number=invoice.invoice_number,
                event_source="scheduler",
                metadata={
                    "invoice_id": invoice.id,
                    "dunning_level": invoice.dunning_level,
                    "days_overdue": get_days_overdue(invoice, now),
                    "next_dunning_date": get_next_dunning_date(invoice),
                },
            )
            if get_next_dunning_date(invoice) is not None:
                return outcome
        outcome.extend(self._escalate(db, invoice, now))
        return outcome

    def _escalate(self, db: Session, invoice: Invoice, now: datetime) -> list[str]:
        outcome = ["suspended"]
        validate_dunning_transition(invoice.dunning_status, DunningStatus.suspended)
        validate_invoice_transition(invoice.status, InvoiceStatus.failed)
        invoice.dunning_status = DunningStatus.suspended
        invoice.suspension_date = now
        invoice.status = InvoiceStatus.failed
        invoice.next_retry_date = None
        self.recorder.record(
            db,
            invoice.subscription_id,
            SubscriptionEventType.payment_retry,
            description=(
                f"Dunning exhausted after {len(DUNNING_SCHEDULE_DAYS)} steps; "
                f"{invoice.invoice_number} suspended"
            ),
            amount=invoice.balance_amount,
            currency=invoice.currency,
            invoice_number=invoice.invoice_number,
            event_source="scheduler",
            metadata={"invoice_id": invoice.id, "dunning_level": invoice.dunning_level},
            is_error=True,
            error_code="dunning_exhausted",
            error_message="Invoice remained unpaid through the dunning schedule",
            requires_review=True,
        )

        subscription: Subscription | None = lock_subscriptions(db, invoice.subscription_id).get(
            invoice.subscription_id
        )
        if subscription is not None and not subscription.is_deleted and can_be_cancelled(
            subscription
        ):
            before = snapshot(subscription)
            previous_status = subscription.status
            subscription.status = SubscriptionStatus.cancelled
            subscription.cancellation_date = now
            subscription.cancellation_effective_date = now
            subscription.cancellation_reason = CancellationReason.non_payment
            subscription.cancellation_notes = (
                f"Cancelled after dunning on {invoice.invoice_number}"
            )
            subscription.auto_renew = False
            self.recorder.record(
                db,
                subscription.id,
                SubscriptionEventType.cancelled,
                description="Subscription cancelled for non-payment",
                previous_status=previous_status,
                new_status=subscription.status,
                previous_state=before,
                new_state=snapshot(subscription),
                invoice_number=invoice.invoice_number,
                event_source="scheduler",
                metadata={"invoice_id": invoice.id, "reason": "non_payment"},
            )
            outcome.append("subscriptions_cancelled")
        logger.warning(
            f"Invoice {invoice.invoice_number} suspended after dunning; "
            f"subscription {invoice.subscription_id} cancelled={len(outcome) > 1}"
        )
        return outcome
