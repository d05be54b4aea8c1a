"""Invoice generation sweep and invoice maintenance operations."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import and_, or_, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, selectinload

from app.config import settings
from app.metrics import INVOICES_GENERATED
from app.models.account import Account
from app.models.billing import DunningStatus, Invoice, InvoiceStatus
from app.models.subscription import Subscription, SubscriptionStatus
from app.models.subscription_event import SubscriptionEventType
from app.services.billing.payments import lock_invoice
from app.services.billing.rules import generate_invoice_number, validate_invoice_transition
from app.services.billing_dates import next_billing_date
from app.services.clock import Clock, as_utc, system_clock
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    get_or_raise,
    round_money,
    to_decimal,
    validate_enum,
)
from app.services.events.recorder import EventRecorder
from app.services.exceptions import ValidationFailedError
from app.services.product_lines import billable_lines, mark_billed
from app.services.registry import customer_snapshot

logger = logging.getLogger(__name__)

_ORDER_COLUMNS = {
    "created_at": Invoice.created_at,
    "invoice_date": Invoice.invoice_date,
    "due_date": Invoice.due_date,
    "total_amount": Invoice.total_amount,
    "status": Invoice.status,
    "invoice_number": Invoice.invoice_number,
}


def _tax(amount: Decimal, tax_percentage) -> Decimal:
    return round_money(amount * to_decimal(tax_percentage) / Decimal("100"))


def build_line_items(subscription: Subscription, now: datetime) -> tuple[list[dict], list]:
    """Frozen line items for one billing period plus the product lines they bill."""
    tax_pct = subscription.tax_percentage
    items: list[dict[str, Any]] = []
    base = to_decimal(subscription.base_amount)
    if base > 0:
        discount = to_decimal(subscription.discount_amount)
        items.append(
            {
                "type": "subscription",
                "product_id": None,
                "name": subscription.name or "Subscription",
                "sku": None,
                "quantity": 1,
                "unit_price": str(base),
                "discount": str(discount),
                "tax": str(to_decimal(subscription.tax_amount)),
                "total": str(to_decimal(subscription.total_amount)),
            }
        )

    lines = billable_lines(subscription, now)
    for line in lines:
        gross = round_money(to_decimal(line.unit_price) * line.quantity)
        net = to_decimal(line.total_price)
        tax = _tax(net, tax_pct)
        items.append(
            {
                "type": "setup_fee" if line.is_setup_fee else "product",
                "product_id": str(line.product_id),
                "name": line.product_name,
                "sku": line.product_sku,
                "quantity": line.quantity,
                "unit_price": str(to_decimal(line.unit_price)),
                "discount": str(gross - net),
                "tax": str(tax),
                "total": str(net + tax),
            }
        )

    pending = (subscription.settings or {}).get("pending_proration")
    if pending:
        amount = round_money(to_decimal(pending.get("amount")))
        tax = _tax(amount, tax_pct)
        items.append(
            {
                "type": "proration",
                "product_id": None,
                "name": f"Prorated charge ({pending.get('days')} days)",
                "sku": None,
                "quantity": 1,
                "unit_price": str(amount),
                "discount": "0.00",
                "tax": str(tax),
                "total": str(amount + tax),
            }
        )
    return items, lines


def _sum(items: list[dict], key: str) -> Decimal:
    return round_money(sum((Decimal(item[key]) for item in items), Decimal("0.00")))


class Invoices:
    def __init__(self, clock: Clock | None = None):
        self.clock = clock or system_clock
        self.recorder = EventRecorder(self.clock)

    def get(self, db: Session, invoice_id) -> Invoice:
        return get_or_raise(db, Invoice, invoice_id, "Invoice")

    def list(
        self,
        db: Session,
        subscription_id: str | None = None,
        status: str | None = None,
        dunning_status: str | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> list[Invoice]:
        query = db.query(Invoice)
        if subscription_id:
            query = query.filter(Invoice.subscription_id == coerce_uuid(subscription_id))
        if status:
            query = query.filter(Invoice.status == validate_enum(status, InvoiceStatus, "status"))
        if dunning_status:
            query = query.filter(
                Invoice.dunning_status
                == validate_enum(dunning_status, DunningStatus, "dunning_status")
            )
        query = apply_ordering(query, order_by, order_dir, _ORDER_COLUMNS)
        return apply_pagination(query, limit, offset).all()

    # -- generation ------------------------------------------------------

    @staticmethod
    def _due_filter(now: datetime):
        return and_(
            Subscription.is_deleted.is_(False),
            Subscription.next_billing_date.isnot(None),
            Subscription.next_billing_date <= now,
            or_(
                Subscription.status == SubscriptionStatus.active,
                # Cancelled with notice: billed until the effective date.
                and_(
                    Subscription.status == SubscriptionStatus.cancelled,
                    Subscription.cancellation_effective_date.isnot(None),
                    Subscription.cancellation_effective_date > Subscription.next_billing_date,
                ),
            ),
        )

    @staticmethod
    def _claim(db: Session, subscription_id, period_start) -> bool:
        """Take ownership of one billing period for one subscription.

        The conditional update succeeds for exactly one worker per period;
        the marker is committed together with the invoice.
        """
        result = db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                Subscription.next_billing_date == period_start,
                or_(
                    Subscription.last_invoiced_period_start.is_(None),
                    Subscription.last_invoiced_period_start < period_start,
                ),
            )
            .values(last_invoiced_period_start=period_start)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    def generate_due_invoices(
        self,
        db: Session,
        run_at: datetime | None = None,
        batch_size: int | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        """Generate one invoice per subscription whose billing date has come.

        Args:
            db: Database session
            run_at: Reference time for the sweep (defaults to the clock)
            batch_size: Maximum subscriptions examined in this run
            dry_run: If True, report what would be billed without writing

        Each subscription is billed for a single period per run; one that is
        several periods behind catches up over consecutive runs.
        """
        now = as_utc(run_at) or self.clock.now()
        batch_size = batch_size or settings.billing_sweep_batch_size
        candidates = (
            db.query(Subscription.id, Subscription.next_billing_date)
            .filter(self._due_filter(now))
            .order_by(Subscription.next_billing_date.asc())
            .limit(batch_size)
            .all()
        )
        summary: dict[str, Any] = {
            "run_at": now.isoformat(),
            "subscriptions_scanned": len(candidates),
            "invoices_created": 0,
            "skipped": 0,
            "errors": 0,
            "invoice_ids": [],
            "dry_run": dry_run,
        }
        if dry_run:
            return summary

        for subscription_id, period_start in candidates:
            try:
                if not self._claim(db, subscription_id, period_start):
                    db.rollback()
                    summary["skipped"] += 1
                    continue
                invoice = self._issue(db, subscription_id, as_utc(period_start), now)
                db.commit()
            except OperationalError:
                db.rollback()
                logger.exception(f"Invoice generation aborted at subscription {subscription_id}")
                raise
            except Exception as exc:
                logger.exception(f"Invoice generation failed for subscription {subscription_id}")
                self.recorder.record_sweep_failure(
                    db,
                    "generate_due_invoices",
                    SubscriptionEventType.invoice_generated,
                    exc,
                    subscription_id,
                    metadata={"period_start": period_start},
                )
                summary["errors"] += 1
                continue
            INVOICES_GENERATED.labels(currency=invoice.currency).inc()
            summary["invoices_created"] += 1
            summary["invoice_ids"].append(str(invoice.id))

        logger.info(
            f"Billing sweep: {summary['invoices_created']} invoice(s) from "
            f"{summary['subscriptions_scanned']} due subscription(s), "
            f"{summary['skipped']} skipped, {summary['errors']} failed"
        )
        return summary

    def _issue(self, db: Session, subscription_id, period_start: datetime,
               now: datetime) -> Invoice:
        subscription = db.get(
            Subscription,
            subscription_id,
            populate_existing=True,
            options=[selectinload(Subscription.product_lines)],
        )
        account = db.get(Account, subscription.account_id)
        period_end = next_billing_date(
            period_start,
            subscription.billing_cycle,
            subscription.billing_day_of_month,
            subscription.custom_billing_days,
            now=period_start,
        )
        items, lines = build_line_items(subscription, now)
        subtotal = round_money(
            sum(
                (Decimal(item["unit_price"]) * item["quantity"] for item in items),
                Decimal("0.00"),
            )
        )
        discount = _sum(items, "discount")
        tax = _sum(items, "tax")
        total = round_money(subtotal - discount + tax)
        pending_proration = (subscription.settings or {}).get("pending_proration")

        invoice = Invoice(
            subscription_id=subscription.id,
            invoice_number=generate_invoice_number(db, now),
            status=InvoiceStatus.pending,
            dunning_status=DunningStatus.not_required,
            period_start=period_start,
            period_end=period_end,
            subtotal_amount=subtotal,
            discount_amount=discount,
            tax_amount=tax,
            tax_rate=to_decimal(subscription.tax_percentage),
            total_amount=total,
            paid_amount=Decimal("0.00"),
            balance_amount=total,
            currency=subscription.currency,
            invoice_date=now,
            due_date=now + timedelta(days=settings.billing_invoice_due_days),
            payment_attempts=0,
            line_items=items,
            has_proration=bool(pending_proration),
            proration_details=pending_proration,
            customer_details=customer_snapshot(account) if account else None,
            billing_address=dict(account.billing_address or {}) if account else None,
            dunning_level=0,
            created_at=now,
            updated_at=now,
        )
        if total <= 0:
            # Nothing to collect: settle on issue.
            invoice.status = InvoiceStatus.paid
            invoice.paid_date = now
        db.add(invoice)

        mark_billed(lines, now)
        if pending_proration:
            remaining = dict(subscription.settings or {})
            remaining.pop("pending_proration", None)
            subscription.settings = remaining
        subscription.last_billing_date = period_start
        subscription.next_billing_date = period_end

        self.recorder.record(
            db,
            subscription.id,
            SubscriptionEventType.invoice_generated,
            description=f"Invoice {invoice.invoice_number} generated",
            amount=total,
            currency=invoice.currency,
            invoice_number=invoice.invoice_number,
            event_source="scheduler",
            metadata={
                "period_start": period_start,
                "period_end": period_end,
                "line_count": len(items),
            },
        )
        db.flush()
        logger.info(
            f"Invoice {invoice.invoice_number} for subscription {subscription.id}: "
            f"{total} {invoice.currency}"
        )
        return invoice

    # -- maintenance -----------------------------------------------------

    def cancel_invoice(self, db: Session, invoice_id, reason: str | None = None,
                       actor: str | None = None) -> Invoice:
        with self.recorder.guard(
            db, "cancel_invoice", SubscriptionEventType.invoice_cancelled, actor=actor
        ) as scope:
            now = self.clock.now()
            invoice = lock_invoice(db, invoice_id)
            scope["subscription_id"] = invoice.subscription_id
            validate_invoice_transition(invoice.status, InvoiceStatus.cancelled)
            invoice.status = InvoiceStatus.cancelled
            invoice.cancelled_date = now
            invoice.next_retry_date = None
            if reason:
                invoice.notes = reason
            self.recorder.record(
                db,
                invoice.subscription_id,
                SubscriptionEventType.invoice_cancelled,
                description=f"Invoice {invoice.invoice_number} cancelled",
                amount=invoice.total_amount,
                currency=invoice.currency,
                invoice_number=invoice.invoice_number,
                actor=actor,
                metadata={"invoice_id": invoice.id, "reason": reason},
            )
            db.commit()
            db.refresh(invoice)
        return invoice

    def refund_invoice(self, db: Session, invoice_id, amount: Decimal | None = None,
                       reason: str | None = None, actor: str | None = None) -> Invoice:
        with self.recorder.guard(
            db, "refund_invoice", SubscriptionEventType.invoice_refunded, actor=actor
        ) as scope:
            now = self.clock.now()
            invoice = lock_invoice(db, invoice_id)
            scope["subscription_id"] = invoice.subscription_id
            validate_invoice_transition(invoice.status, InvoiceStatus.refunded)
            paid = to_decimal(invoice.paid_amount)
            refund = round_money(to_decimal(amount)) if amount is not None else paid
            if refund <= 0 or refund > paid:
                raise ValidationFailedError(
                    f"Refund amount must be between 0.01 and {paid}",
                    context={"field": "amount"},
                )
            invoice.status = InvoiceStatus.refunded
            invoice.refunded_date = now
            metadata = dict(invoice.metadata_ or {})
            metadata["refund"] = {"amount": str(refund), "reason": reason}
            invoice.metadata_ = metadata
            self.recorder.record(
                db,
                invoice.subscription_id,
                SubscriptionEventType.invoice_refunded,
                description=f"Invoice {invoice.invoice_number} refunded",
                amount=refund,
                currency=invoice.currency,
                invoice_number=invoice.invoice_number,
                actor=actor,
                metadata={"invoice_id": invoice.id, "reason": reason, "partial": refund < paid},
            )
            db.commit()
            db.refresh(invoice)
        logger.info(f"Invoice {invoice.invoice_number} refunded {refund} {invoice.currency}")
        return invoice

    def mark_disputed(self, db: Session, invoice_id, disputed: bool = True,
                      notes: str | None = None, actor: str | None = None) -> Invoice:
        with self.recorder.guard(
            db, "mark_disputed", SubscriptionEventType.updated, actor=actor
        ) as scope:
            invoice = lock_invoice(db, invoice_id)
            scope["subscription_id"] = invoice.subscription_id
            if bool(invoice.is_disputed) == disputed:
                return invoice
            invoice.is_disputed = disputed
            if notes:
                invoice.notes = notes
            self.recorder.record(
                db,
                invoice.subscription_id,
                SubscriptionEventType.updated,
                description=(
                    f"Invoice {invoice.invoice_number} "
                    f"{'disputed' if disputed else 'dispute withdrawn'}"
                ),
                amount=invoice.total_amount,
                currency=invoice.currency,
                invoice_number=invoice.invoice_number,
                actor=actor,
                metadata={"invoice_id": invoice.id, "is_disputed": disputed, "notes": notes},
                requires_review=disputed,
            )
            db.commit()
            db.refresh(invoice)
        return invoice
