"""Tests for invoice generation, payment attempts and dunning."""

import re
import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import httpx
import pytest

from app.models.billing import DunningStatus, Invoice, InvoiceStatus
from app.models.subscription import CancellationReason, SubscriptionStatus
from app.models.subscription_event import SubscriptionEvent, SubscriptionEventType
from app.schemas.subscription import (
    SubscriptionCancelRequest,
    SubscriptionPauseRequest,
    SubscriptionProductLineCreate,
    SubscriptionResumeRequest,
)
from app.services.billing.gateway import HttpPaymentGateway, PaymentResult
from app.services.billing.invoices import Invoices
from app.services.billing.payments import Payments
from app.services.billing.rules import (
    DUNNING_SCHEDULE_DAYS,
    can_be_paid,
    generate_invoice_number,
    get_days_overdue,
    get_next_dunning_date,
    is_overdue,
    recalculate_balance,
    should_start_dunning,
    validate_invoice_transition,
)
from app.services.clock import as_utc
from app.services.exceptions import (
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    ValidationFailedError,
)
from tests.mocks import FakeGateway, SlowGateway

FEB_1 = datetime(2025, 2, 1, 6, 0, tzinfo=UTC)
DUE = FEB_1 + timedelta(days=14)

SUCCESS = PaymentResult(success=True, transaction_id="txn_001")
DECLINED = PaymentResult(success=False, error_code="card_declined", error_message="Declined")


def _bill(db_session, invoices_service, clock, when=FEB_1) -> list[Invoice]:
    clock.set(when)
    summary = invoices_service.generate_due_invoices(db_session)
    return [invoices_service.get(db_session, invoice_id) for invoice_id in summary["invoice_ids"]]


def _events(db_session, subscription_id, event_type):
    return (
        db_session.query(SubscriptionEvent)
        .filter(SubscriptionEvent.subscription_id == subscription_id)
        .filter(SubscriptionEvent.event_type == event_type)
        .all()
    )


# =============================================================================
# Generation
# =============================================================================


class TestGenerateDueInvoices:
    def test_bills_due_subscription_and_advances_schedule(
        self, db_session, invoices_service, make_subscription, clock
    ):
        subscription = make_subscription()

        (invoice,) = _bill(db_session, invoices_service, clock)

        assert invoice.status == InvoiceStatus.pending
        assert invoice.dunning_status == DunningStatus.not_required
        assert as_utc(invoice.period_start) == datetime(2025, 2, 1, tzinfo=UTC)
        assert as_utc(invoice.period_end) == datetime(2025, 3, 1, tzinfo=UTC)
        assert as_utc(invoice.due_date) == DUE
        assert invoice.total_amount == Decimal("50.00")
        assert invoice.balance_amount == Decimal("50.00")
        assert [item["type"] for item in invoice.line_items] == ["subscription"]
        assert invoice.customer_details["name"] == "Test Customer"
        assert invoice.billing_address["city"] == "Springfield"

        db_session.refresh(subscription)
        assert as_utc(subscription.next_billing_date) == datetime(2025, 3, 1, tzinfo=UTC)
        assert as_utc(subscription.last_billing_date) == datetime(2025, 2, 1, tzinfo=UTC)
        (event,) = _events(db_session, subscription.id, SubscriptionEventType.invoice_generated)
        assert event.invoice_number == invoice.invoice_number
        assert event.amount == Decimal("50.00")

    def test_second_run_finds_nothing(
        self, db_session, invoices_service, make_subscription, clock
    ):
        make_subscription()
        _bill(db_session, invoices_service, clock)

        summary = invoices_service.generate_due_invoices(db_session)

        assert summary["subscriptions_scanned"] == 0
        assert summary["invoices_created"] == 0
        assert db_session.query(Invoice).count() == 1

    def test_not_due_yet(self, db_session, invoices_service, make_subscription, clock):
        make_subscription()
        assert _bill(db_session, invoices_service, clock, when=FEB_1 - timedelta(days=1)) == []

    def test_period_claim_is_taken_once(self, db_session, make_subscription):
        subscription = make_subscription()
        period_start = subscription.next_billing_date

        assert Invoices._claim(db_session, subscription.id, period_start) is True
        db_session.commit()
        assert Invoices._claim(db_session, subscription.id, period_start) is False
        db_session.rollback()

    def test_claimed_period_is_skipped(
        self, db_session, invoices_service, make_subscription, clock
    ):
        subscription = make_subscription()
        Invoices._claim(db_session, subscription.id, subscription.next_billing_date)
        db_session.commit()
        clock.set(FEB_1)

        summary = invoices_service.generate_due_invoices(db_session)

        assert summary["subscriptions_scanned"] == 1
        assert summary["skipped"] == 1
        assert summary["invoices_created"] == 0

    def test_catches_up_one_period_per_run(
        self, db_session, invoices_service, make_subscription, clock
    ):
        subscription = make_subscription()
        subscription.next_billing_date = datetime(2024, 12, 1, tzinfo=UTC)
        db_session.commit()
        now = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)

        (first,) = _bill(db_session, invoices_service, clock, when=now)
        (second,) = _bill(db_session, invoices_service, clock, when=now)
        third = _bill(db_session, invoices_service, clock, when=now)

        assert as_utc(first.period_start) == datetime(2024, 12, 1, tzinfo=UTC)
        assert as_utc(second.period_start) == datetime(2025, 1, 1, tzinfo=UTC)
        assert third == []

    def test_product_lines_and_tax(
        self, db_session, invoices_service, subscriptions_service, make_subscription,
        product, clock,
    ):
        subscription = make_subscription(tax_percentage=Decimal("10"))
        subscriptions_service.attach_products(
            db_session, subscription.id, [SubscriptionProductLineCreate(product_id=product.id)]
        )

        (invoice,) = _bill(db_session, invoices_service, clock)

        assert invoice.subtotal_amount == Decimal("60.00")
        assert invoice.tax_amount == Decimal("6.00")
        assert invoice.total_amount == Decimal("66.00")
        product_item = next(item for item in invoice.line_items if item["type"] == "product")
        assert product_item["product_id"] == str(product.id)
        assert product_item["total"] == "11.00"

    def test_setup_fee_billed_once(
        self, db_session, invoices_service, subscriptions_service, make_subscription,
        product, other_product, clock,
    ):
        subscription = make_subscription()
        subscriptions_service.attach_products(
            db_session,
            subscription.id,
            [
                SubscriptionProductLineCreate(product_id=product.id),
                SubscriptionProductLineCreate(
                    product_id=other_product.id,
                    unit_price=Decimal("25.00"),
                    is_setup_fee=True,
                    is_recurring=False,
                ),
            ],
        )

        (first,) = _bill(db_session, invoices_service, clock)
        (second,) = _bill(db_session, invoices_service, clock, when=datetime(2025, 3, 1, 6, tzinfo=UTC))

        assert first.total_amount == Decimal("85.00")
        assert "setup_fee" in [item["type"] for item in first.line_items]
        assert second.total_amount == Decimal("60.00")
        assert "setup_fee" not in [item["type"] for item in second.line_items]

    def test_zero_total_invoice_is_settled_on_issue(
        self, db_session, invoices_service, make_subscription, clock
    ):
        make_subscription(base_amount=Decimal("0.00"))

        (invoice,) = _bill(db_session, invoices_service, clock)

        assert invoice.status == InvoiceStatus.paid
        assert invoice.total_amount == Decimal("0.00")
        assert as_utc(invoice.paid_date) == FEB_1

    def test_pending_proration_is_billed_and_consumed(
        self, db_session, invoices_service, subscriptions_service, make_subscription, clock
    ):
        subscription = make_subscription()
        subscriptions_service.pause(db_session, subscription.id, SubscriptionPauseRequest())
        clock.advance(days=5)
        subscriptions_service.resume(db_session, subscription.id, SubscriptionResumeRequest())

        (invoice,) = _bill(
            db_session, invoices_service, clock, when=datetime(2025, 2, 1, 13, tzinfo=UTC)
        )

        assert invoice.has_proration is True
        assert invoice.proration_details["amount"] == "28.33"
        assert invoice.total_amount == Decimal("78.33")
        db_session.refresh(subscription)
        assert "pending_proration" not in (subscription.settings or {})

    def test_proration_is_taxed_once(
        self, db_session, invoices_service, subscriptions_service, make_subscription, clock
    ):
        subscription = make_subscription(
            base_amount=Decimal("100.00"), tax_percentage=Decimal("10")
        )
        subscriptions_service.pause(db_session, subscription.id, SubscriptionPauseRequest())
        clock.advance(days=5)
        subscriptions_service.resume(db_session, subscription.id, SubscriptionResumeRequest())

        (invoice,) = _bill(
            db_session, invoices_service, clock, when=datetime(2025, 2, 1, 13, tzinfo=UTC)
        )

        (item,) = [item for item in invoice.line_items if item["type"] == "proration"]
        assert item["unit_price"] == "56.67"
        assert item["tax"] == "5.67"
        assert item["total"] == "62.34"
        assert invoice.total_amount == Decimal("172.34")

    def test_cancelled_with_notice_billed_until_effective_date(
        self, db_session, invoices_service, subscriptions_service, make_subscription, clock
    ):
        subscription = make_subscription()
        subscriptions_service.cancel(
            db_session,
            subscription.id,
            SubscriptionCancelRequest(cancellation_reason=CancellationReason.customer_request),
        )

        assert len(_bill(db_session, invoices_service, clock)) == 1
        assert _bill(
            db_session, invoices_service, clock, when=datetime(2025, 3, 1, 6, tzinfo=UTC)
        ) == []

    def test_immediately_cancelled_not_billed(
        self, db_session, invoices_service, subscriptions_service, make_subscription, clock
    ):
        subscription = make_subscription()
        subscriptions_service.cancel(
            db_session,
            subscription.id,
            SubscriptionCancelRequest(
                cancellation_reason=CancellationReason.customer_request, immediate_cancel=True
            ),
        )
        assert _bill(db_session, invoices_service, clock) == []

    def test_paused_and_pending_not_billed(
        self, db_session, invoices_service, subscriptions_service, make_subscription, clock
    ):
        make_subscription(activate=False)
        paused = make_subscription()
        subscriptions_service.pause(db_session, paused.id, SubscriptionPauseRequest())
        assert _bill(db_session, invoices_service, clock) == []

    def test_dry_run_writes_nothing(
        self, db_session, invoices_service, make_subscription, clock
    ):
        make_subscription()
        clock.set(FEB_1)

        summary = invoices_service.generate_due_invoices(db_session, dry_run=True)

        assert summary["subscriptions_scanned"] == 1
        assert summary["invoices_created"] == 0
        assert summary["dry_run"] is True
        assert db_session.query(Invoice).count() == 0

    def test_failing_subscription_does_not_stop_the_sweep(
        self, db_session, invoices_service, make_subscription, clock, monkeypatch
    ):
        broken_id = make_subscription(name="Broken").id
        healthy_id = make_subscription(name="Healthy").id
        issue = invoices_service._issue

        def _issue(db, subscription_id, period_start, now):
            if subscription_id == broken_id:
                raise ValueError("line item snapshot is corrupt")
            return issue(db, subscription_id, period_start, now)

        monkeypatch.setattr(invoices_service, "_issue", _issue)
        clock.set(FEB_1)
        summary = invoices_service.generate_due_invoices(db_session)

        assert summary["invoices_created"] == 1
        assert summary["errors"] == 1
        (invoice,) = db_session.query(Invoice).all()
        assert invoice.subscription_id == healthy_id
        (event,) = [
            event
            for event in _events(db_session, broken_id, SubscriptionEventType.invoice_generated)
            if event.is_error
        ]
        assert event.error_code == "ValueError"
        assert event.event_source == "scheduler"
        assert event.metadata_["operation"] == "generate_due_invoices"
        # The claim was rolled back, so the next run bills the period.
        monkeypatch.setattr(invoices_service, "_issue", issue)
        assert invoices_service.generate_due_invoices(db_session)["invoices_created"] == 1


# =============================================================================
# Payments
# =============================================================================


@pytest.fixture()
def invoice(db_session, invoices_service, make_subscription, clock):
    make_subscription()
    (invoice,) = _bill(db_session, invoices_service, clock)
    return invoice


class TestRecordPaymentAttempt:
    def test_successful_payment(self, db_session, payments_service, invoice):
        gateway = FakeGateway(SUCCESS)

        paid = payments_service.record_payment_attempt(db_session, invoice.id, gateway)

        assert paid.status == InvoiceStatus.paid
        assert paid.paid_amount == Decimal("50.00")
        assert paid.balance_amount == Decimal("0.00")
        assert paid.payment_attempts == 1
        assert paid.payment_transaction_id == "txn_001"
        assert gateway.calls[0]["amount"] == "50.00"
        assert gateway.calls[0]["attempt"] == 1
        (event,) = _events(db_session, invoice.subscription_id, SubscriptionEventType.payment_succeeded)
        assert event.amount == Decimal("50.00")

    def test_declined_payment_schedules_retry(
        self, db_session, payments_service, invoice, clock
    ):
        failed = payments_service.record_payment_attempt(
            db_session, invoice.id, FakeGateway(DECLINED)
        )

        assert failed.status == InvoiceStatus.pending
        assert failed.payment_attempts == 1
        assert failed.last_payment_error_code == "card_declined"
        assert as_utc(failed.next_retry_date) == clock.now() + timedelta(hours=24)
        (event,) = _events(db_session, invoice.subscription_id, SubscriptionEventType.payment_failed)
        assert event.is_error is True
        assert event.requires_review is False

    def test_exhausted_retries_flag_for_review(
        self, db_session, invoices_service, payments_service, make_subscription, clock
    ):
        make_subscription(max_retry_attempts=1)
        (invoice,) = _bill(db_session, invoices_service, clock)

        failed = payments_service.record_payment_attempt(
            db_session, invoice.id, FakeGateway(DECLINED)
        )

        assert failed.next_retry_date is None
        (event,) = _events(db_session, invoice.subscription_id, SubscriptionEventType.payment_failed)
        assert event.requires_review is True

    def test_gateway_timeout_recorded_as_failed_attempt(self, db_session, clock, invoice):
        payments = Payments(clock=clock, timeout=0.05)

        failed = payments.record_payment_attempt(db_session, invoice.id, SlowGateway())

        assert failed.status == InvoiceStatus.pending
        assert failed.last_payment_error_code == "timeout"
        assert failed.payment_attempts == 1

    def test_unparseable_decline_is_recorded(self, db_session, payments_service, invoice):
        gateway = HttpPaymentGateway(
            "https://pay.example.com",
            transport=httpx.MockTransport(
                lambda request: httpx.Response(402, text="<html>Payment Required</html>")
            ),
        )

        failed = payments_service.record_payment_attempt(db_session, invoice.id, gateway)

        assert failed.status == InvoiceStatus.pending
        assert failed.payment_attempts == 1
        assert failed.last_payment_error_code == "http_402"
        (event,) = _events(db_session, invoice.subscription_id, SubscriptionEventType.payment_failed)
        assert event.error_code == "http_402"

    def test_without_gateway_conflicts(self, db_session, payments_service, invoice):
        with pytest.raises(ConflictError):
            payments_service.record_payment_attempt(db_session, invoice.id, None)

    def test_paid_invoice_cannot_be_paid_again(self, db_session, payments_service, invoice):
        payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(SUCCESS))
        with pytest.raises(ConflictError):
            payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(SUCCESS))


class TestRetryDuePayments:
    def test_retries_after_delay(self, db_session, payments_service, invoice, clock):
        payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(DECLINED))

        assert payments_service.retry_due_payments(db_session, FakeGateway(SUCCESS)) == {
            "examined": 0,
            "paid": 0,
            "failed": 0,
            "errors": 0,
        }

        clock.advance(hours=25)
        summary = payments_service.retry_due_payments(db_session, FakeGateway(SUCCESS))

        assert summary == {"examined": 1, "paid": 1, "failed": 0, "errors": 0}
        assert _status(db_session, invoice.id) == InvoiceStatus.paid

    def test_failing_invoice_does_not_stop_the_run(
        self, db_session, invoices_service, payments_service, make_subscription, clock,
        monkeypatch,
    ):
        make_subscription(name="Broken")
        make_subscription(name="Healthy")
        broken, healthy = _bill(db_session, invoices_service, clock)
        for invoice in (broken, healthy):
            payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(DECLINED))
        broken_id, broken_subscription_id = broken.id, broken.subscription_id
        healthy_id = healthy.id
        apply_result = payments_service.apply_result

        def _apply_result(db, invoice, *args, **kwargs):
            if invoice.id == broken_id:
                raise RuntimeError("ledger write rejected")
            return apply_result(db, invoice, *args, **kwargs)

        monkeypatch.setattr(payments_service, "apply_result", _apply_result)
        clock.advance(hours=25)
        summary = payments_service.retry_due_payments(db_session, FakeGateway(SUCCESS, SUCCESS))

        assert summary == {"examined": 2, "paid": 1, "failed": 0, "errors": 1}
        assert _status(db_session, healthy_id) == InvoiceStatus.paid
        assert _status(db_session, broken_id) == InvoiceStatus.pending
        errors = [
            event
            for event in _events(
                db_session, broken_subscription_id, SubscriptionEventType.payment_failed
            )
            if event.error_code == "RuntimeError"
        ]
        assert len(errors) == 1
        assert errors[0].metadata_["operation"] == "retry_due_payments"

    def test_without_gateway_does_nothing(self, db_session, payments_service, invoice):
        assert payments_service.retry_due_payments(db_session, None) == {
            "examined": 0,
            "paid": 0,
            "failed": 0,
            "errors": 0,
        }


def _status(db_session, invoice_id):
    row = db_session.get(Invoice, invoice_id)
    db_session.refresh(row)
    return row.status


# =============================================================================
# Dunning
# =============================================================================


class TestDunningRules:
    def _overdue_invoice(self, now):
        return Invoice(
            status=InvoiceStatus.pending,
            dunning_status=DunningStatus.not_required,
            dunning_level=0,
            due_date=now - timedelta(days=10),
            total_amount=Decimal("50.00"),
            paid_amount=Decimal("0.00"),
            balance_amount=Decimal("50.00"),
            payment_attempts=1,
        )

    def test_overdue_invoice_enters_dunning_at_first_offset(self):
        now = datetime(2025, 3, 1, tzinfo=UTC)
        invoice = self._overdue_invoice(now)

        assert should_start_dunning(invoice, now) is True
        invoice.dunning_status = DunningStatus.in_progress
        assert get_next_dunning_date(invoice) == invoice.due_date + timedelta(days=3)

    def test_no_dunning_without_a_payment_attempt(self):
        now = datetime(2025, 3, 1, tzinfo=UTC)
        invoice = self._overdue_invoice(now)
        invoice.payment_attempts = 0
        assert should_start_dunning(invoice, now) is False

    def test_days_overdue_rounds_up(self):
        now = datetime(2025, 3, 1, tzinfo=UTC)
        invoice = self._overdue_invoice(now)
        invoice.due_date = now - timedelta(days=10, hours=1)
        assert get_days_overdue(invoice, now) == 11
        invoice.due_date = now + timedelta(days=1)
        assert get_days_overdue(invoice, now) == 0

    def test_settled_invoice_is_not_days_overdue(self):
        now = datetime(2025, 3, 1, tzinfo=UTC)
        invoice = self._overdue_invoice(now)
        invoice.due_date = now - timedelta(days=10)
        invoice.status = InvoiceStatus.paid
        assert get_days_overdue(invoice, now) == 0
        invoice.status = InvoiceStatus.pending
        invoice.balance_amount = Decimal("0.00")
        assert get_days_overdue(invoice, now) == 0

    def test_overdue_and_payable(self):
        now = datetime(2025, 3, 1, tzinfo=UTC)
        invoice = self._overdue_invoice(now)
        assert is_overdue(invoice, now)
        assert can_be_paid(invoice)
        invoice.status = InvoiceStatus.paid
        assert not is_overdue(invoice, now)
        assert not can_be_paid(invoice)

    def test_no_next_date_after_schedule(self):
        invoice = self._overdue_invoice(datetime(2025, 3, 1, tzinfo=UTC))
        invoice.dunning_status = DunningStatus.in_progress
        invoice.dunning_level = len(DUNNING_SCHEDULE_DAYS)
        assert get_next_dunning_date(invoice) is None

    def test_balance_cannot_go_negative(self):
        invoice = self._overdue_invoice(datetime(2025, 3, 1, tzinfo=UTC))
        invoice.paid_amount = Decimal("60.00")
        with pytest.raises(ConflictError):
            recalculate_balance(invoice)

    @pytest.mark.parametrize(
        "current,requested,allowed",
        [
            (InvoiceStatus.draft, InvoiceStatus.pending, True),
            (InvoiceStatus.pending, InvoiceStatus.paid, True),
            (InvoiceStatus.paid, InvoiceStatus.refunded, True),
            (InvoiceStatus.failed, InvoiceStatus.paid, False),
            (InvoiceStatus.refunded, InvoiceStatus.paid, False),
            (InvoiceStatus.cancelled, InvoiceStatus.pending, False),
        ],
    )
    def test_invoice_transitions(self, current, requested, allowed):
        if allowed:
            validate_invoice_transition(current, requested)
        else:
            with pytest.raises(InvalidStateTransitionError):
                validate_invoice_transition(current, requested)

    def test_invoice_number_format(self, db_session):
        number = generate_invoice_number(db_session, datetime(2025, 2, 1, tzinfo=UTC))
        assert re.fullmatch(r"INV-202502-[0-9A-F]{8}", number)


class TestAdvanceDunning:
    def _declined_invoice(self, db_session, payments_service, invoice):
        payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(DECLINED))
        return invoice.id

    def test_full_schedule_escalates_and_cancels(
        self, db_session, payments_service, dunning_service, invoice, clock
    ):
        invoice_id = self._declined_invoice(db_session, payments_service, invoice)

        clock.set(DUE + timedelta(hours=1))
        summary = dunning_service.advance_dunning(db_session)
        assert summary["started"] == 1
        row = db_session.get(Invoice, invoice_id)
        db_session.refresh(row)
        assert row.dunning_status == DunningStatus.in_progress
        assert row.dunning_level == 0

        for offset in DUNNING_SCHEDULE_DAYS[:-1]:
            clock.set(DUE + timedelta(days=offset))
            dunning_service.advance_dunning(db_session)
        db_session.refresh(row)
        assert row.dunning_level == len(DUNNING_SCHEDULE_DAYS) - 1
        assert row.status == InvoiceStatus.pending

        clock.set(DUE + timedelta(days=DUNNING_SCHEDULE_DAYS[-1]))
        summary = dunning_service.advance_dunning(db_session)

        assert summary["suspended"] == 1
        assert summary["subscriptions_cancelled"] == 1
        db_session.refresh(row)
        assert row.status == InvoiceStatus.failed
        assert row.dunning_status == DunningStatus.suspended
        subscription = row.subscription
        db_session.refresh(subscription)
        assert subscription.status == SubscriptionStatus.cancelled
        assert subscription.cancellation_reason == CancellationReason.non_payment
        retries = _events(db_session, subscription.id, SubscriptionEventType.payment_retry)
        assert any(event.error_code == "dunning_exhausted" for event in retries)

    def test_successful_retry_resolves_dunning(
        self, db_session, payments_service, dunning_service, invoice, clock
    ):
        invoice_id = self._declined_invoice(db_session, payments_service, invoice)
        clock.set(DUE + timedelta(hours=1))
        dunning_service.advance_dunning(db_session)

        clock.set(DUE + timedelta(days=DUNNING_SCHEDULE_DAYS[0]))
        summary = dunning_service.advance_dunning(db_session, gateway=FakeGateway(SUCCESS))

        assert summary["retried"] == 1
        assert summary["resolved"] == 1
        row = db_session.get(Invoice, invoice_id)
        db_session.refresh(row)
        assert row.status == InvoiceStatus.paid
        assert row.dunning_status == DunningStatus.resolved

    def test_failing_invoice_does_not_stop_the_sweep(
        self, db_session, invoices_service, payments_service, dunning_service,
        make_subscription, clock, monkeypatch,
    ):
        make_subscription(name="Broken")
        make_subscription(name="Healthy")
        broken, healthy = _bill(db_session, invoices_service, clock)
        for invoice in (broken, healthy):
            payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(DECLINED))
        broken_id, broken_subscription_id = broken.id, broken.subscription_id
        healthy_id = healthy.id
        start = dunning_service._start

        def _start(db, invoice, now):
            if invoice.id == broken_id:
                raise RuntimeError("dunning notice template missing")
            return start(db, invoice, now)

        monkeypatch.setattr(dunning_service, "_start", _start)
        clock.set(DUE + timedelta(hours=1))
        summary = dunning_service.advance_dunning(db_session)

        assert summary["started"] == 1
        assert summary["errors"] == 1
        row = db_session.get(Invoice, healthy_id)
        db_session.refresh(row)
        assert row.dunning_status == DunningStatus.in_progress
        (event,) = [
            event
            for event in _events(
                db_session, broken_subscription_id, SubscriptionEventType.payment_retry
            )
            if event.is_error
        ]
        assert event.error_code == "RuntimeError"
        assert event.metadata_["operation"] == "advance_dunning"

    def test_unattempted_invoice_not_dunned(self, db_session, dunning_service, invoice, clock):
        clock.set(DUE + timedelta(days=5))
        summary = dunning_service.advance_dunning(db_session)
        assert summary["started"] == 0


# =============================================================================
# Maintenance
# =============================================================================


class TestInvoiceMaintenance:
    def test_cancel_pending_invoice(self, db_session, invoices_service, invoice):
        cancelled = invoices_service.cancel_invoice(db_session, invoice.id, reason="duplicate")

        assert cancelled.status == InvoiceStatus.cancelled
        assert cancelled.notes == "duplicate"
        assert len(
            _events(db_session, invoice.subscription_id, SubscriptionEventType.invoice_cancelled)
        ) == 1

    def test_cancel_paid_invoice_rejected(
        self, db_session, invoices_service, payments_service, invoice
    ):
        payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(SUCCESS))

        with pytest.raises(InvalidStateTransitionError):
            invoices_service.cancel_invoice(db_session, invoice.id)

        errors = [
            event
            for event in _events(
                db_session, invoice.subscription_id, SubscriptionEventType.invoice_cancelled
            )
            if event.is_error
        ]
        assert len(errors) == 1

    def test_partial_refund(self, db_session, invoices_service, payments_service, invoice):
        payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(SUCCESS))

        refunded = invoices_service.refund_invoice(
            db_session, invoice.id, Decimal("20.00"), reason="goodwill"
        )

        assert refunded.status == InvoiceStatus.refunded
        assert refunded.metadata_["refund"] == {"amount": "20.00", "reason": "goodwill"}
        (event,) = _events(
            db_session, invoice.subscription_id, SubscriptionEventType.invoice_refunded
        )
        assert event.metadata_["partial"] is True

    def test_refund_above_paid_rejected(
        self, db_session, invoices_service, payments_service, invoice
    ):
        payments_service.record_payment_attempt(db_session, invoice.id, FakeGateway(SUCCESS))
        with pytest.raises(ValidationFailedError):
            invoices_service.refund_invoice(db_session, invoice.id, Decimal("75.00"))

    def test_refund_unpaid_rejected(self, db_session, invoices_service, invoice):
        with pytest.raises(InvalidStateTransitionError):
            invoices_service.refund_invoice(db_session, invoice.id)

    def test_dispute_flags_for_review(self, db_session, invoices_service, invoice):
        disputed = invoices_service.mark_disputed(db_session, invoice.id, True, notes="not mine")
        assert disputed.is_disputed is True

        again = invoices_service.mark_disputed(db_session, invoice.id, True)
        assert again.is_disputed is True
        reviews = [
            event
            for event in _events(db_session, invoice.subscription_id, SubscriptionEventType.updated)
            if event.requires_review
        ]
        assert len(reviews) == 1

    def test_list_by_status(self, db_session, invoices_service, invoice):
        assert [row.id for row in invoices_service.list(db_session, status="pending")] == [
            invoice.id
        ]
        assert invoices_service.list(db_session, status="paid") == []
        with pytest.raises(ValidationFailedError):
            invoices_service.list(db_session, status="bogus")

    def test_unknown_invoice_not_found(self, db_session, invoices_service):
        with pytest.raises(NotFoundError):
            invoices_service.get(db_session, uuid.uuid4())
