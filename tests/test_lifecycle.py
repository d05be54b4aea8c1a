"""Tests for the subscription status machine, predicates and pricing."""

import uuid
from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from app.models.subscription import BillingCycle, Subscription, SubscriptionStatus
from app.services.exceptions import InvalidStateTransitionError, NotCancellableError
from app.services.lifecycle import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    can_be_cancelled,
    can_be_paused,
    can_be_resumed,
    can_transition,
    compute_pricing,
    is_currently_active,
    is_in_trial,
    needs_payment_retry,
    subscription_prorated_amount,
    validate_transition,
)

NOW = datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


def _subscription(**kwargs) -> Subscription:
    values = {
        "status": SubscriptionStatus.active,
        "billing_cycle": BillingCycle.monthly,
        "base_amount": Decimal("30.00"),
        "discount_amount": Decimal("0.00"),
        "total_amount": Decimal("30.00"),
        "max_retry_attempts": 3,
        "has_trial": False,
    }
    values.update(kwargs)
    return Subscription(**values)


# =============================================================================
# Status machine
# =============================================================================


EXPECTED_TRANSITIONS = {
    (SubscriptionStatus.pending, SubscriptionStatus.active),
    (SubscriptionStatus.pending, SubscriptionStatus.cancelled),
    (SubscriptionStatus.active, SubscriptionStatus.paused),
    (SubscriptionStatus.active, SubscriptionStatus.cancelled),
    (SubscriptionStatus.active, SubscriptionStatus.expired),
    (SubscriptionStatus.paused, SubscriptionStatus.active),
    (SubscriptionStatus.paused, SubscriptionStatus.cancelled),
}


class TestTransitions:
    @pytest.mark.parametrize("current", list(SubscriptionStatus))
    @pytest.mark.parametrize("requested", list(SubscriptionStatus))
    def test_every_pair_matches_the_table(self, current, requested):
        """Every (from, to) pair is either allowed or rejected, never both."""
        allowed = (current, requested) in EXPECTED_TRANSITIONS
        assert can_transition(current, requested) is allowed
        if allowed:
            validate_transition(current, requested)
        else:
            with pytest.raises(InvalidStateTransitionError):
                validate_transition(current, requested)

    def test_terminal_statuses_have_no_exits(self):
        for status in TERMINAL_STATUSES:
            assert ALLOWED_TRANSITIONS[status] == frozenset()

    def test_rejected_cancel_is_not_cancellable(self):
        with pytest.raises(NotCancellableError) as exc_info:
            validate_transition(SubscriptionStatus.expired, SubscriptionStatus.cancelled)
        assert exc_info.value.code == "not_cancellable"
        assert exc_info.value.status_code == 409

    def test_error_carries_both_statuses(self):
        with pytest.raises(InvalidStateTransitionError) as exc_info:
            validate_transition(SubscriptionStatus.pending, SubscriptionStatus.paused)
        assert exc_info.value.context == {
            "current_status": "pending",
            "requested_status": "paused",
        }


# =============================================================================
# Predicates
# =============================================================================


class TestPredicates:
    def test_currently_active_respects_end_date(self):
        assert is_currently_active(_subscription(), NOW)
        assert is_currently_active(_subscription(end_date=NOW + timedelta(days=1)), NOW)
        assert not is_currently_active(_subscription(end_date=NOW - timedelta(days=1)), NOW)
        assert not is_currently_active(_subscription(status=SubscriptionStatus.paused), NOW)

    def test_in_trial(self):
        trial = _subscription(has_trial=True, trial_end_date=NOW + timedelta(days=3))
        assert is_in_trial(trial, NOW)
        assert not is_in_trial(trial, NOW + timedelta(days=4))

    def test_cancellable_statuses(self):
        for status in SubscriptionStatus:
            expected = status not in TERMINAL_STATUSES
            assert can_be_cancelled(_subscription(status=status)) is expected

    def test_child_cannot_be_paused(self):
        assert can_be_paused(_subscription())
        assert not can_be_paused(_subscription(parent_subscription_id=uuid.uuid4()))
        assert not can_be_paused(_subscription(status=SubscriptionStatus.pending))

    def test_can_be_resumed(self):
        assert can_be_resumed(_subscription(status=SubscriptionStatus.paused))
        assert not can_be_resumed(_subscription())

    def test_payment_retry_until_max_attempts(self):
        subscription = _subscription(max_retry_attempts=3)
        assert needs_payment_retry(subscription, 2)
        assert not needs_payment_retry(subscription, 3)
        assert not needs_payment_retry(_subscription(status=SubscriptionStatus.paused), 1)

    def test_subscription_proration(self):
        assert subscription_prorated_amount(_subscription(), 15) == Decimal("15.00")

    def test_proration_is_computed_before_tax(self):
        subscription = _subscription(
            base_amount=Decimal("100.00"),
            discount_amount=Decimal("10.00"),
            tax_percentage=Decimal("10.00"),
            total_amount=Decimal("99.00"),
        )
        assert subscription_prorated_amount(subscription, 15) == Decimal("45.00")


# =============================================================================
# Pricing
# =============================================================================


class TestComputePricing:
    def test_percentage_discount_and_tax(self):
        pricing = compute_pricing(Decimal("100.00"), None, Decimal("10"), Decimal("7.5"))
        assert pricing["discount_amount"] == Decimal("10.00")
        assert pricing["tax_amount"] == Decimal("6.75")
        assert pricing["total_amount"] == Decimal("96.75")

    def test_explicit_discount_wins_over_percentage(self):
        pricing = compute_pricing(Decimal("100.00"), Decimal("5.00"), Decimal("50"), None)
        assert pricing["discount_amount"] == Decimal("5.00")
        assert pricing["total_amount"] == Decimal("95.00")

    def test_discount_is_capped_at_base(self):
        pricing = compute_pricing(Decimal("20.00"), Decimal("50.00"), None, Decimal("10"))
        assert pricing["discount_amount"] == Decimal("20.00")
        assert pricing["tax_amount"] == Decimal("0.00")
        assert pricing["total_amount"] == Decimal("0.00")

    def test_total_identity_holds(self):
        pricing = compute_pricing(Decimal("49.99"), None, Decimal("12.5"), Decimal("19"))
        assert pricing["total_amount"] == (
            pricing["base_amount"] - pricing["discount_amount"] + pricing["tax_amount"]
        )
