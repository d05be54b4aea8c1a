"""Subscription status machine, read-time predicates and pricing math."""

from datetime import datetime
from decimal import Decimal

from app.models.subscription import Subscription, SubscriptionStatus
from app.services.billing_dates import days_in_cycle
from app.services.clock import as_utc
from app.services.common import round_money, to_decimal
from app.services.exceptions import InvalidStateTransitionError, NotCancellableError
from app.services.proration import prorated_amount

ALLOWED_TRANSITIONS: dict[SubscriptionStatus, frozenset[SubscriptionStatus]] = {
    SubscriptionStatus.pending: frozenset(
        {SubscriptionStatus.active, SubscriptionStatus.cancelled}
    ),
    SubscriptionStatus.active: frozenset(
        {SubscriptionStatus.paused, SubscriptionStatus.cancelled, SubscriptionStatus.expired}
    ),
    SubscriptionStatus.paused: frozenset(
        {SubscriptionStatus.active, SubscriptionStatus.cancelled}
    ),
    SubscriptionStatus.cancelled: frozenset(),
    SubscriptionStatus.expired: frozenset(),
}

TERMINAL_STATUSES = frozenset({SubscriptionStatus.cancelled, SubscriptionStatus.expired})
CANCELLABLE_STATUSES = frozenset(
    {SubscriptionStatus.pending, SubscriptionStatus.active, SubscriptionStatus.paused}
)


def can_transition(current: SubscriptionStatus, requested: SubscriptionStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS.get(current, frozenset())


def validate_transition(current: SubscriptionStatus, requested: SubscriptionStatus) -> None:
    if not can_transition(current, requested):
        if requested == SubscriptionStatus.cancelled:
            raise NotCancellableError(current)
        raise InvalidStateTransitionError(current, requested)


def is_currently_active(subscription: Subscription, now: datetime) -> bool:
    if subscription.status != SubscriptionStatus.active:
        return False
    end_date = as_utc(subscription.end_date)
    return end_date is None or end_date > now


def is_in_trial(subscription: Subscription, now: datetime) -> bool:
    trial_end = as_utc(subscription.trial_end_date)
    return bool(subscription.has_trial and trial_end and trial_end > now)


def can_be_cancelled(subscription: Subscription) -> bool:
    return subscription.status in CANCELLABLE_STATUSES


def can_be_paused(subscription: Subscription) -> bool:
    return (
        subscription.status == SubscriptionStatus.active
        and subscription.parent_subscription_id is None
    )


def can_be_resumed(subscription: Subscription) -> bool:
    return subscription.status == SubscriptionStatus.paused


def needs_payment_retry(subscription: Subscription, failed_attempts: int) -> bool:
    return (
        subscription.status == SubscriptionStatus.active
        and failed_attempts < (subscription.max_retry_attempts or 0)
    )


def cycle_days(subscription: Subscription) -> int:
    return days_in_cycle(subscription.billing_cycle, subscription.custom_billing_days)


def subscription_prorated_amount(subscription: Subscription, days: int) -> Decimal:
    """Pre-tax charge for ``days`` of the cycle; tax is added on the invoice."""
    net = to_decimal(subscription.base_amount) - to_decimal(subscription.discount_amount)
    return prorated_amount(
        net,
        subscription.billing_cycle,
        days,
        subscription.custom_billing_days,
    )


def compute_pricing(
    base_amount,
    discount_amount=None,
    discount_percentage=None,
    tax_percentage=None,
) -> dict[str, Decimal]:
    """Derive discount, tax and total from the pricing inputs.

    An explicit discount amount wins over a percentage. The stored
    ``discount_amount`` is always the effective discount so that
    ``total = base - discount + tax`` holds on the row.
    """
    base = round_money(to_decimal(base_amount))
    pct = to_decimal(discount_percentage)
    explicit = to_decimal(discount_amount)
    if explicit > 0:
        discount = round_money(explicit)
    else:
        discount = round_money(base * pct / Decimal("100"))
    discount = min(discount, base)
    tax_pct = to_decimal(tax_percentage)
    tax = round_money((base - discount) * tax_pct / Decimal("100"))
    return {
        "base_amount": base,
        "discount_amount": discount,
        "discount_percentage": round_money(pct),
        "tax_percentage": round_money(tax_pct),
        "tax_amount": tax,
        "total_amount": round_money(base - discount + tax),
    }
