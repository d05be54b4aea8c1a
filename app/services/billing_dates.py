"""Billing date arithmetic.

All functions are pure: "now" is always passed in by the caller, which
gets it from an injected clock.
"""

from calendar import monthrange
from datetime import datetime, timedelta

from app.models.subscription import BillingCycle
from app.services.clock import as_utc

DEFAULT_CUSTOM_DAYS = 30
MIN_BILLING_DAY = 1
MAX_BILLING_DAY = 28

_CYCLE_MONTHS = {
    BillingCycle.monthly: 1,
    BillingCycle.quarterly: 3,
    BillingCycle.annual: 12,
}

_CYCLE_DAYS = {
    BillingCycle.monthly: 30,
    BillingCycle.quarterly: 90,
    BillingCycle.annual: 365,
}


def add_months(value: datetime, months: int) -> datetime:
    total = value.month - 1 + months
    year = value.year + total // 12
    month = total % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def pin_day_of_month(value: datetime, day: int) -> datetime:
    """Move ``value`` to ``day`` within its month, clamped to the month length."""
    last_day = monthrange(value.year, value.month)[1]
    return value.replace(day=min(day, last_day))


def _advance(from_: datetime, cycle: BillingCycle, billing_day_of_month: int, custom_days):
    if cycle == BillingCycle.custom:
        return from_ + timedelta(days=custom_days or DEFAULT_CUSTOM_DAYS)
    advanced = add_months(from_, _CYCLE_MONTHS[cycle])
    return pin_day_of_month(advanced, billing_day_of_month)


def next_billing_date(
    from_: datetime,
    cycle: BillingCycle,
    billing_day_of_month: int = 1,
    custom_days: int | None = None,
    *,
    now: datetime,
) -> datetime:
    """Compute the next billing date after ``from_``.

    Monthly, quarterly and annual cycles advance by 1, 3 or 12 months and
    pin the day of month (clamped to the month length). Custom cycles
    advance by ``custom_days`` (30 when unset). The result is always
    strictly after ``now``: a stale result is recomputed once from ``now``.
    """
    from_ = as_utc(from_)
    now = as_utc(now)
    candidate = _advance(from_, cycle, billing_day_of_month, custom_days)
    if candidate > now:
        return candidate
    return _advance(now, cycle, billing_day_of_month, custom_days)


def days_in_cycle(cycle: BillingCycle, custom_days: int | None = None) -> int:
    if cycle == BillingCycle.custom:
        return custom_days or DEFAULT_CUSTOM_DAYS
    return _CYCLE_DAYS[cycle]


def period_end(
    start: datetime,
    cycle: BillingCycle,
    billing_day_of_month: int = 1,
    custom_days: int | None = None,
) -> datetime:
    """End of the billing period starting at ``start`` (no future guarantee)."""
    return _advance(as_utc(start), cycle, billing_day_of_month, custom_days)


def trial_end_date(start: datetime, trial_days: int | None) -> datetime | None:
    if not trial_days:
        return None
    return as_utc(start) + timedelta(days=trial_days)


def validate_billing_day(day: int) -> bool:
    return MIN_BILLING_DAY <= day <= MAX_BILLING_DAY
