from datetime import datetime
from decimal import Decimal

from app.models.subscription import BillingCycle
from app.services.billing_dates import days_in_cycle
from app.services.clock import as_utc
from app.services.common import round_money


def prorated_amount(
    full_amount: Decimal,
    cycle: BillingCycle,
    days_used: int,
    custom_days: int | None = None,
) -> Decimal:
    """Charge for ``days_used`` days of a cycle priced at ``full_amount``.

    Uses the nominal cycle length (30/90/365 or the custom day count) and is
    capped at the full amount.
    """
    if days_used <= 0 or full_amount <= 0:
        return Decimal("0.00")
    total_days = days_in_cycle(cycle, custom_days)
    days = min(days_used, total_days)
    return round_money(Decimal(full_amount) / Decimal(total_days) * Decimal(days))


def prorated_amount_for_window(
    full_amount: Decimal,
    period_start: datetime,
    period_end: datetime,
    usage_start: datetime,
    usage_end: datetime,
) -> Decimal:
    """Charge for the part of ``[period_start, period_end)`` actually used."""
    period_start, period_end = as_utc(period_start), as_utc(period_end)
    usage_start = max(as_utc(usage_start), period_start)
    usage_end = min(as_utc(usage_end), period_end)
    period_seconds = (period_end - period_start).total_seconds()
    usage_seconds = (usage_end - usage_start).total_seconds()
    if period_seconds <= 0 or usage_seconds <= 0:
        return Decimal("0.00")
    ratio = min(Decimal(str(usage_seconds / period_seconds)), Decimal("1.00"))
    return round_money(Decimal(full_amount) * ratio)
