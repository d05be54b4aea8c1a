"""Product lines attached to a subscription.

Lines snapshot the catalog product's name, SKU and price when attached and
are soft-removed with a removal date so past invoices keep a valid
reference. Callers own the transaction.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models.subscription import Subscription, SubscriptionProductLine
from app.models.subscription_event import SubscriptionEventType
from app.schemas.subscription import SubscriptionProductLineCreate
from app.services.clock import Clock, as_utc, system_clock
from app.services.common import coerce_uuid, round_money, to_decimal
from app.services.events.recorder import EventRecorder
from app.services.exceptions import ConflictError, NotFoundError, ValidationFailedError
from app.services.registry import ProductCatalog, product_catalog

logger = logging.getLogger(__name__)


def line_total(unit_price, discount_amount, quantity: int) -> Decimal:
    """``(unit_price - discount_amount) * quantity``, never below zero."""
    net = to_decimal(unit_price) - to_decimal(discount_amount)
    if net < 0:
        net = Decimal("0.00")
    return round_money(net * Decimal(quantity))


def is_line_active(line: SubscriptionProductLine, now: datetime) -> bool:
    if not line.is_active:
        return False
    removal = as_utc(line.removal_date)
    return removal is None or removal > now


def is_line_in_trial(line: SubscriptionProductLine, now: datetime) -> bool:
    trial_end = as_utc(line.trial_end_date)
    return bool(line.has_trial and trial_end and trial_end > now)


def should_be_billed(line: SubscriptionProductLine, now: datetime) -> bool:
    if not is_line_active(line, now):
        return False
    if not line.is_recurring and line.last_billed_date is not None:
        return False
    if is_line_in_trial(line, now):
        return False
    return True


def is_usage_limit_exceeded(line: SubscriptionProductLine) -> bool:
    if not line.is_usage_based or line.usage_limit is None:
        return False
    return to_decimal(line.current_usage) > to_decimal(line.usage_limit)


def active_lines(subscription: Subscription, now: datetime) -> list[SubscriptionProductLine]:
    return [line for line in subscription.product_lines if is_line_active(line, now)]


def recurring_total(subscription: Subscription, now: datetime) -> Decimal:
    """Sum of active recurring line totals billed every period."""
    total = Decimal("0.00")
    for line in active_lines(subscription, now):
        if line.is_recurring:
            total += to_decimal(line.total_price)
    return round_money(total)


def billable_lines(subscription: Subscription, now: datetime) -> list[SubscriptionProductLine]:
    return [line for line in subscription.product_lines if should_be_billed(line, now)]


def mark_billed(lines: list[SubscriptionProductLine], now: datetime) -> None:
    for line in lines:
        line.last_billed_date = now


class ProductLineManager:
    def __init__(
        self,
        clock: Clock | None = None,
        catalog: ProductCatalog | None = None,
        recorder: EventRecorder | None = None,
    ):
        self.clock = clock or system_clock
        self.catalog = catalog or product_catalog
        self.recorder = recorder or EventRecorder(self.clock)

    def attach(
        self,
        db: Session,
        subscription: Subscription,
        lines: list[SubscriptionProductLineCreate],
        actor: str | None = None,
        record_events: bool = True,
    ) -> list[SubscriptionProductLine]:
        now = self.clock.now()
        seen = set()
        created = []
        current = {line.product_id for line in active_lines(subscription, now)}
        for item in lines:
            if item.product_id in seen or item.product_id in current:
                raise ConflictError(
                    "Product is already attached to this subscription",
                    context={"product_id": str(item.product_id)},
                )
            seen.add(item.product_id)
            product = self.catalog.get_product(db, item.product_id)
            unit_price = item.unit_price if item.unit_price is not None else product.price
            unit_price = round_money(to_decimal(unit_price))
            discount = to_decimal(item.discount_amount)
            if discount <= 0 and item.discount_percentage:
                discount = unit_price * to_decimal(item.discount_percentage) / Decimal("100")
            discount = round_money(discount)
            if discount > unit_price:
                raise ValidationFailedError(
                    "Line discount cannot exceed the unit price",
                    context={"product_id": str(item.product_id)},
                )
            line = SubscriptionProductLine(
                subscription_id=subscription.id,
                product_id=product.id,
                product_name=product.name,
                product_sku=product.sku,
                quantity=item.quantity,
                unit_price=unit_price,
                discount_amount=discount,
                discount_percentage=round_money(to_decimal(item.discount_percentage)),
                total_price=line_total(unit_price, discount, item.quantity),
                is_recurring=item.is_recurring,
                is_setup_fee=item.is_setup_fee,
                billing_frequency_days=item.billing_frequency_days,
                added_date=now,
                is_usage_based=item.is_usage_based,
                usage_config=item.usage_config,
                usage_limit=item.usage_limit,
                has_trial=item.has_trial,
                trial_days=item.trial_days,
                trial_end_date=(
                    now + timedelta(days=item.trial_days)
                    if item.has_trial and item.trial_days
                    else None
                ),
                configuration=item.configuration,
                metadata_=item.metadata,
                notes=item.notes,
                sort_order=item.sort_order,
                is_active=True,
            )
            db.add(line)
            subscription.product_lines.append(line)
            created.append(line)
            if not record_events:
                continue
            self.recorder.record(
                db,
                subscription.id,
                SubscriptionEventType.product_added,
                description=f"Product {product.name} added",
                amount=line.total_price,
                currency=subscription.currency,
                related_product_id=product.id,
                actor=actor,
                metadata={"quantity": item.quantity, "unit_price": unit_price},
            )
        if created:
            logger.info(
                f"Attached {len(created)} product line(s) to subscription {subscription.id}"
            )
        return created

    def detach(
        self,
        db: Session,
        subscription: Subscription,
        product_id,
        actor: str | None = None,
    ) -> SubscriptionProductLine:
        now = self.clock.now()
        product_id = coerce_uuid(product_id)
        line = next(
            (item for item in active_lines(subscription, now) if item.product_id == product_id),
            None,
        )
        if line is None:
            raise NotFoundError("Subscription product", product_id)
        line.removal_date = now
        line.is_active = False
        self.recorder.record(
            db,
            subscription.id,
            SubscriptionEventType.product_removed,
            description=f"Product {line.product_name} removed",
            amount=line.total_price,
            currency=subscription.currency,
            related_product_id=product_id,
            actor=actor,
        )
        logger.info(f"Detached product {product_id} from subscription {subscription.id}")
        return line
