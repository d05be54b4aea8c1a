"""Subscription lifecycle operations.

Every operation runs in one transaction: the mutation and the audit event
it produces are committed together. When an operation is rejected the
transaction is rolled back and an error-flagged event is written in its
place before the error is re-raised to the caller.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum

from sqlalchemy.orm import Session, aliased, selectinload

from app.config import settings
from app.models.subscription import (
    BillingCycle,
    CancellationReason,
    Subscription,
    SubscriptionStatus,
)
from app.models.subscription_event import SubscriptionEventType
from app.schemas.subscription import (
    SubscriptionCancelRequest,
    SubscriptionCreate,
    SubscriptionFilters,
    SubscriptionPauseRequest,
    SubscriptionProductLineCreate,
    SubscriptionResumeRequest,
    SubscriptionUpdate,
)
from app.services import hierarchy
from app.services.billing_dates import next_billing_date, trial_end_date
from app.services.clock import Clock, as_utc, system_clock
from app.services.common import (
    apply_ordering,
    apply_pagination,
    coerce_uuid,
    round_money,
    to_decimal,
)
from app.services.events.recorder import EventRecorder, snapshot
from app.services.exceptions import (
    ConflictError,
    InvalidHierarchyError,
    InvalidStateTransitionError,
    NotCancellableError,
    NotFoundError,
    ValidationFailedError,
)
from app.services.lifecycle import (
    TERMINAL_STATUSES,
    can_be_cancelled,
    can_be_paused,
    compute_pricing,
    cycle_days,
    subscription_prorated_amount,
    validate_transition,
)
from app.services.locking import lock_subscriptions
from app.services.product_lines import ProductLineManager
from app.services.registry import (
    AccountRegistry,
    ProductCatalog,
    account_registry,
    product_catalog,
)
from app.services.response import page_response

logger = logging.getLogger(__name__)

PRICING_FIELDS = {"base_amount", "discount_amount", "discount_percentage", "tax_percentage"}
SCHEDULE_FIELDS = {"billing_cycle", "custom_billing_days", "billing_day_of_month", "start_date"}
TRIAL_FIELDS = {"has_trial", "trial_days", "start_date"}
REQUIRED_FIELDS = {
    "billing_cycle",
    "billing_day_of_month",
    "currency",
    "base_amount",
    "tax_percentage",
    "start_date",
    "has_trial",
    "notice_period_days",
    "auto_renew",
    "max_retry_attempts",
}

_STATUS_EVENT = {
    SubscriptionStatus.active: SubscriptionEventType.activated,
    SubscriptionStatus.paused: SubscriptionEventType.paused,
    SubscriptionStatus.cancelled: SubscriptionEventType.cancelled,
    SubscriptionStatus.expired: SubscriptionEventType.expired,
}

_ORDER_COLUMNS = {
    "created_at": Subscription.created_at,
    "updated_at": Subscription.updated_at,
    "name": Subscription.name,
    "status": Subscription.status,
    "start_date": Subscription.start_date,
    "end_date": Subscription.end_date,
    "next_billing_date": Subscription.next_billing_date,
    "total_amount": Subscription.total_amount,
    "billing_cycle": Subscription.billing_cycle,
}

_MONTHLY_FACTOR = {
    BillingCycle.monthly: Decimal("1"),
    BillingCycle.quarterly: Decimal("1") / Decimal("3"),
    BillingCycle.annual: Decimal("1") / Decimal("12"),
}


def _same(old, new) -> bool:
    if isinstance(old, datetime) or isinstance(new, datetime):
        return as_utc(old) == as_utc(new)
    if isinstance(old, Decimal) or isinstance(new, Decimal):
        if old is None or new is None:
            return old is new
        return to_decimal(old) == to_decimal(new)
    if isinstance(old, Enum) and not isinstance(new, Enum):
        return old.value == new
    return old == new


def _attr_name(field: str) -> str:
    return "metadata_" if field == "metadata" else field


class Subscriptions:
    def __init__(
        self,
        clock: Clock | None = None,
        accounts: AccountRegistry | None = None,
        catalog: ProductCatalog | None = None,
    ):
        self.clock = clock or system_clock
        self.accounts = accounts or account_registry
        self.catalog = catalog or product_catalog
        self.recorder = EventRecorder(self.clock)
        self.product_lines = ProductLineManager(self.clock, self.catalog, self.recorder)

    def _operation(self, db: Session, operation: str, event_type: SubscriptionEventType,
                   subscription_id=None, actor: str | None = None):
        return self.recorder.guard(db, operation, event_type, subscription_id, actor)

    # -- reads -----------------------------------------------------------

    def get(self, db: Session, subscription_id, include_deleted: bool = False) -> Subscription:
        subscription = (
            db.query(Subscription)
            .options(selectinload(Subscription.product_lines))
            .filter(Subscription.id == coerce_uuid(subscription_id))
            .one_or_none()
        )
        if not subscription or (subscription.is_deleted and not include_deleted):
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def _locked(self, db: Session, subscription_id) -> Subscription:
        subscription = lock_subscriptions(db, subscription_id).get(coerce_uuid(subscription_id))
        if not subscription or subscription.is_deleted:
            raise NotFoundError("Subscription", subscription_id)
        return subscription

    def list(
        self,
        db: Session,
        filters: SubscriptionFilters | None = None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        page: int = 1,
        limit: int = 50,
    ) -> dict:
        filters = filters or SubscriptionFilters()
        now = self.clock.now()
        query = db.query(Subscription).options(selectinload(Subscription.product_lines))
        if not filters.include_deleted:
            query = query.filter(Subscription.is_deleted.is_(False))
        if filters.account_id:
            query = query.filter(Subscription.account_id == filters.account_id)
        if filters.parent_subscription_id:
            query = query.filter(
                Subscription.parent_subscription_id == filters.parent_subscription_id
            )
        if filters.status:
            query = query.filter(Subscription.status.in_(filters.status))
        if filters.billing_cycle:
            query = query.filter(Subscription.billing_cycle.in_(filters.billing_cycle))
        if filters.currency:
            query = query.filter(Subscription.currency == filters.currency.upper())
        if filters.auto_renew is not None:
            query = query.filter(Subscription.auto_renew.is_(filters.auto_renew))
        if filters.has_trial is not None:
            query = query.filter(Subscription.has_trial.is_(filters.has_trial))
        if filters.is_child is not None:
            if filters.is_child:
                query = query.filter(Subscription.parent_subscription_id.isnot(None))
            else:
                query = query.filter(Subscription.parent_subscription_id.is_(None))
        if filters.is_parent is not None:
            child = aliased(Subscription)
            parent_ids = (
                db.query(child.parent_subscription_id)
                .filter(child.parent_subscription_id.isnot(None))
                .filter(child.is_deleted.is_(False))
            )
            if filters.is_parent:
                query = query.filter(Subscription.id.in_(parent_ids))
            else:
                query = query.filter(Subscription.id.notin_(parent_ids))
        if filters.search:
            query = query.filter(Subscription.name.ilike(f"%{filters.search}%"))
        if filters.start_date_from:
            query = query.filter(Subscription.start_date >= as_utc(filters.start_date_from))
        if filters.start_date_to:
            query = query.filter(Subscription.start_date <= as_utc(filters.start_date_to))
        if filters.next_billing_from:
            query = query.filter(
                Subscription.next_billing_date >= as_utc(filters.next_billing_from)
            )
        if filters.next_billing_to:
            query = query.filter(Subscription.next_billing_date <= as_utc(filters.next_billing_to))
        if filters.min_amount is not None:
            query = query.filter(Subscription.total_amount >= filters.min_amount)
        if filters.max_amount is not None:
            query = query.filter(Subscription.total_amount <= filters.max_amount)
        if filters.expiring_in_days is not None:
            query = query.filter(Subscription.end_date.isnot(None)).filter(
                Subscription.end_date >= now,
                Subscription.end_date <= now + timedelta(days=filters.expiring_in_days),
            )
        if filters.billing_in_days is not None:
            query = query.filter(
                Subscription.next_billing_date >= now,
                Subscription.next_billing_date <= now + timedelta(days=filters.billing_in_days),
            )
        total = query.order_by(None).count()
        query = apply_ordering(query, order_by, order_dir, _ORDER_COLUMNS)
        items = apply_pagination(query, limit, (page - 1) * limit).all()
        return page_response(items, total, page, limit)

    def children(self, db: Session, parent_id) -> list[Subscription]:
        parent = self.get(db, parent_id)
        return (
            db.query(Subscription)
            .filter(Subscription.parent_subscription_id == parent.id)
            .filter(Subscription.is_deleted.is_(False))
            .order_by(Subscription.created_at.asc())
            .all()
        )

    def parent(self, db: Session, child_id) -> Subscription | None:
        child = self.get(db, child_id)
        if child.parent_subscription_id is None:
            return None
        parent = db.get(Subscription, child.parent_subscription_id)
        if parent is None or parent.is_deleted:
            return None
        return parent

    def validate_hierarchy(self, db: Session, subscription_id) -> dict:
        subscription = self.get(db, subscription_id)
        return hierarchy.validate_hierarchy(db, subscription).to_dict()

    def stats(self, db: Session, account_id=None) -> dict:
        query = db.query(Subscription).filter(Subscription.is_deleted.is_(False))
        if account_id:
            query = query.filter(Subscription.account_id == coerce_uuid(account_id))
        by_status = {status.value: 0 for status in SubscriptionStatus}
        by_cycle = {cycle.value: 0 for cycle in BillingCycle}
        mrr: dict[str, Decimal] = {}
        total = 0
        for subscription in query.all():
            total += 1
            by_status[subscription.status.value] += 1
            by_cycle[subscription.billing_cycle.value] += 1
            if subscription.status != SubscriptionStatus.active:
                continue
            factor = _MONTHLY_FACTOR.get(subscription.billing_cycle)
            if factor is None:
                factor = Decimal("30") / Decimal(cycle_days(subscription))
            amount = to_decimal(subscription.total_amount) * factor
            mrr[subscription.currency] = mrr.get(subscription.currency, Decimal("0")) + amount
        return {
            "total": total,
            "by_status": by_status,
            "by_billing_cycle": by_cycle,
            "monthly_recurring_revenue": {
                currency: round_money(amount) for currency, amount in mrr.items()
            },
        }

    # -- create ----------------------------------------------------------

    def create(self, db: Session, payload: SubscriptionCreate, actor: str | None = None):
        with self._operation(db, "create", SubscriptionEventType.created, actor=actor):
            now = self.clock.now()
            account = self.accounts.get_account(db, payload.account_id)

            parent = None
            if payload.parent_subscription_id:
                locked = lock_subscriptions(db, payload.parent_subscription_id)
                parent = locked.get(payload.parent_subscription_id)
                if parent is None or parent.is_deleted:
                    raise NotFoundError("Parent subscription", payload.parent_subscription_id)
                if parent.parent_subscription_id is not None:
                    raise InvalidHierarchyError(
                        "Parent subscription is already a child of another subscription. "
                        "Only one level of hierarchy is allowed.",
                        context={"rule": "parent_is_child", "parent_id": str(parent.id)},
                    )

            pricing = compute_pricing(
                payload.base_amount,
                payload.discount_amount,
                payload.discount_percentage,
                payload.tax_percentage,
            )
            start = as_utc(payload.start_date) or now
            trial_end = trial_end_date(start, payload.trial_days) if payload.has_trial else None
            next_billing = next_billing_date(
                start,
                payload.billing_cycle,
                payload.billing_day_of_month,
                payload.custom_billing_days,
                now=now,
            )
            if trial_end is not None and trial_end > now:
                # Billing starts when the trial ends.
                next_billing = trial_end

            subscription = Subscription(
                account_id=account.id,
                parent_subscription_id=parent.id if parent else None,
                status=SubscriptionStatus.pending,
                name=payload.name,
                description=payload.description,
                billing_cycle=payload.billing_cycle,
                custom_billing_days=payload.custom_billing_days,
                billing_day_of_month=payload.billing_day_of_month,
                currency=(payload.currency or settings.billing_default_currency).upper(),
                start_date=start,
                end_date=as_utc(payload.end_date),
                next_billing_date=next_billing,
                has_trial=payload.has_trial,
                trial_days=payload.trial_days,
                trial_end_date=trial_end,
                total_paused_days=0,
                notice_period_days=(
                    payload.notice_period_days
                    if payload.notice_period_days is not None
                    else settings.billing_default_notice_period_days
                ),
                payment_provider=payload.payment_provider,
                payment_method_last4=payload.payment_method_last4,
                payment_method_type=payload.payment_method_type,
                auto_renew=payload.auto_renew,
                max_retry_attempts=(
                    payload.max_retry_attempts
                    if payload.max_retry_attempts is not None
                    else settings.billing_default_max_retry_attempts
                ),
                metadata_=payload.metadata,
                settings=payload.settings,
                usage_limits=payload.usage_limits,
                is_deleted=False,
                created_at=now,
                updated_at=now,
                **pricing,
            )
            db.add(subscription)
            db.flush()

            lines = []
            if payload.products:
                lines = self.product_lines.attach(
                    db, subscription, payload.products, actor=actor, record_events=False
                )

            self.recorder.record(
                db,
                subscription.id,
                SubscriptionEventType.created,
                description="Subscription created",
                new_status=subscription.status,
                new_state=snapshot(subscription),
                amount=subscription.total_amount,
                currency=subscription.currency,
                actor=actor,
                metadata={"products": [str(line.product_id) for line in lines]} if lines else None,
            )
            if parent is not None:
                self._record_link_events(db, parent, subscription, actor)
            db.commit()
            db.refresh(subscription)
        logger.info(f"Subscription {subscription.id} created for account {account.id}")
        return subscription

    # -- update ----------------------------------------------------------

    def update(self, db: Session, subscription_id, payload: SubscriptionUpdate,
               actor: str | None = None):
        with self._operation(db, "update", SubscriptionEventType.updated, subscription_id, actor):
            now = self.clock.now()
            subscription = self._locked(db, subscription_id)
            data = payload.model_dump(exclude_unset=True)
            requested_status = data.pop("status", None)
            for field in sorted(REQUIRED_FIELDS & data.keys()):
                if data[field] is None:
                    raise ValidationFailedError(
                        f"{field} cannot be cleared", context={"field": field}
                    )
            previous_status = subscription.status
            status_change = requested_status is not None and requested_status != previous_status
            if status_change:
                validate_transition(previous_status, requested_status)

            if "currency" in data and data["currency"] is not None:
                data["currency"] = data["currency"].upper()
            changed = {
                key: value
                for key, value in data.items()
                if not _same(getattr(subscription, _attr_name(key)), value)
            }
            if not changed and not status_change:
                return subscription

            before = snapshot(subscription)
            previous_total = to_decimal(subscription.total_amount)
            self._apply_field_changes(subscription, changed, now)

            event_type = SubscriptionEventType.updated
            if status_change:
                self._apply_status(subscription, requested_status, now)
                event_type = _STATUS_EVENT[requested_status]
                if (
                    previous_status == SubscriptionStatus.paused
                    and requested_status == SubscriptionStatus.active
                ):
                    event_type = SubscriptionEventType.resumed
            elif to_decimal(subscription.total_amount) > previous_total:
                event_type = SubscriptionEventType.upgraded
            elif to_decimal(subscription.total_amount) < previous_total:
                event_type = SubscriptionEventType.downgraded

            self.recorder.record(
                db,
                subscription.id,
                event_type,
                description=f"Subscription {event_type.value}",
                previous_status=previous_status,
                new_status=subscription.status,
                previous_state=before,
                new_state=snapshot(subscription),
                amount=subscription.total_amount,
                currency=subscription.currency,
                actor=actor,
            )
            db.commit()
            db.refresh(subscription)
        logger.info(f"Subscription {subscription.id} updated ({event_type.value})")
        return subscription

    def activate(self, db: Session, subscription_id, actor: str | None = None):
        return self.update(
            db, subscription_id, SubscriptionUpdate(status=SubscriptionStatus.active), actor
        )

    def _apply_field_changes(self, subscription: Subscription, changed: dict, now: datetime):
        start = as_utc(changed.get("start_date", subscription.start_date))
        end = as_utc(changed.get("end_date", subscription.end_date))
        if end is not None and end <= start:
            raise ValidationFailedError(
                "end_date must be after start_date", context={"field": "end_date"}
            )
        if subscription.has_trial or changed.get("has_trial"):
            has_trial = changed.get("has_trial", subscription.has_trial)
            trial_days = changed.get("trial_days", subscription.trial_days)
            if has_trial and not trial_days:
                raise ValidationFailedError(
                    "trial_days is required when has_trial is set",
                    context={"field": "trial_days"},
                )

        for key, value in changed.items():
            if key in PRICING_FIELDS:
                continue
            if isinstance(value, datetime):
                value = as_utc(value)
            setattr(subscription, _attr_name(key), value)

        if PRICING_FIELDS & changed.keys():
            if "discount_amount" in changed:
                discount_amount = changed["discount_amount"]
            elif "discount_percentage" in changed:
                discount_amount = None
            elif to_decimal(subscription.discount_percentage) > 0:
                discount_amount = None
            else:
                discount_amount = subscription.discount_amount
            pricing = compute_pricing(
                changed.get("base_amount", subscription.base_amount),
                discount_amount,
                changed.get("discount_percentage", subscription.discount_percentage),
                changed.get("tax_percentage", subscription.tax_percentage),
            )
            for key, value in pricing.items():
                if not _same(getattr(subscription, key), value):
                    setattr(subscription, key, value)

        if SCHEDULE_FIELDS & changed.keys():
            reference = as_utc(subscription.last_billing_date) or as_utc(subscription.start_date)
            subscription.next_billing_date = next_billing_date(
                reference,
                subscription.billing_cycle,
                subscription.billing_day_of_month,
                subscription.custom_billing_days,
                now=now,
            )
        if TRIAL_FIELDS & changed.keys():
            subscription.trial_end_date = (
                trial_end_date(subscription.start_date, subscription.trial_days)
                if subscription.has_trial
                else None
            )

    def _apply_status(self, subscription: Subscription, status: SubscriptionStatus,
                      now: datetime) -> None:
        if status == SubscriptionStatus.cancelled:
            self._apply_cancel(
                subscription,
                now,
                now + timedelta(days=subscription.notice_period_days or 0),
                CancellationReason.other,
                None,
            )
        elif status == SubscriptionStatus.paused:
            if not can_be_paused(subscription):
                raise InvalidStateTransitionError(
                    subscription.status,
                    status,
                    message="Child subscriptions follow their parent and cannot be paused directly",
                )
            self._apply_pause(subscription, now, None, None)
        elif status == SubscriptionStatus.active and subscription.status == SubscriptionStatus.paused:
            self._apply_resume(subscription, now, now, None, prorate=False, extend_end=True)
        elif status == SubscriptionStatus.expired:
            subscription.status = SubscriptionStatus.expired
            subscription.auto_renew = False
            if subscription.end_date is None or as_utc(subscription.end_date) > now:
                subscription.end_date = now
        else:
            subscription.status = status

    # -- cancel / pause / resume ----------------------------------------

    @staticmethod
    def _apply_cancel(subscription, now, effective, reason, notes) -> None:
        subscription.status = SubscriptionStatus.cancelled
        subscription.cancellation_date = now
        subscription.cancellation_effective_date = effective
        subscription.cancellation_reason = reason
        subscription.cancellation_notes = notes
        subscription.auto_renew = False

    def _live_children_ids(self, db: Session, parent_id) -> list:
        return [
            row[0]
            for row in db.query(Subscription.id)
            .filter(Subscription.parent_subscription_id == parent_id)
            .filter(Subscription.is_deleted.is_(False))
            .all()
        ]

    def cancel(self, db: Session, subscription_id, payload: SubscriptionCancelRequest,
               actor: str | None = None):
        with self._operation(db, "cancel", SubscriptionEventType.cancelled, subscription_id, actor):
            now = self.clock.now()
            subscription_id = coerce_uuid(subscription_id)
            child_ids = (
                self._live_children_ids(db, subscription_id) if payload.cancel_children else []
            )
            locked = lock_subscriptions(db, subscription_id, *child_ids)
            subscription = locked.get(subscription_id)
            if subscription is None or subscription.is_deleted:
                raise NotFoundError("Subscription", subscription_id)
            if not can_be_cancelled(subscription):
                raise NotCancellableError(subscription.status)

            if payload.cancellation_effective_date is not None:
                effective = as_utc(payload.cancellation_effective_date)
                if effective < now:
                    raise ValidationFailedError(
                        "cancellation_effective_date cannot be in the past",
                        context={"field": "cancellation_effective_date"},
                    )
            elif payload.immediate_cancel:
                effective = now
            else:
                effective = now + timedelta(days=subscription.notice_period_days or 0)

            previous_status = subscription.status
            before = snapshot(subscription)
            self._apply_cancel(
                subscription, now, effective, payload.cancellation_reason,
                payload.cancellation_notes,
            )
            self.recorder.record(
                db,
                subscription.id,
                SubscriptionEventType.cancelled,
                description=f"Subscription cancelled ({payload.cancellation_reason.value})",
                previous_status=previous_status,
                new_status=subscription.status,
                previous_state=before,
                new_state=snapshot(subscription),
                actor=actor,
                metadata={
                    "effective_date": effective,
                    "immediate": payload.immediate_cancel,
                    "notes": payload.cancellation_notes,
                },
            )

            cascaded = []
            for child_id in child_ids:
                child = locked.get(child_id)
                if child is None or child.status in TERMINAL_STATUSES:
                    continue
                child_previous = child.status
                child_before = snapshot(child)
                self._apply_cancel(
                    child, now, effective, payload.cancellation_reason,
                    payload.cancellation_notes,
                )
                self.recorder.record(
                    db,
                    child.id,
                    SubscriptionEventType.cancelled,
                    description="Subscription cancelled with parent",
                    previous_status=child_previous,
                    new_status=child.status,
                    previous_state=child_before,
                    new_state=snapshot(child),
                    related_subscription_id=subscription.id,
                    actor=actor,
                    metadata={"effective_date": effective, "cascaded_from": subscription.id},
                )
                cascaded.append(child.id)
            db.commit()
            db.refresh(subscription)
        logger.info(
            f"Subscription {subscription.id} cancelled effective {effective.isoformat()}"
            f" ({len(cascaded)} child subscription(s) cascaded)"
        )
        return subscription

    @staticmethod
    def _apply_pause(subscription, at, reason, planned_resume) -> None:
        subscription.status = SubscriptionStatus.paused
        subscription.paused_at = at
        subscription.resumed_at = None
        subscription.pause_reason = reason
        subscription.planned_resume_date = planned_resume

    def pause(self, db: Session, subscription_id, payload: SubscriptionPauseRequest,
              actor: str | None = None):
        with self._operation(db, "pause", SubscriptionEventType.paused, subscription_id, actor):
            now = self.clock.now()
            subscription_id = coerce_uuid(subscription_id)
            child_ids = (
                self._live_children_ids(db, subscription_id) if payload.pause_children else []
            )
            locked = lock_subscriptions(db, subscription_id, *child_ids)
            subscription = locked.get(subscription_id)
            if subscription is None or subscription.is_deleted:
                raise NotFoundError("Subscription", subscription_id)
            validate_transition(subscription.status, SubscriptionStatus.paused)
            if not can_be_paused(subscription):
                raise InvalidStateTransitionError(
                    subscription.status,
                    SubscriptionStatus.paused,
                    message="Child subscriptions follow their parent and cannot be paused directly",
                )

            at = as_utc(payload.pause_effective_date) or now
            if at < now:
                raise ValidationFailedError(
                    "pause_effective_date cannot be in the past",
                    context={"field": "pause_effective_date"},
                )
            planned_resume = as_utc(payload.planned_resume_date)
            if planned_resume is not None and planned_resume <= at:
                raise ValidationFailedError(
                    "planned_resume_date must be after the pause date",
                    context={"field": "planned_resume_date"},
                )

            targets = [subscription]
            for child_id in child_ids:
                child = locked.get(child_id)
                if child is not None and child.status == SubscriptionStatus.active:
                    targets.append(child)
            for target in targets:
                before = snapshot(target)
                previous_status = target.status
                self._apply_pause(target, at, payload.pause_reason, planned_resume)
                self.recorder.record(
                    db,
                    target.id,
                    SubscriptionEventType.paused,
                    description=(
                        "Subscription paused"
                        if target is subscription
                        else "Subscription paused with parent"
                    ),
                    previous_status=previous_status,
                    new_status=target.status,
                    previous_state=before,
                    new_state=snapshot(target),
                    related_subscription_id=None if target is subscription else subscription.id,
                    actor=actor,
                    metadata={"reason": payload.pause_reason, "planned_resume_date": planned_resume},
                )
            db.commit()
            db.refresh(subscription)
        logger.info(f"Subscription {subscription.id} paused")
        return subscription

    def _apply_resume(self, subscription, now, at, next_billing_override, *, prorate: bool,
                      extend_end: bool) -> dict:
        paused_at = as_utc(subscription.paused_at) or at
        if at < paused_at:
            raise ValidationFailedError(
                "resume_effective_date cannot be before the pause date",
                context={"field": "resume_effective_date"},
            )
        paused_days = (at - paused_at).days
        subscription.total_paused_days = (subscription.total_paused_days or 0) + paused_days
        if extend_end and subscription.end_date is not None and paused_days:
            subscription.end_date = as_utc(subscription.end_date) + timedelta(days=paused_days)

        if next_billing_override is not None:
            next_billing = as_utc(next_billing_override)
            if next_billing <= now:
                raise ValidationFailedError(
                    "next_billing_date must be in the future",
                    context={"field": "next_billing_date"},
                )
        else:
            next_billing = next_billing_date(
                at,
                subscription.billing_cycle,
                subscription.billing_day_of_month,
                subscription.custom_billing_days,
                now=now,
            )
        subscription.next_billing_date = next_billing

        proration = None
        if prorate:
            days = (next_billing - at).days
            if 0 < days < cycle_days(subscription):
                amount = subscription_prorated_amount(subscription, days)
                if amount > 0:
                    proration = {
                        "amount": str(amount),
                        "days": days,
                        "period_start": at.isoformat(),
                        "period_end": next_billing.isoformat(),
                    }
                    current = dict(subscription.settings or {})
                    current["pending_proration"] = proration
                    subscription.settings = current

        subscription.status = SubscriptionStatus.active
        subscription.resumed_at = at
        subscription.paused_at = None
        subscription.planned_resume_date = None
        return {"paused_days": paused_days, "proration": proration}

    def resume(self, db: Session, subscription_id, payload: SubscriptionResumeRequest,
               actor: str | None = None):
        with self._operation(db, "resume", SubscriptionEventType.resumed, subscription_id, actor):
            now = self.clock.now()
            subscription_id = coerce_uuid(subscription_id)
            child_ids = (
                self._live_children_ids(db, subscription_id) if payload.resume_children else []
            )
            parent_id = (
                db.query(Subscription.parent_subscription_id)
                .filter(Subscription.id == subscription_id)
                .scalar()
            )
            locked = lock_subscriptions(db, subscription_id, *child_ids)
            subscription = locked.get(subscription_id)
            if subscription is None or subscription.is_deleted:
                raise NotFoundError("Subscription", subscription_id)
            validate_transition(subscription.status, SubscriptionStatus.active)
            if subscription.status != SubscriptionStatus.paused:
                raise InvalidStateTransitionError(subscription.status, SubscriptionStatus.active)
            if parent_id is not None:
                parent = db.get(Subscription, parent_id)
                if parent is not None and parent.status == SubscriptionStatus.paused:
                    raise InvalidStateTransitionError(
                        subscription.status,
                        SubscriptionStatus.active,
                        message="Child subscriptions resume with their parent",
                    )

            at = as_utc(payload.resume_effective_date) or now
            targets = [subscription]
            for child_id in child_ids:
                child = locked.get(child_id)
                if child is not None and child.status == SubscriptionStatus.paused:
                    targets.append(child)
            for target in targets:
                before = snapshot(target)
                previous_status = target.status
                outcome = self._apply_resume(
                    target,
                    now,
                    at,
                    payload.next_billing_date,
                    prorate=payload.prorate_first_charge,
                    extend_end=payload.recalculate_end_date,
                )
                self.recorder.record(
                    db,
                    target.id,
                    SubscriptionEventType.resumed,
                    description=(
                        "Subscription resumed"
                        if target is subscription
                        else "Subscription resumed with parent"
                    ),
                    previous_status=previous_status,
                    new_status=target.status,
                    previous_state=before,
                    new_state=snapshot(target),
                    related_subscription_id=None if target is subscription else subscription.id,
                    actor=actor,
                    metadata={"reason": payload.resume_reason, **outcome},
                )
            db.commit()
            db.refresh(subscription)
        logger.info(f"Subscription {subscription.id} resumed")
        return subscription

    # -- hierarchy -------------------------------------------------------

    def _record_link_events(self, db: Session, parent: Subscription, child: Subscription,
                            actor: str | None) -> None:
        self.recorder.record(
            db,
            child.id,
            SubscriptionEventType.parent_assigned,
            description="Parent subscription assigned",
            related_subscription_id=parent.id,
            actor=actor,
            metadata={"parent_id": parent.id},
        )
        self.recorder.record(
            db,
            parent.id,
            SubscriptionEventType.child_added,
            description="Child subscription added",
            related_subscription_id=child.id,
            actor=actor,
            metadata={"child_id": child.id},
        )

    def link_child(self, db: Session, parent_id, child_id, actor: str | None = None):
        with self._operation(db, "link_child", SubscriptionEventType.parent_assigned,
                             child_id, actor):
            parent_id, child_id = coerce_uuid(parent_id), coerce_uuid(child_id)
            locked = lock_subscriptions(db, parent_id, child_id)
            parent, child = locked.get(parent_id), locked.get(child_id)
            hierarchy.check_can_link(db, parent, child, parent_id, child_id)
            child.parent_subscription_id = parent.id
            self._record_link_events(db, parent, child, actor)
            db.commit()
            db.refresh(child)
        logger.info(f"Subscription {child.id} linked under {parent.id}")
        return child

    def unlink_child(self, db: Session, child_id, actor: str | None = None):
        with self._operation(db, "unlink_child", SubscriptionEventType.parent_assigned,
                             child_id, actor):
            child_id = coerce_uuid(child_id)
            parent_id = (
                db.query(Subscription.parent_subscription_id)
                .filter(Subscription.id == child_id)
                .scalar()
            )
            locked = lock_subscriptions(db, child_id, parent_id)
            child = locked.get(child_id)
            if child is None or child.is_deleted:
                raise NotFoundError("Subscription", child_id)
            if child.parent_subscription_id is None:
                raise ConflictError(
                    "Subscription does not have a parent",
                    context={"child_id": str(child_id)},
                )
            if child.parent_subscription_id != parent_id:
                raise ConflictError(
                    "Subscription parent changed concurrently; retry",
                    context={"child_id": str(child_id)},
                )
            child.parent_subscription_id = None
            self.recorder.record(
                db,
                child.id,
                SubscriptionEventType.parent_assigned,
                description="Parent subscription removed",
                related_subscription_id=parent_id,
                actor=actor,
                metadata={"previous_parent_id": parent_id, "parent_id": None},
            )
            if locked.get(parent_id) is not None:
                self.recorder.record(
                    db,
                    parent_id,
                    SubscriptionEventType.child_removed,
                    description="Child subscription removed",
                    related_subscription_id=child.id,
                    actor=actor,
                    metadata={"child_id": child.id},
                )
            db.commit()
            db.refresh(child)
        logger.info(f"Subscription {child.id} unlinked from {parent_id}")
        return child

    # -- products --------------------------------------------------------

    def attach_products(self, db: Session, subscription_id,
                        lines: list[SubscriptionProductLineCreate], actor: str | None = None):
        with self._operation(db, "attach_products", SubscriptionEventType.product_added,
                             subscription_id, actor):
            subscription = self._locked(db, subscription_id)
            if subscription.status in TERMINAL_STATUSES:
                raise ConflictError(
                    f"Cannot add products to a {subscription.status.value} subscription"
                )
            self.product_lines.attach(db, subscription, lines, actor=actor)
            db.commit()
            db.refresh(subscription)
        return subscription

    def detach_product(self, db: Session, subscription_id, product_id, actor: str | None = None):
        with self._operation(db, "detach_product", SubscriptionEventType.product_removed,
                             subscription_id, actor):
            subscription = self._locked(db, subscription_id)
            self.product_lines.detach(db, subscription, product_id, actor=actor)
            db.commit()
            db.refresh(subscription)
        return subscription

    # -- delete / expire -------------------------------------------------

    def delete(self, db: Session, subscription_id, actor: str | None = None) -> None:
        with self._operation(db, "delete", SubscriptionEventType.deleted, subscription_id, actor):
            now = self.clock.now()
            subscription = self._locked(db, subscription_id)
            if subscription.status == SubscriptionStatus.active:
                raise ConflictError(
                    "Active subscriptions must be cancelled before deletion",
                    context={"status": subscription.status.value},
                )
            if self._live_children_ids(db, subscription.id):
                raise ConflictError(
                    "Subscription has child subscriptions; unlink or delete them first",
                    context={"subscription_id": str(subscription.id)},
                )
            before = snapshot(subscription)
            subscription.is_deleted = True
            subscription.deleted_at = now
            self.recorder.record(
                db,
                subscription.id,
                SubscriptionEventType.deleted,
                description="Subscription deleted",
                previous_status=subscription.status,
                new_status=subscription.status,
                previous_state=before,
                new_state=snapshot(subscription),
                actor=actor,
            )
            db.commit()
        logger.info(f"Subscription {subscription.id} soft-deleted")

    def expire_due(self, db: Session, run_at: datetime | None = None,
                   dry_run: bool = False) -> dict:
        """Expire active subscriptions whose end date has passed."""
        run_at = as_utc(run_at) or self.clock.now()
        due = (
            db.query(Subscription)
            .filter(Subscription.status == SubscriptionStatus.active)
            .filter(Subscription.is_deleted.is_(False))
            .filter(Subscription.end_date.isnot(None))
            .filter(Subscription.end_date <= run_at)
            .all()
        )
        summary = {"run_at": run_at.isoformat(), "expired": 0, "dry_run": dry_run}
        if dry_run:
            summary["expired"] = len(due)
            return summary
        try:
            for subscription in due:
                before = snapshot(subscription)
                subscription.status = SubscriptionStatus.expired
                subscription.auto_renew = False
                self.recorder.record(
                    db,
                    subscription.id,
                    SubscriptionEventType.expired,
                    description="Subscription expired at end date",
                    previous_status=SubscriptionStatus.active,
                    new_status=SubscriptionStatus.expired,
                    previous_state=before,
                    new_state=snapshot(subscription),
                    event_source="scheduler",
                )
                summary["expired"] += 1
            db.commit()
        except Exception:
            db.rollback()
            logger.exception("Subscription expiry run failed")
            raise
        logger.info(f"Expired {summary['expired']} subscription(s)")
        return summary


subscriptions = Subscriptions()
