from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.orm import Session

from app.api.deps import get_actor, get_db
from app.models.subscription import BillingCycle, SubscriptionStatus
from app.schemas.common import PageResponse
from app.schemas.subscription import (
    HierarchyValidationRead,
    SubscriptionCancelRequest,
    SubscriptionCreate,
    SubscriptionExpiryResponse,
    SubscriptionFilters,
    SubscriptionPauseRequest,
    SubscriptionProductLineCreate,
    SubscriptionRead,
    SubscriptionResumeRequest,
    SubscriptionStatsRead,
    SubscriptionUpdate,
)
from app.services import subscriptions as subscriptions_service

router = APIRouter(prefix="/subscriptions", tags=["subscriptions"])


@router.post("", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED)
def create_subscription(
    payload: SubscriptionCreate,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.create(db, payload, actor=actor)


@router.get("", response_model=PageResponse[SubscriptionRead])
def list_subscriptions(
    account_id: UUID | None = None,
    parent_subscription_id: UUID | None = None,
    status_filter: list[SubscriptionStatus] | None = Query(default=None, alias="status"),
    billing_cycle: list[BillingCycle] | None = Query(default=None),
    currency: str | None = Query(default=None, min_length=3, max_length=3),
    auto_renew: bool | None = None,
    has_trial: bool | None = None,
    is_parent: bool | None = None,
    is_child: bool | None = None,
    search: str | None = Query(default=None, max_length=160),
    expiring_in_days: int | None = Query(default=None, ge=0),
    billing_in_days: int | None = Query(default=None, ge=0),
    include_deleted: bool = False,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=200),
    db: Session = Depends(get_db),
):
    filters = SubscriptionFilters(
        account_id=account_id,
        parent_subscription_id=parent_subscription_id,
        status=status_filter,
        billing_cycle=billing_cycle,
        currency=currency,
        auto_renew=auto_renew,
        has_trial=has_trial,
        is_parent=is_parent,
        is_child=is_child,
        search=search,
        expiring_in_days=expiring_in_days,
        billing_in_days=billing_in_days,
        include_deleted=include_deleted,
    )
    return subscriptions_service.subscriptions.list(
        db, filters, order_by=order_by, order_dir=order_dir, page=page, limit=limit
    )


@router.get("/stats", response_model=SubscriptionStatsRead)
def subscription_stats(account_id: UUID | None = None, db: Session = Depends(get_db)):
    return subscriptions_service.subscriptions.stats(db, account_id)


@router.get("/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(subscription_id: str, db: Session = Depends(get_db)):
    return subscriptions_service.subscriptions.get(db, subscription_id)


@router.patch("/{subscription_id}", response_model=SubscriptionRead)
def update_subscription(
    subscription_id: str,
    payload: SubscriptionUpdate,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.update(db, subscription_id, payload, actor=actor)


@router.delete("/{subscription_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    subscriptions_service.subscriptions.delete(db, subscription_id, actor=actor)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{subscription_id}/activate", response_model=SubscriptionRead)
def activate_subscription(
    subscription_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.activate(db, subscription_id, actor=actor)


@router.post("/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: str,
    payload: SubscriptionCancelRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.cancel(db, subscription_id, payload, actor=actor)


@router.post("/{subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(
    subscription_id: str,
    payload: SubscriptionPauseRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.pause(db, subscription_id, payload, actor=actor)


@router.post("/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    subscription_id: str,
    payload: SubscriptionResumeRequest,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.resume(db, subscription_id, payload, actor=actor)


@router.get("/{subscription_id}/children", response_model=list[SubscriptionRead])
def list_children(subscription_id: str, db: Session = Depends(get_db)):
    return subscriptions_service.subscriptions.children(db, subscription_id)


@router.get("/{subscription_id}/parent", response_model=SubscriptionRead | None)
def get_parent(subscription_id: str, db: Session = Depends(get_db)):
    return subscriptions_service.subscriptions.parent(db, subscription_id)


@router.post("/{parent_id}/children/{child_id}", response_model=SubscriptionRead)
def link_child(
    parent_id: str,
    child_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.link_child(db, parent_id, child_id, actor=actor)


@router.delete("/{subscription_id}/parent", response_model=SubscriptionRead)
def unlink_child(
    subscription_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.unlink_child(db, subscription_id, actor=actor)


@router.get("/{subscription_id}/hierarchy/validate", response_model=HierarchyValidationRead)
def validate_hierarchy(subscription_id: str, db: Session = Depends(get_db)):
    return subscriptions_service.subscriptions.validate_hierarchy(db, subscription_id)


@router.post("/{subscription_id}/products", response_model=SubscriptionRead)
def attach_products(
    subscription_id: str,
    payload: list[SubscriptionProductLineCreate],
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.attach_products(
        db, subscription_id, payload, actor=actor
    )


@router.delete("/{subscription_id}/products/{product_id}", response_model=SubscriptionRead)
def detach_product(
    subscription_id: str,
    product_id: str,
    db: Session = Depends(get_db),
    actor: str | None = Depends(get_actor),
):
    return subscriptions_service.subscriptions.detach_product(
        db, subscription_id, product_id, actor=actor
    )


@router.post("/expire", response_model=SubscriptionExpiryResponse)
def expire_due_subscriptions(dry_run: bool = False, db: Session = Depends(get_db)):
    return subscriptions_service.subscriptions.expire_due(db, dry_run=dry_run)
