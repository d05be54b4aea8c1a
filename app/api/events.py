from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from app.api.deps import get_db
from app.schemas.common import ListResponse
from app.schemas.event import EventDispatchResponse, EventReviewRequest, SubscriptionEventRead
from app.services.events import get_dispatcher
from app.services.events.log import subscription_events
from app.services.response import list_response

router = APIRouter(tags=["subscription-events"])


@router.get(
    "/subscriptions/{subscription_id}/events",
    response_model=ListResponse[SubscriptionEventRead],
)
def list_subscription_events(
    subscription_id: str,
    event_type: str | None = None,
    category: str | None = None,
    is_error: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items = subscription_events.list(
        db,
        subscription_id=subscription_id,
        event_type=event_type,
        category=category,
        is_error=is_error,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )
    return list_response(items, limit, offset)


@router.get("/events", response_model=ListResponse[SubscriptionEventRead])
def list_events(
    event_type: str | None = None,
    category: str | None = None,
    is_error: bool | None = None,
    requires_review: bool | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: Session = Depends(get_db),
):
    items = subscription_events.list(
        db,
        event_type=event_type,
        category=category,
        is_error=is_error,
        requires_review=requires_review,
        order_by=order_by,
        order_dir=order_dir,
        limit=limit,
        offset=offset,
    )
    return list_response(items, limit, offset)


@router.post("/events/dispatch", response_model=EventDispatchResponse)
def dispatch_pending_events(db: Session = Depends(get_db)):
    return get_dispatcher().dispatch_pending(db)


@router.get("/events/{event_id}", response_model=SubscriptionEventRead)
def get_event(event_id: str, db: Session = Depends(get_db)):
    return subscription_events.get(db, event_id)


@router.post("/events/{event_id}/review", response_model=SubscriptionEventRead)
def mark_event_reviewed(
    event_id: str, payload: EventReviewRequest, db: Session = Depends(get_db)
):
    return subscription_events.mark_reviewed(
        db, event_id, payload.reviewed_by, payload.review_notes
    )
