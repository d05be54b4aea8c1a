"""Row locks for operations spanning several subscription aggregates."""

from sqlalchemy.orm import Session

from app.models.subscription import Subscription
from app.services.common import coerce_uuid


def lock_subscriptions(db: Session, *subscription_ids) -> dict:
    """Lock the given subscriptions with SELECT ... FOR UPDATE.

    Rows are locked one by one in ascending id order so two operations on
    the same pair always acquire them in the same sequence. Missing ids map
    to None.
    """
    ids = sorted({coerce_uuid(value) for value in subscription_ids if value is not None}, key=str)
    locked = {}
    for subscription_id in ids:
        locked[subscription_id] = (
            db.query(Subscription)
            .filter(Subscription.id == subscription_id)
            .populate_existing()
            .with_for_update()
            .one_or_none()
        )
    return locked
