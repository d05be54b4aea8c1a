"""Parent/child subscription bundling rules.

A hierarchy is at most one level deep: a parent has children, children
have no children, and a parent is never itself a child.
"""

import logging
from dataclasses import dataclass

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.models.subscription import Subscription
from app.services.exceptions import ConflictError, InvalidHierarchyError, NotFoundError

logger = logging.getLogger(__name__)

MAX_HIERARCHY_DEPTH = 1


@dataclass(frozen=True)
class HierarchyReport:
    valid: bool
    depth: int
    message: str | None = None
    parent_count: int = 0
    child_levels: int = 0

    def to_dict(self) -> dict:
        return {
            "valid": self.valid,
            "depth": self.depth,
            "message": self.message,
            "parent_count": self.parent_count,
            "child_levels": self.child_levels,
        }


def _live_children_count(db: Session, subscription_id) -> int:
    return (
        db.query(func.count(Subscription.id))
        .filter(Subscription.parent_subscription_id == subscription_id)
        .filter(Subscription.is_deleted.is_(False))
        .scalar()
        or 0
    )


def _ensure_live(subscription: Subscription | None, role: str, subscription_id) -> Subscription:
    if subscription is None or subscription.is_deleted:
        raise NotFoundError(f"{role.capitalize()} subscription", subscription_id)
    return subscription


def check_can_link(db: Session, parent: Subscription | None, child: Subscription | None,
                   parent_id=None, child_id=None) -> None:
    """Raise unless ``child`` may be attached under ``parent``.

    Reads live state; callers lock both rows first.
    """
    parent = _ensure_live(parent, "parent", parent_id)
    child = _ensure_live(child, "child", child_id)

    if parent.id == child.id:
        raise InvalidHierarchyError(
            "A subscription cannot be its own parent.",
            context={"rule": "self_reference", "subscription_id": str(parent.id)},
        )
    if parent.parent_subscription_id is not None:
        raise InvalidHierarchyError(
            "Parent subscription is already a child of another subscription. "
            "Only one level of hierarchy is allowed.",
            context={"rule": "parent_is_child", "parent_id": str(parent.id)},
        )
    if child.parent_subscription_id is not None:
        raise ConflictError(
            "This subscription already has a parent. Remove existing parent first.",
            context={
                "rule": "child_has_parent",
                "child_id": str(child.id),
                "current_parent_id": str(child.parent_subscription_id),
            },
        )
    if _live_children_count(db, child.id) > 0:
        raise InvalidHierarchyError(
            "Cannot make a subscription with children into a child. "
            "Only one level of hierarchy is allowed.",
            context={"rule": "child_has_children", "child_id": str(child.id)},
        )
    if _is_ancestor(db, child.id, parent):
        raise InvalidHierarchyError(
            "Linking would create a circular hierarchy.",
            context={"rule": "cycle", "parent_id": str(parent.id), "child_id": str(child.id)},
        )


def _is_ancestor(db: Session, candidate_id, subscription: Subscription) -> bool:
    seen = set()
    current = subscription
    while current is not None and current.parent_subscription_id is not None:
        if current.parent_subscription_id == candidate_id:
            return True
        if current.parent_subscription_id in seen:
            return True
        seen.add(current.parent_subscription_id)
        current = db.get(Subscription, current.parent_subscription_id)
    return False


def _parent_chain_length(db: Session, subscription: Subscription) -> int:
    count = 0
    seen = {subscription.id}
    current = subscription
    while current.parent_subscription_id is not None:
        if current.parent_subscription_id in seen:
            break
        seen.add(current.parent_subscription_id)
        count += 1
        parent = db.get(Subscription, current.parent_subscription_id)
        if parent is None:
            break
        current = parent
    return count


def _descendant_levels(db: Session, subscription_id) -> int:
    levels = 0
    frontier = [subscription_id]
    seen = {subscription_id}
    while frontier:
        child_ids = [
            row[0]
            for row in db.query(Subscription.id)
            .filter(Subscription.parent_subscription_id.in_(frontier))
            .filter(Subscription.is_deleted.is_(False))
            .all()
            if row[0] not in seen
        ]
        if not child_ids:
            break
        levels += 1
        seen.update(child_ids)
        frontier = child_ids
    return levels


def validate_hierarchy(db: Session, subscription: Subscription) -> HierarchyReport:
    """Walk up and down from ``subscription`` and report the depth.

    Depth is ``parent levels`` when the subscription is a child, otherwise
    ``descendant levels - 1`` when it is a parent (one level of children is
    depth zero from the parent's side; grandchildren are depth one). Nothing
    is modified.
    """
    parent_count = _parent_chain_length(db, subscription)
    child_levels = _descendant_levels(db, subscription.id)
    depth = parent_count + max(child_levels - 1, 0)
    if parent_count > MAX_HIERARCHY_DEPTH:
        message = f"Subscription has {parent_count} levels of parents; at most one is allowed."
    elif parent_count and child_levels:
        message = "Subscription is both a child and a parent."
        depth = parent_count + child_levels
    elif child_levels > MAX_HIERARCHY_DEPTH:
        message = f"Subscription has {child_levels} levels of descendants; at most one is allowed."
    else:
        message = None
    valid = depth <= MAX_HIERARCHY_DEPTH and message is None
    if not valid:
        logger.warning(f"Hierarchy violation for subscription {subscription.id}: {message}")
    return HierarchyReport(
        valid=valid,
        depth=depth,
        message=message or "Hierarchy is valid",
        parent_count=parent_count,
        child_levels=child_levels,
    )
