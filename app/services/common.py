"""Common helper functions for the service layer.

This module provides reusable utilities for:
- UUID handling
- Query ordering and pagination
- Enum validation
- Entity retrieval raising domain errors
- Monetary calculations
"""

from __future__ import annotations

import uuid
from decimal import ROUND_HALF_UP, Decimal
from typing import TYPE_CHECKING, TypeVar

from app.services.exceptions import NotFoundError, ValidationFailedError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session

T = TypeVar("T")

CENT = Decimal("0.01")


def coerce_uuid(value):
    """Convert value to UUID, returning None if value is None."""
    if value is None:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid identifier: {value}") from exc


def apply_ordering(query, order_by: str, order_dir: str, allowed_columns: dict):
    """Apply ordering to a query with validation.

    Args:
        query: SQLAlchemy query object
        order_by: Column name to order by
        order_dir: Direction ('asc' or 'desc')
        allowed_columns: Dict mapping column names to SQLAlchemy columns

    Raises:
        ValidationFailedError: if order_by is not in allowed_columns
    """
    if order_by not in allowed_columns:
        raise ValidationFailedError(
            f"Invalid order_by. Allowed: {', '.join(sorted(allowed_columns))}"
        )
    column = allowed_columns[order_by]
    if order_dir == "desc":
        return query.order_by(column.desc())
    return query.order_by(column.asc())


def apply_pagination(query, limit: int, offset: int):
    return query.limit(limit).offset(offset)


def validate_enum(value, enum_cls, label: str):
    """Validate and convert a value to an enum member, passing None through."""
    if value is None:
        return None
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError as exc:
        raise ValidationFailedError(f"Invalid {label}") from exc


def get_or_raise(db: Session, model: type[T], id, entity: str | None = None, **options) -> T:
    """Get entity by ID or raise NotFoundError."""
    entity_id = coerce_uuid(id)
    instance = db.get(model, entity_id, **options) if entity_id is not None else None
    if not instance:
        raise NotFoundError(entity or model.__name__, entity_id)
    return instance


def round_money(value: Decimal | int | float | str) -> Decimal:
    """Round monetary value to 2 decimal places, half up."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value, default: str = "0.00") -> Decimal:
    if value is None:
        return Decimal(default)
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
