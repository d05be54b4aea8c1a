"""create subscription billing tables

Revision ID: a3f1c2d4e5b6
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql
from sqlalchemy.dialects.postgresql import ENUM


# revision identifiers, used by Alembic.
revision: str = "a3f1c2d4e5b6"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


SUBSCRIPTION_STATUS = ENUM(
    "pending", "active", "paused", "cancelled", "expired",
    name="subscriptionstatus", create_type=False,
)
BILLING_CYCLE = ENUM(
    "monthly", "quarterly", "annual", "custom", name="billingcycle", create_type=False
)
CANCELLATION_REASON = ENUM(
    "customer_request", "non_payment", "fraud", "other",
    name="cancellationreason", create_type=False,
)
INVOICE_STATUS = ENUM(
    "draft", "pending", "paid", "failed", "cancelled", "refunded",
    name="invoicestatus", create_type=False,
)
DUNNING_STATUS = ENUM(
    "not_required", "in_progress", "grace_period", "suspended", "resolved", "failed",
    name="dunningstatus", create_type=False,
)
EVENT_TYPE = ENUM(
    "created", "activated", "paused", "resumed", "cancelled", "expired", "deleted",
    "invoice_generated", "payment_succeeded", "payment_failed", "payment_retry",
    "invoice_cancelled", "invoice_refunded",
    "updated", "upgraded", "downgraded", "product_added", "product_removed",
    "parent_assigned", "child_added", "child_removed",
    name="subscriptioneventtype", create_type=False,
)
EVENT_CATEGORY = ENUM(
    "lifecycle", "billing", "modification", "hierarchy",
    name="eventcategory", create_type=False,
)

_ENUMS = (
    SUBSCRIPTION_STATUS,
    BILLING_CYCLE,
    CANCELLATION_REASON,
    INVOICE_STATUS,
    DUNNING_STATUS,
    EVENT_TYPE,
    EVENT_CATEGORY,
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    bind = op.get_bind()
    for enum_type in _ENUMS:
        enum_type.create(bind, checkfirst=True)

    op.create_table(
        "accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("email", sa.String(length=255), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        sa.Column("tax_id", sa.String(length=60), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "products",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("sku", sa.String(length=80), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("price", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("sku"),
    )

    op.create_table(
        "subscriptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("account_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("parent_subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("status", SUBSCRIPTION_STATUS, nullable=False, server_default="pending"),
        sa.Column("name", sa.String(length=160), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("billing_cycle", BILLING_CYCLE, nullable=False, server_default="monthly"),
        sa.Column("custom_billing_days", sa.Integer(), nullable=True),
        sa.Column("billing_day_of_month", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("base_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("start_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_billing_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_invoiced_period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("has_trial", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trial_days", sa.Integer(), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resumed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("planned_resume_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("pause_reason", sa.String(length=200), nullable=True),
        sa.Column("total_paused_days", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("cancellation_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_effective_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", CANCELLATION_REASON, nullable=True),
        sa.Column("cancellation_notes", sa.Text(), nullable=True),
        sa.Column("notice_period_days", sa.Integer(), nullable=False, server_default=sa.text("30")),
        sa.Column("payment_provider", sa.String(length=60), nullable=True),
        sa.Column("payment_method_last4", sa.String(length=4), nullable=True),
        sa.Column("payment_method_type", sa.String(length=40), nullable=True),
        sa.Column("auto_renew", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("max_retry_attempts", sa.Integer(), nullable=False, server_default=sa.text("3")),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("settings", sa.JSON(), nullable=True),
        sa.Column("usage_limits", sa.JSON(), nullable=True),
        sa.Column("current_usage", sa.JSON(), nullable=True),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["account_id"], ["accounts.id"]),
        sa.ForeignKeyConstraint(["parent_subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_account_id", "subscriptions", ["account_id"])
    op.create_index("ix_subscriptions_parent_id", "subscriptions", ["parent_subscription_id"])
    op.create_index(
        "ix_subscriptions_status_next_billing",
        "subscriptions",
        ["status", "next_billing_date"],
    )

    op.create_table(
        "subscription_product_lines",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("product_name", sa.String(length=200), nullable=False),
        sa.Column("product_sku", sa.String(length=80), nullable=True),
        sa.Column("quantity", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("unit_price", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_percentage", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_price", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("is_recurring", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("is_setup_fee", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("billing_frequency_days", sa.Integer(), nullable=True),
        sa.Column("added_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("removal_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_billed_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_usage_based", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("usage_config", sa.JSON(), nullable=True),
        sa.Column("current_usage", sa.Numeric(14, 4), nullable=True),
        sa.Column("usage_limit", sa.Numeric(14, 4), nullable=True),
        sa.Column("has_trial", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("trial_days", sa.Integer(), nullable=True),
        sa.Column("trial_end_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("configuration", sa.JSON(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["product_id"], ["products.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_product_lines_subscription",
        "subscription_product_lines",
        ["subscription_id"],
    )

    op.create_table(
        "invoices",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("invoice_number", sa.String(length=60), nullable=False),
        sa.Column("status", INVOICE_STATUS, nullable=False, server_default="draft"),
        sa.Column("dunning_status", DUNNING_STATUS, nullable=False, server_default="not_required"),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("subtotal_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("discount_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("tax_rate", sa.Numeric(5, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("total_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("paid_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("balance_amount", sa.Numeric(12, 2), nullable=False, server_default=sa.text("0")),
        sa.Column("currency", sa.String(length=3), nullable=False, server_default="USD"),
        sa.Column("invoice_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("due_date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("paid_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_payment_attempt_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_retry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_transaction_id", sa.String(length=120), nullable=True),
        sa.Column("last_payment_error", sa.Text(), nullable=True),
        sa.Column("last_payment_error_code", sa.String(length=60), nullable=True),
        sa.Column("line_items", sa.JSON(), nullable=True),
        sa.Column("has_proration", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("proration_details", sa.JSON(), nullable=True),
        sa.Column("customer_details", sa.JSON(), nullable=True),
        sa.Column("billing_address", sa.JSON(), nullable=True),
        sa.Column("dunning_level", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("dunning_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("suspension_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("is_disputed", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("sent_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("notes", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("invoice_number"),
    )
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])
    op.create_index("ix_invoices_status_due_date", "invoices", ["status", "due_date"])

    op.create_table(
        "subscription_events",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("event_type", EVENT_TYPE, nullable=False),
        sa.Column("category", EVENT_CATEGORY, nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("previous_status", SUBSCRIPTION_STATUS, nullable=True),
        sa.Column("new_status", SUBSCRIPTION_STATUS, nullable=True),
        sa.Column("amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("invoice_number", sa.String(length=60), nullable=True),
        sa.Column("actor", sa.String(length=120), nullable=True),
        sa.Column("event_source", sa.String(length=40), nullable=True),
        sa.Column("related_product_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("related_subscription_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("previous_state", sa.JSON(), nullable=True),
        sa.Column("new_state", sa.JSON(), nullable=True),
        sa.Column("changes", sa.JSON(), nullable=True),
        sa.Column("is_error", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("error_code", sa.String(length=60), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("customer_notified", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("notification_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_sent", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("webhook_sent_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("webhook_response_code", sa.Integer(), nullable=True),
        sa.Column("dispatch_attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("next_dispatch_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("requires_review", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("reviewed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reviewed_by", sa.String(length=120), nullable=True),
        sa.Column("review_notes", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_events_subscription_created",
        "subscription_events",
        ["subscription_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("ix_subscription_events_subscription_created", table_name="subscription_events")
    op.drop_table("subscription_events")
    op.drop_index("ix_invoices_status_due_date", table_name="invoices")
    op.drop_index("ix_invoices_subscription_id", table_name="invoices")
    op.drop_table("invoices")
    op.drop_index(
        "ix_subscription_product_lines_subscription", table_name="subscription_product_lines"
    )
    op.drop_table("subscription_product_lines")
    op.drop_index("ix_subscriptions_status_next_billing", table_name="subscriptions")
    op.drop_index("ix_subscriptions_parent_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_account_id", table_name="subscriptions")
    op.drop_table("subscriptions")
    op.drop_table("products")
    op.drop_table("accounts")
    bind = op.get_bind()
    for enum_type in reversed(_ENUMS):
        enum_type.drop(bind, checkfirst=True)
