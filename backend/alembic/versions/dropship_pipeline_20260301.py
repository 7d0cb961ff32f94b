"""Create drop-ship pipeline tables

Revision ID: dropship_pipeline_20260301
Revises:
Create Date: 2026-03-01
"""
from __future__ import annotations

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect

# revision identifiers, used by Alembic.
revision: str = "dropship_pipeline_20260301"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    if nullable:
        return sa.Column(name, sa.DateTime(timezone=True), nullable=True)
    return sa.Column(name, sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now())


def upgrade() -> None:
    """Create all pipeline tables (idempotent)."""
    conn = op.get_bind()
    inspector = inspect(conn)
    existing = set(inspector.get_table_names())

    if "dropship_lots" not in existing:
        op.create_table(
            "dropship_lots",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("basta_item_id", sa.String(64), nullable=False),
            sa.Column("basta_sale_id", sa.String(64), nullable=True),
            sa.Column("basta_order_id", sa.String(64), nullable=True),
            sa.Column("title", sa.Text(), nullable=True),
            sa.Column("cj_product_id", sa.String(64), nullable=False),
            sa.Column("cj_variant_id", sa.String(64), nullable=False),
            sa.Column("cj_product_name", sa.Text(), nullable=True),
            sa.Column("cj_variant_name", sa.Text(), nullable=True),
            sa.Column("cj_cost_cents", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("cj_shipping_cents", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("cj_logistic_name", sa.String(64), nullable=True),
            sa.Column("cj_from_country", sa.String(8), nullable=True),
            sa.Column("cj_order_id", sa.String(64), nullable=True),
            sa.Column("cj_order_number", sa.String(128), nullable=True),
            sa.Column("cj_order_status", sa.String(32), nullable=True),
            _ts("cj_paid_at", nullable=True),
            sa.Column("starting_bid_cents", sa.Integer(), nullable=True),
            sa.Column("reserve_cents", sa.Integer(), nullable=True),
            sa.Column("winning_bid_cents", sa.Integer(), nullable=True),
            sa.Column("winner_user_id", sa.String(64), nullable=True),
            sa.Column("stripe_invoice_id", sa.String(64), nullable=True),
            sa.Column("total_cost_cents", sa.Integer(), nullable=True),
            sa.Column("profit_cents", sa.Integer(), nullable=True),
            sa.Column("shipping_address", sa.JSON(), nullable=True),
            sa.Column("shipping_name", sa.Text(), nullable=True),
            sa.Column("tracking_number", sa.String(128), nullable=True),
            sa.Column("tracking_carrier", sa.String(64), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="PUBLISHED"),
            sa.Column("error_message", sa.Text(), nullable=True),
            _ts("fulfillment_claimed_at", nullable=True),
            _ts("status_changed_at"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("basta_item_id", name="uq_dropship_lots_basta_item_id"),
            sa.UniqueConstraint("cj_order_id", name="uq_dropship_lots_cj_order_id"),
        )
        op.create_index("ix_dropship_lots_basta_sale_id", "dropship_lots", ["basta_sale_id"])
        op.create_index("ix_dropship_lots_stripe_invoice_id", "dropship_lots", ["stripe_invoice_id"])
        op.create_index("ix_dropship_lots_status", "dropship_lots", ["status"])
        op.create_index("idx_dropship_lots_status_updated", "dropship_lots", ["status", "updated_at"])
        op.create_index("idx_dropship_lots_status_changed", "dropship_lots", ["status", "status_changed_at"])

    if "payment_profiles" not in existing:
        op.create_table(
            "payment_profiles",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("stripe_customer_id", sa.String(64), nullable=False),
            sa.Column("default_payment_method_id", sa.String(64), nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("user_id", name="uq_payment_profiles_user_id"),
        )

    if "payment_orders" not in existing:
        op.create_table(
            "payment_orders",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("basta_order_id", sa.String(64), nullable=True),
            sa.Column("sale_id", sa.String(64), nullable=False),
            sa.Column("user_id", sa.String(64), nullable=False),
            sa.Column("currency", sa.String(8), nullable=False, server_default="USD"),
            sa.Column("status", sa.String(32), nullable=False, server_default="OPEN"),
            sa.Column("stripe_invoice_id", sa.String(64), nullable=True),
            sa.Column("invoice_url", sa.Text(), nullable=True),
            _ts("invoice_due_at", nullable=True),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("basta_order_id", name="uq_payment_orders_basta_order_id"),
            sa.UniqueConstraint("stripe_invoice_id", name="uq_payment_orders_stripe_invoice_id"),
            sa.UniqueConstraint("sale_id", "user_id", name="uq_payment_orders_sale_user"),
        )
        op.create_index("ix_payment_orders_sale_id", "payment_orders", ["sale_id"])
        op.create_index("ix_payment_orders_user_id", "payment_orders", ["user_id"])

    if "payment_order_items" not in existing:
        op.create_table(
            "payment_order_items",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column(
                "order_id",
                sa.String(36),
                sa.ForeignKey("payment_orders.id", ondelete="CASCADE"),
                nullable=False,
            ),
            sa.Column("item_id", sa.String(64), nullable=False),
            sa.Column("amount_cents", sa.Integer(), nullable=False),
            sa.Column("description", sa.Text(), nullable=True),
            sa.Column("status", sa.String(32), nullable=False, server_default="PENDING_INVOICE"),
            _ts("created_at"),
            sa.UniqueConstraint("item_id", name="uq_payment_order_items_item_id"),
        )
        op.create_index("ix_payment_order_items_order_id", "payment_order_items", ["order_id"])

    if "webhook_events" not in existing:
        op.create_table(
            "webhook_events",
            sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
            sa.Column("provider", sa.String(32), nullable=False),
            sa.Column("idempotency_key", sa.String(255), nullable=False),
            sa.Column("event_type", sa.String(128), nullable=True),
            sa.Column("payload", sa.JSON(), nullable=True),
            _ts("received_at"),
            sa.UniqueConstraint("provider", "idempotency_key", name="uq_webhook_events_provider_key"),
        )

    if "recovery_runs" not in existing:
        op.create_table(
            "recovery_runs",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("triggered_by", sa.String(32), nullable=False, server_default="cron"),
            sa.Column("status", sa.String(32), nullable=False),
            sa.Column("halted_by", sa.String(64), nullable=True),
            _ts("started_at"),
            _ts("finished_at", nullable=True),
            sa.Column("summary_json", sa.JSON(), nullable=True),
        )
        op.create_index("ix_recovery_runs_status", "recovery_runs", ["status"])

    if "background_workers" not in existing:
        op.create_table(
            "background_workers",
            sa.Column("id", sa.String(36), primary_key=True),
            sa.Column("worker_name", sa.String(64), nullable=False),
            sa.Column("interval_seconds", sa.Integer(), nullable=True),
            _ts("last_started_at", nullable=True),
            _ts("last_finished_at", nullable=True),
            sa.Column("last_status", sa.String(32), nullable=True),
            sa.Column("last_error_message", sa.Text(), nullable=True),
            sa.Column("runs_ok_in_row", sa.Integer(), nullable=False, server_default="0"),
            sa.Column("runs_error_in_row", sa.Integer(), nullable=False, server_default="0"),
            _ts("created_at"),
            _ts("updated_at"),
            sa.UniqueConstraint("worker_name", name="uq_background_workers_worker_name"),
        )


def downgrade() -> None:
    """Drop pipeline tables (best-effort)."""
    conn = op.get_bind()
    existing = set(inspect(conn).get_table_names())
    for table in (
        "background_workers",
        "recovery_runs",
        "webhook_events",
        "payment_order_items",
        "payment_orders",
        "payment_profiles",
        "dropship_lots",
    ):
        if table in existing:
            op.drop_table(table)
