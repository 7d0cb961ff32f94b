from datetime import datetime, timezone
import enum
import uuid

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from . import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class LotStatus(str, enum.Enum):
    SOURCED = "SOURCED"
    LISTED = "LISTED"
    PUBLISHED = "PUBLISHED"
    AUCTION_CLOSED = "AUCTION_CLOSED"
    PAID = "PAID"
    CJ_ORDERED = "CJ_ORDERED"
    CJ_PAID = "CJ_PAID"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    RESERVE_NOT_MET = "RESERVE_NOT_MET"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    CJ_OUT_OF_STOCK = "CJ_OUT_OF_STOCK"
    CJ_PRICE_CHANGED = "CJ_PRICE_CHANGED"
    CANCELLED = "CANCELLED"


class OrderStatus(str, enum.Enum):
    OPEN = "OPEN"
    INVOICE_ISSUED = "INVOICE_ISSUED"
    AWAITING_NEXT_INVOICE = "AWAITING_NEXT_INVOICE"
    PAID = "PAID"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    REFUNDED = "REFUNDED"


class OrderItemStatus(str, enum.Enum):
    PENDING_INVOICE = "PENDING_INVOICE"
    INVOICED = "INVOICED"
    AWAITING_NEXT_INVOICE = "AWAITING_NEXT_INVOICE"


class DropshipLot(Base):
    """One auction item fulfilled by the supplier instead of the seller.

    Money columns are integer cents. ``cj_order_id`` is written once by the
    fulfillment placer and never cleared afterwards; status changes go
    through ``app.services.lot_state`` so an illegal move fails loudly.
    """

    __tablename__ = "dropship_lots"

    id = Column(String(36), primary_key=True, default=_uuid)

    basta_item_id = Column(String(64), nullable=False, unique=True, index=True)
    basta_sale_id = Column(String(64), nullable=True, index=True)
    basta_order_id = Column(String(64), nullable=True)
    title = Column(Text, nullable=True)

    # Supplier linkage
    cj_product_id = Column(String(64), nullable=False)
    cj_variant_id = Column(String(64), nullable=False)
    cj_product_name = Column(Text, nullable=True)
    cj_variant_name = Column(Text, nullable=True)
    cj_cost_cents = Column(Integer, nullable=False, default=0)
    cj_shipping_cents = Column(Integer, nullable=False, default=0)
    cj_logistic_name = Column(String(64), nullable=True)
    cj_from_country = Column(String(8), nullable=True)
    cj_order_id = Column(String(64), nullable=True, unique=True)
    cj_order_number = Column(String(128), nullable=True)
    cj_order_status = Column(String(32), nullable=True)
    cj_paid_at = Column(DateTime(timezone=True), nullable=True)

    # Commercial
    starting_bid_cents = Column(Integer, nullable=True)
    reserve_cents = Column(Integer, nullable=True)
    winning_bid_cents = Column(Integer, nullable=True)
    winner_user_id = Column(String(64), nullable=True)
    stripe_invoice_id = Column(String(64), nullable=True, index=True)
    total_cost_cents = Column(Integer, nullable=True)
    profit_cents = Column(Integer, nullable=True)

    # Fulfillment
    shipping_address = Column(JSON, nullable=True)
    shipping_name = Column(Text, nullable=True)
    tracking_number = Column(String(128), nullable=True)
    tracking_carrier = Column(String(64), nullable=True)

    status = Column(String(32), nullable=False, index=True, default=LotStatus.PUBLISHED.value)
    error_message = Column(Text, nullable=True)
    # Set while one worker is placing or paying the supplier order; cleared
    # by every status write.
    fulfillment_claimed_at = Column(DateTime(timezone=True), nullable=True)
    # Only moved by status writes; error/address updates leave it alone.
    status_changed_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=_now_utc,
        onupdate=_now_utc,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_dropship_lots_status_updated", "status", "updated_at"),
        Index("idx_dropship_lots_status_changed", "status", "status_changed_at"),
    )


class PaymentProfile(Base):
    """Buyer's stored payment processor customer and default card.

    Written by the account layer; this pipeline only reads it before
    issuing an invoice.
    """

    __tablename__ = "payment_profiles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(64), nullable=False, unique=True, index=True)
    stripe_customer_id = Column(String(64), nullable=False)
    default_payment_method_id = Column(String(64), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc, server_default=func.now())


class PaymentOrder(Base):
    """One order per (sale, buyer) on the auction platform.

    At most one invoice is ever created for an order: once
    ``stripe_invoice_id`` is set, later winning items are parked as
    AWAITING_NEXT_INVOICE order items.
    """

    __tablename__ = "payment_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    basta_order_id = Column(String(64), nullable=True, unique=True)
    sale_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    currency = Column(String(8), nullable=False, default="USD")
    status = Column(String(32), nullable=False, default=OrderStatus.OPEN.value)

    stripe_invoice_id = Column(String(64), nullable=True, unique=True)
    invoice_url = Column(Text, nullable=True)
    invoice_due_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc, server_default=func.now())

    items = relationship("PaymentOrderItem", back_populates="order", order_by="PaymentOrderItem.created_at")

    __table_args__ = (
        UniqueConstraint("sale_id", "user_id", name="uq_payment_orders_sale_user"),
    )


class PaymentOrderItem(Base):
    """Dedupe set: which auction item has been attached to which order."""

    __tablename__ = "payment_order_items"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("payment_orders.id", ondelete="CASCADE"), nullable=False, index=True)
    item_id = Column(String(64), nullable=False, unique=True)
    amount_cents = Column(Integer, nullable=False)
    description = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, default=OrderItemStatus.PENDING_INVOICE.value)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    order = relationship("PaymentOrder", back_populates="items")


class WebhookEvent(Base):
    """Append-only idempotency ledger for inbound notifications."""

    __tablename__ = "webhook_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider = Column(String(32), nullable=False)
    idempotency_key = Column(String(255), nullable=False)
    event_type = Column(String(128), nullable=True)
    payload = Column(JSON, nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("provider", "idempotency_key", name="uq_webhook_events_provider_key"),
    )


class RecoveryRun(Base):
    """Single execution of the recovery scheduler with its per-step report."""

    __tablename__ = "recovery_runs"

    id = Column(String(36), primary_key=True, default=_uuid)
    triggered_by = Column(String(32), nullable=False, default="cron")
    status = Column(String(32), nullable=False, index=True)  # running, completed, halted, error
    halted_by = Column(String(64), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    finished_at = Column(DateTime(timezone=True), nullable=True)

    summary_json = Column(JSON, nullable=True)


class BackgroundWorker(Base):
    """Heartbeat + status row for the in-process recovery loop."""

    __tablename__ = "background_workers"

    id = Column(String(36), primary_key=True, default=_uuid)
    worker_name = Column(String(64), nullable=False, unique=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)
    runs_ok_in_row = Column(Integer, nullable=False, default=0)
    runs_error_in_row = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_now_utc, onupdate=_now_utc, server_default=func.now())
