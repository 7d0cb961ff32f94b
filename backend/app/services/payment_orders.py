"""Order / Invoice store.

Source of truth for "has this winning item already been attached to an
order" (``payment_order_items.item_id`` is unique) and for "has this order
already been invoiced" (``payment_orders.stripe_invoice_id``).
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Iterable, List, Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import (
    OrderItemStatus,
    OrderStatus,
    PaymentOrder,
    PaymentOrderItem,
    PaymentProfile,
)
from app.services.errors import PipelineError
from app.utils.logger import logger


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def get_order(db: Session, order_id: str) -> Optional[PaymentOrder]:
    return db.query(PaymentOrder).filter(PaymentOrder.id == order_id).one_or_none()


def get_order_for_buyer(db: Session, *, sale_id: str, user_id: str) -> Optional[PaymentOrder]:
    return (
        db.query(PaymentOrder)
        .filter(PaymentOrder.sale_id == sale_id, PaymentOrder.user_id == user_id)
        .one_or_none()
    )


def get_order_by_basta_id(db: Session, basta_order_id: str) -> Optional[PaymentOrder]:
    return db.query(PaymentOrder).filter(PaymentOrder.basta_order_id == basta_order_id).one_or_none()


def get_order_by_invoice(db: Session, stripe_invoice_id: str) -> Optional[PaymentOrder]:
    return db.query(PaymentOrder).filter(PaymentOrder.stripe_invoice_id == stripe_invoice_id).one_or_none()


def list_uninvoiced_orders(db: Session, *, sale_id: str) -> List[PaymentOrder]:
    return (
        db.query(PaymentOrder)
        .filter(
            PaymentOrder.sale_id == sale_id,
            PaymentOrder.stripe_invoice_id.is_(None),
            PaymentOrder.status == OrderStatus.OPEN.value,
        )
        .order_by(PaymentOrder.created_at.asc())
        .all()
    )


def processed_item_ids(db: Session, item_ids: Iterable[str]) -> Set[str]:
    """Return the subset of ``item_ids`` already attached to some order."""

    ids = [i for i in item_ids if i]
    if not ids:
        return set()
    rows = db.query(PaymentOrderItem.item_id).filter(PaymentOrderItem.item_id.in_(ids)).all()
    return {row[0] for row in rows}


def create_order(
    db: Session,
    *,
    sale_id: str,
    user_id: str,
    basta_order_id: Optional[str],
    currency: str,
) -> PaymentOrder:
    order = PaymentOrder(
        sale_id=sale_id,
        user_id=user_id,
        basta_order_id=basta_order_id,
        currency=currency,
        status=OrderStatus.OPEN.value,
    )
    db.add(order)
    try:
        db.commit()
    except Exception:
        logger.error("[orders] failed to create order sale=%s user=%s", sale_id, user_id, exc_info=True)
        db.rollback()
        raise
    db.refresh(order)
    logger.info("[orders] created order id=%s sale=%s user=%s basta_order=%s", order.id, sale_id, user_id, basta_order_id)
    return order


def add_order_item(
    db: Session,
    order: PaymentOrder,
    *,
    item_id: str,
    amount_cents: int,
    description: Optional[str] = None,
    status: OrderItemStatus = OrderItemStatus.PENDING_INVOICE,
) -> PaymentOrderItem:
    """Attach ``item_id`` to ``order``.

    Re-attaching an item that already belongs to an order keeps the original
    linkage and returns the existing row.
    """

    existing = db.query(PaymentOrderItem).filter(PaymentOrderItem.item_id == item_id).one_or_none()
    if existing is not None:
        if existing.order_id != order.id:
            logger.warning(
                "[orders] item=%s already attached to order=%s, not moving it to order=%s",
                item_id,
                existing.order_id,
                order.id,
            )
        return existing

    row = PaymentOrderItem(
        order_id=order.id,
        item_id=item_id,
        amount_cents=amount_cents,
        description=description,
        status=status.value,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Lost a race with another writer for the same item.
        db.rollback()
        return db.query(PaymentOrderItem).filter(PaymentOrderItem.item_id == item_id).one()
    db.refresh(row)
    return row


def pending_items(order: PaymentOrder) -> List[PaymentOrderItem]:
    return [i for i in order.items if i.status == OrderItemStatus.PENDING_INVOICE.value]


def record_invoice_id(db: Session, order: PaymentOrder, stripe_invoice_id: str) -> PaymentOrder:
    """Claim ``stripe_invoice_id`` as the order's one invoice before it is filled or finalized.

    Once set, the order is never picked up for invoicing again, whatever
    happens to the rest of the issuing steps.
    """

    if order.stripe_invoice_id and order.stripe_invoice_id != stripe_invoice_id:
        raise PipelineError(
            f"Order {order.id} already invoiced as {order.stripe_invoice_id}; refusing {stripe_invoice_id}"
        )
    order.stripe_invoice_id = stripe_invoice_id
    order.updated_at = _now_utc()
    try:
        db.commit()
    except Exception:
        logger.error("[orders] failed to record invoice=%s on order id=%s", stripe_invoice_id, order.id, exc_info=True)
        db.rollback()
        raise
    db.refresh(order)
    return order


def mark_invoiced(
    db: Session,
    order: PaymentOrder,
    *,
    stripe_invoice_id: str,
    invoice_url: str,
    due_at: Optional[datetime] = None,
    item_ids: Iterable[str] = (),
) -> PaymentOrder:
    if order.stripe_invoice_id and order.stripe_invoice_id != stripe_invoice_id:
        raise PipelineError(
            f"Order {order.id} already invoiced as {order.stripe_invoice_id}; refusing {stripe_invoice_id}"
        )

    order.stripe_invoice_id = stripe_invoice_id
    order.invoice_url = invoice_url
    order.invoice_due_at = due_at
    order.status = OrderStatus.INVOICE_ISSUED.value
    order.updated_at = _now_utc()
    invoiced = set(item_ids)
    for item in order.items:
        if item.item_id in invoiced:
            item.status = OrderItemStatus.INVOICED.value
    db.commit()
    db.refresh(order)
    logger.info("[orders] order id=%s invoiced stripe_invoice=%s", order.id, stripe_invoice_id)
    return order


def set_order_status(db: Session, order: PaymentOrder, status: OrderStatus) -> PaymentOrder:
    if order.status != status.value:
        logger.info("[orders] order id=%s %s -> %s", order.id, order.status, status.value)
        order.status = status.value
        order.updated_at = _now_utc()
        db.commit()
        db.refresh(order)
    return order


def get_payment_profile(db: Session, user_id: str) -> Optional[PaymentProfile]:
    return db.query(PaymentProfile).filter(PaymentProfile.user_id == user_id).one_or_none()
