"""Payment-processor ``invoice.paid`` hook.

Links a paid invoice back to its drop-ship lots, marks them PAID, resolves
where to ship, and hands each lot to the fulfillment placer.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import DropshipLot, LotStatus, OrderItemStatus, OrderStatus
from app.services import dropship_lots, payment_orders
from app.services.alerts import Alerter, get_alerter
from app.services.basta_client import BastaClient, get_basta_client
from app.services.cj_client import CJClient, get_cj_client
from app.services.dropship_fulfillment import fulfill_dropship_lot, missing_address_fields
from app.services.errors import InvalidTransitionError
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.utils.logger import logger


def basta_address_to_shipping(addr: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": addr.get("name"),
        "line1": addr.get("line1"),
        "line2": addr.get("line2") or None,
        "city": addr.get("city"),
        "state": addr.get("state"),
        "postal_code": addr.get("postalCode"),
        "country": addr.get("country"),
        "phone": addr.get("phone") or None,
    }


def invoice_shipping_address(invoice: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    shipping = invoice.get("customer_shipping") or {}
    address = shipping.get("address") or {}
    if not address.get("line1"):
        return None
    return {
        "name": shipping.get("name") or invoice.get("customer_name"),
        "line1": address.get("line1"),
        "line2": address.get("line2") or None,
        "city": address.get("city"),
        "state": address.get("state"),
        "postal_code": address.get("postal_code"),
        "country": address.get("country"),
        "phone": shipping.get("phone") or None,
    }


def _lots_from_lines(db: Session, invoice: Dict[str, Any]) -> List[DropshipLot]:
    item_ids = []
    for line in (invoice.get("lines") or {}).get("data") or []:
        item_id = (line.get("metadata") or {}).get("itemId")
        if item_id and item_id not in item_ids:
            item_ids.append(item_id)
    lots = dropship_lots.get_lots_by_items(db, item_ids)
    return [lots[i] for i in item_ids if i in lots]


def resolve_invoice_lots(db: Session, invoice: Dict[str, Any], *, payments: StripeGateway) -> List[DropshipLot]:
    invoice_id = invoice.get("id")

    lots = _lots_from_lines(db, invoice)
    if lots:
        return lots

    # Webhook payloads may omit line metadata.
    try:
        lots = _lots_from_lines(db, payments.retrieve_invoice(invoice_id, expand_lines=True))
    except Exception as exc:  # noqa: BLE001
        logger.warning("[invoice-paid] could not re-fetch invoice=%s: %s", invoice_id, exc)
    if lots:
        return lots

    lots = dropship_lots.list_lots(db, stripe_invoice_id=invoice_id)
    if lots:
        return lots

    metadata = invoice.get("metadata") or {}
    sale_id, user_id = metadata.get("saleId"), metadata.get("userId")
    if not sale_id:
        order = payment_orders.get_order_by_invoice(db, invoice_id)
        if order is not None:
            sale_id, user_id = order.sale_id, order.user_id
    if sale_id:
        return dropship_lots.list_lots(
            db,
            statuses=[LotStatus.AUCTION_CLOSED, LotStatus.PAYMENT_FAILED],
            basta_sale_id=sale_id,
            winner_user_id=user_id,
        )
    return []


def resolve_shipping_address(
    lot: DropshipLot, invoice: Dict[str, Any], *, basta: BastaClient
) -> Optional[Dict[str, Any]]:
    """Platform user profile first; the invoice's customer shipping second."""

    if lot.winner_user_id:
        try:
            addr = basta.get_user_shipping_address(lot.winner_user_id)
            if addr and addr.get("line1"):
                return basta_address_to_shipping(addr)
        except Exception as exc:  # noqa: BLE001
            logger.warning("[invoice-paid] failed to fetch platform address for user=%s: %s", lot.winner_user_id, exc)
    return invoice_shipping_address(invoice)


def _mark_order_paid(db: Session, invoice_id: str, *, basta: BastaClient) -> None:
    order = payment_orders.get_order_by_invoice(db, invoice_id)
    if order is None or order.status == OrderStatus.PAID.value:
        return
    if order.basta_order_id:
        try:
            basta.register_payment(order.basta_order_id)
        except Exception as exc:  # noqa: BLE001
            logger.error("[invoice-paid] could not register payment on platform order=%s: %s", order.basta_order_id, exc)
    if any(item.status == OrderItemStatus.AWAITING_NEXT_INVOICE.value for item in order.items):
        # still owes a follow-up invoice
        return
    payment_orders.set_order_status(db, order, OrderStatus.PAID)


def handle_invoice_paid(
    db: Session,
    invoice: Dict[str, Any],
    *,
    basta: Optional[BastaClient] = None,
    payments: Optional[StripeGateway] = None,
    cj: Optional[CJClient] = None,
    alerter: Optional[Alerter] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    basta = basta or get_basta_client()
    payments = payments or get_stripe_gateway()
    cj = cj or get_cj_client()
    alerter = alerter or get_alerter()
    now = now or datetime.now(timezone.utc)
    invoice_id = invoice.get("id")

    _mark_order_paid(db, invoice_id, basta=basta)

    lots = resolve_invoice_lots(db, invoice, payments=payments)
    report: Dict[str, Any] = {"invoice_id": invoice_id, "lots": len(lots), "fulfilled": [], "failed": [], "skipped": []}
    if not lots:
        logger.info("[invoice-paid] no drop-ship lots on invoice=%s", invoice_id)
        return report

    for lot in lots:
        try:
            if lot.status in (LotStatus.AUCTION_CLOSED.value, LotStatus.PAYMENT_FAILED.value):
                dropship_lots.transition_lot(db, lot, LotStatus.PAID, now=now, stripe_invoice_id=invoice_id)
            elif lot.status != LotStatus.PAID.value or lot.cj_order_id:
                logger.info("[invoice-paid] lot id=%s already %s, skipping", lot.id, lot.status)
                report["skipped"].append(lot.id)
                continue
            elif lot.stripe_invoice_id != invoice_id:
                dropship_lots.update_lot(db, lot, stripe_invoice_id=invoice_id)

            address = resolve_shipping_address(lot, invoice, basta=basta)
            missing = missing_address_fields(address)
            if missing:
                label = lot.cj_product_name or lot.title or lot.basta_item_id
                if address is None:
                    message = "No shipping address found (checked platform user profile and invoice)"
                else:
                    message = f"Shipping address incomplete - missing: {', '.join(missing)}"
                dropship_lots.record_lot_error(db, lot, message)
                alerter.send(f'Lot {lot.id} ("{label}"): {message}. Cannot fulfill.', "critical")
                report["failed"].append({"lot_id": lot.id, "reason": message})
                continue

            dropship_lots.update_lot(db, lot, shipping_address=address, shipping_name=address.get("name"))
            result = fulfill_dropship_lot(db, lot, address, cj=cj, alerter=alerter, now=now)
            if result.success:
                report["fulfilled"].append({"lot_id": lot.id, "cj_order_id": result.cj_order_id})
            else:
                logger.error("[invoice-paid] fulfillment failed for lot id=%s: %s", lot.id, result.reason)
                report["failed"].append({"lot_id": lot.id, "reason": result.reason})
        except InvalidTransitionError as exc:
            logger.info("[invoice-paid] lot id=%s moved concurrently: %s", lot.id, exc)
            report["skipped"].append(lot.id)
        except Exception as exc:  # noqa: BLE001
            logger.error("[invoice-paid] failed for lot id=%s invoice=%s", lot.id, invoice_id, exc_info=True)
            report["failed"].append({"lot_id": lot.id, "reason": str(exc)})

    return report


def handle_invoice_payment_failed(
    db: Session,
    invoice: Dict[str, Any],
    *,
    payments: Optional[StripeGateway] = None,
    alerter: Optional[Alerter] = None,
) -> Dict[str, Any]:
    """Mark the order and its waiting lots PAYMENT_FAILED; a later ``invoice.paid`` moves them on."""

    payments = payments or get_stripe_gateway()
    alerter = alerter or get_alerter()
    invoice_id = invoice.get("id")

    order = payment_orders.get_order_by_invoice(db, invoice_id)
    if order is not None and order.status != OrderStatus.PAID.value:
        payment_orders.set_order_status(db, order, OrderStatus.PAYMENT_FAILED)

    marked = []
    for lot in resolve_invoice_lots(db, invoice, payments=payments):
        if lot.status != LotStatus.AUCTION_CLOSED.value:
            continue
        try:
            dropship_lots.transition_lot(
                db, lot, LotStatus.PAYMENT_FAILED, stripe_invoice_id=invoice_id, error_message="Buyer payment failed"
            )
            marked.append(lot.id)
        except InvalidTransitionError as exc:
            logger.info("[invoice-paid] lot id=%s moved concurrently: %s", lot.id, exc)

    if marked:
        alerter.send(f"Payment failed for invoice {invoice_id}; lots awaiting buyer payment: {', '.join(marked)}")
    return {"invoice_id": invoice_id, "payment_failed_lots": marked}
