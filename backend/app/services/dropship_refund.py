"""Refunds for lots the supplier could not fulfil.

Lots in CJ_OUT_OF_STOCK / CJ_PRICE_CHANGED get their buyer payment undone
(void when still unpaid, refund when paid) and end in CANCELLED, which is
terminal: neither fulfillment retries nor stuck-lot recovery look at it
again.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import DropshipLot, LotStatus, OrderStatus, PaymentOrder
from app.services import dropship_lots, payment_orders
from app.services.alerts import Alerter, get_alerter
from app.services.basta_client import BastaClient, get_basta_client
from app.services.errors import PipelineError
from app.services.lot_state import REFUNDABLE_STATUSES
from app.services.stripe_gateway import StripeGateway, expandable_id, get_stripe_gateway
from app.utils.logger import logger


def _order_for_lot(db: Session, lot: DropshipLot) -> Optional[PaymentOrder]:
    if lot.basta_order_id:
        order = payment_orders.get_order_by_basta_id(db, lot.basta_order_id)
        if order is not None:
            return order
    if lot.stripe_invoice_id:
        return payment_orders.get_order_by_invoice(db, lot.stripe_invoice_id)
    return None


def _invoice_lines(invoice: Dict[str, Any]) -> List[Dict[str, Any]]:
    return list((invoice.get("lines") or {}).get("data") or [])


def _line_item_id(line: Dict[str, Any]) -> Optional[str]:
    return (line.get("metadata") or {}).get("itemId")


def _payment_refs(invoice: Dict[str, Any]) -> tuple:
    """(payment_intent, charge) of a paid invoice, across API versions."""

    payment_intent = expandable_id(invoice.get("payment_intent"))
    charge = expandable_id(invoice.get("charge"))
    if not payment_intent:
        for entry in (invoice.get("payments") or {}).get("data") or []:
            payment = entry.get("payment") or {}
            payment_intent = expandable_id(payment.get("payment_intent"))
            charge = charge or expandable_id(payment.get("charge"))
            if payment_intent:
                break
    return payment_intent, charge


def refund_lot(
    db: Session,
    lot: DropshipLot,
    *,
    payments: Optional[StripeGateway] = None,
    basta: Optional[BastaClient] = None,
) -> Dict[str, Any]:
    """Undo the buyer payment for one guard-failed lot and cancel it.

    Only this lot's share of the invoice is refunded when the invoice also
    bills other items. Returns ``{"lot_id", "action", "refund_id"}``.
    """

    if lot.status not in {s.value for s in REFUNDABLE_STATUSES}:
        raise PipelineError(f"Lot {lot.id} is in status {lot.status}; only guard-failed lots are refunded")

    payments = payments or get_stripe_gateway()
    basta = basta or get_basta_client()

    order = _order_for_lot(db, lot)
    invoice_id = lot.stripe_invoice_id or (order.stripe_invoice_id if order else None)
    reason = lot.error_message or lot.status
    refund_id: Optional[str] = None

    if not invoice_id:
        action = "cancelled"
        note = f"{reason} -> Cancelled (no invoice)"
    else:
        invoice = payments.retrieve_invoice(invoice_id)
        status = invoice.get("status")
        lines = _invoice_lines(invoice)
        own = [line for line in lines if _line_item_id(line) == lot.basta_item_id]
        shared = any(_line_item_id(line) not in (None, lot.basta_item_id) for line in lines)

        if status in ("void", "uncollectible"):
            action = "skipped"
            note = f"{reason} -> Cancelled (invoice already {status})"
        elif status in ("draft", "open"):
            if shared:
                raise PipelineError(
                    f"Invoice {invoice_id} is unpaid and also bills other items; cannot void it for lot {lot.id}"
                )
            payments.void_invoice(invoice_id)
            action = "voided"
            note = f"{reason} -> Invoice voided ({invoice_id})"
        elif status == "paid":
            payment_intent, charge = _payment_refs(invoice)
            if not payment_intent and not charge:
                raise PipelineError(f"Paid invoice {invoice_id} has no payment intent or charge to refund")
            amount: Optional[int] = None
            if shared:
                amount = sum(int(line.get("amount") or 0) for line in own) or int(lot.winning_bid_cents or 0)
            refund = payments.refund(
                payment_intent=payment_intent,
                charge=None if payment_intent else charge,
                amount_cents=amount,
                metadata={"lotId": lot.id, "itemId": lot.basta_item_id, "reason": lot.status},
                idempotency_key=f"dropship-refund-{lot.id}",
            )
            refund_id = refund.get("id")
            action = "refunded"
            note = f"{reason} -> Refunded (Stripe refund: {refund_id})"
        else:
            raise PipelineError(f"Invoice {invoice_id} is in unexpected status {status!r}")

    dropship_lots.transition_lot(db, lot, LotStatus.CANCELLED, error_message=note)
    logger.info("[refund] lot id=%s %s invoice=%s refund=%s", lot.id, action, invoice_id, refund_id)

    if order is not None:
        _close_order_if_fully_refunded(db, order, basta=basta)

    return {"lot_id": lot.id, "action": action, "refund_id": refund_id}


def _close_order_if_fully_refunded(db: Session, order: PaymentOrder, *, basta: BastaClient) -> None:
    item_ids = [item.item_id for item in order.items]
    lots = dropship_lots.get_lots_by_items(db, item_ids)
    if len(lots) != len(item_ids):
        return
    if any(lot.status != LotStatus.CANCELLED.value for lot in lots.values()):
        return
    if order.basta_order_id:
        basta.cancel_payment_order(order.basta_order_id)
    payment_orders.set_order_status(db, order, OrderStatus.REFUNDED)


def refund_failed_lots(
    db: Session,
    *,
    payments: Optional[StripeGateway] = None,
    basta: Optional[BastaClient] = None,
    alerter: Optional[Alerter] = None,
) -> Dict[str, Any]:
    """Refund every CJ_OUT_OF_STOCK / CJ_PRICE_CHANGED lot; one failure never stops the rest."""

    alerter = alerter or get_alerter()
    lots = dropship_lots.list_lots(db, statuses=list(REFUNDABLE_STATUSES))
    refunded: List[Dict[str, Any]] = []
    failed: List[Dict[str, str]] = []

    for lot in lots:
        try:
            refunded.append(refund_lot(db, lot, payments=payments, basta=basta))
        except Exception as exc:  # noqa: BLE001
            logger.error("[refund] failed to refund lot id=%s", lot.id, exc_info=True)
            failed.append({"lot_id": lot.id, "error": str(exc)})
            try:
                dropship_lots.record_lot_error(db, lot, f"Refund failed: {exc}")
            except Exception:  # noqa: BLE001
                logger.error("[refund] could not record refund error on lot id=%s", lot.id, exc_info=True)

    if failed:
        alerter.send(
            f"Refund failed for {len(failed)} lot(s): {', '.join(f['lot_id'] for f in failed)}",
            "critical",
        )

    return {"processed": len(lots), "refunded": refunded, "failed": failed}
