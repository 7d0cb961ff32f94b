"""Sale-Closed Processor.

Turns a closed auction sale into one order (and one invoice) per winning
buyer. Safe to run any number of times for the same sale:

* items already attached to an order (``payment_order_items``) are skipped;
* lot status writes are status-gated, so a lot already moved on is left
  alone;
* an order that already carries an invoice is never invoiced again. Later
  winning items for the same buyer are parked as AWAITING_NEXT_INVOICE and
  reported to the operator.

Platform API failures while reading the sale abort the whole sale (the
scheduler's poll step retries it). Failures inside one buyer group are
logged and collected without stopping the other groups.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import LotStatus, OrderItemStatus, OrderStatus, PaymentOrder
from app.services import dropship_lots, payment_orders
from app.services.alerts import Alerter, get_alerter
from app.services.basta_client import (
    AccountFee,
    BastaClient,
    OrderLine,
    SaleItem,
    calculate_fees_for_amount,
    get_basta_client,
)
from app.services.errors import InvalidTransitionError, MissingPaymentProfileError
from app.services.invoice_issuer import issue_invoice
from app.services.stripe_gateway import StripeGateway, get_stripe_gateway
from app.utils.logger import logger


ITEM_CLOSED = "ITEM_CLOSED"


@dataclass
class SaleProcessingResult:
    sale_id: str
    currency: str = "USD"
    items_seen: int = 0
    winning_items: int = 0
    already_processed: int = 0
    reserve_not_met: int = 0
    orders_created: int = 0
    items_attached: int = 0
    invoices_issued: int = 0
    awaiting_next_invoice: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, object]:
        return {
            "sale_id": self.sale_id,
            "currency": self.currency,
            "items_seen": self.items_seen,
            "winning_items": self.winning_items,
            "already_processed": self.already_processed,
            "reserve_not_met": self.reserve_not_met,
            "orders_created": self.orders_created,
            "items_attached": self.items_attached,
            "invoices_issued": self.invoices_issued,
            "awaiting_next_invoice": list(self.awaiting_next_invoice),
            "errors": list(self.errors),
        }


def _description(item: SaleItem) -> str:
    return f"Winning bid: {item.title}" if item.title else "Winning bid"


def _is_winner(item: SaleItem) -> bool:
    return bool(item.leader_id) and (item.current_bid or 0) > 0 and item.reserve_met is not False


def _mark_lots(db: Session, items: List[SaleItem], sale_id: str, result: SaleProcessingResult) -> None:
    """Reflect the auction outcome on drop-ship lots (PUBLISHED only)."""

    lots = dropship_lots.get_lots_by_items(db, (i.id for i in items))
    for item in items:
        lot = lots.get(item.id)
        if lot is None or lot.status != LotStatus.PUBLISHED.value:
            continue
        try:
            if _is_winner(item):
                dropship_lots.transition_lot(
                    db,
                    lot,
                    LotStatus.AUCTION_CLOSED,
                    basta_sale_id=sale_id,
                    winner_user_id=item.leader_id,
                    winning_bid_cents=item.current_bid,
                    error_message=None,
                )
                logger.info("[sale-closed] lot id=%s -> AUCTION_CLOSED winner=%s", lot.id, item.leader_id)
            else:
                dropship_lots.transition_lot(db, lot, LotStatus.RESERVE_NOT_MET, basta_sale_id=sale_id)
                result.reserve_not_met += 1
                logger.info("[sale-closed] lot id=%s -> RESERVE_NOT_MET (bid=%s)", lot.id, item.current_bid)
        except InvalidTransitionError as exc:
            logger.info("[sale-closed] lot id=%s already moved on: %s", lot.id, exc)


def _attach_group(
    db: Session,
    *,
    sale_id: str,
    user_id: str,
    currency: str,
    items: List[SaleItem],
    basta: BastaClient,
    fees: List[AccountFee],
    alerter: Alerter,
    result: SaleProcessingResult,
) -> PaymentOrder:
    lines = [
        OrderLine(
            item_id=item.id,
            amount_cents=int(item.current_bid or 0),
            description=_description(item),
            fees=calculate_fees_for_amount(int(item.current_bid or 0), fees),
        )
        for item in items
    ]

    order = payment_orders.get_order_for_buyer(db, sale_id=sale_id, user_id=user_id)

    if order is None:
        basta_order_id = basta.create_order(sale_id=sale_id, user_id=user_id, currency=currency, lines=lines)
        order = payment_orders.create_order(
            db, sale_id=sale_id, user_id=user_id, basta_order_id=basta_order_id, currency=currency
        )
        result.orders_created += 1
        for line in lines:
            payment_orders.add_order_item(
                db, order, item_id=line.item_id, amount_cents=line.amount_cents, description=line.description
            )
            result.items_attached += 1

    elif not order.stripe_invoice_id:
        for line in lines:
            if order.basta_order_id:
                basta.add_order_line(order.basta_order_id, line)
            payment_orders.add_order_item(
                db, order, item_id=line.item_id, amount_cents=line.amount_cents, description=line.description
            )
            result.items_attached += 1

    else:
        for line in lines:
            payment_orders.add_order_item(
                db,
                order,
                item_id=line.item_id,
                amount_cents=line.amount_cents,
                description=line.description,
                status=OrderItemStatus.AWAITING_NEXT_INVOICE,
            )
            result.items_attached += 1
            result.awaiting_next_invoice.append(line.item_id)
        payment_orders.set_order_status(db, order, OrderStatus.AWAITING_NEXT_INVOICE)
        alerter.send(
            f"Sale {sale_id}: buyer {user_id} won {len(lines)} more item(s) after invoice "
            f"{order.stripe_invoice_id} was issued ({', '.join(l.item_id for l in lines)}). "
            "These items await the next invoicing cycle."
        )

    if order.basta_order_id:
        lots = dropship_lots.get_lots_by_items(db, (i.id for i in items))
        for lot in lots.values():
            if lot.basta_order_id != order.basta_order_id:
                dropship_lots.update_lot(db, lot, basta_order_id=order.basta_order_id)

    return order


def _invoice_order(
    db: Session,
    order: PaymentOrder,
    *,
    basta: BastaClient,
    payments: StripeGateway,
    fees: List[AccountFee],
    alerter: Alerter,
    result: SaleProcessingResult,
) -> None:
    try:
        issued = issue_invoice(db, order, basta=basta, payments=payments, fees=fees, alerter=alerter)
    except MissingPaymentProfileError as exc:
        logger.error("[sale-closed] cannot invoice order id=%s: %s", order.id, exc)
        result.errors.append(str(exc))
        alerter.send(f"Order {order.basta_order_id or order.id} (sale {order.sale_id}) not invoiced: {exc}", "critical")
        return
    if issued.stripe_invoice_id:
        result.invoices_issued += 1


def process_closed_sale(
    db: Session,
    sale_id: str,
    *,
    basta: Optional[BastaClient] = None,
    payments: Optional[StripeGateway] = None,
    alerter: Optional[Alerter] = None,
) -> SaleProcessingResult:
    """Create/extend orders and issue invoices for every winner of ``sale_id``.

    Raises BastaApiError if the sale's items cannot be read; everything after
    that point is contained per buyer and reported in the result.
    """

    basta = basta or get_basta_client()
    payments = payments or get_stripe_gateway()
    alerter = alerter or get_alerter()

    sale = basta.get_sale_items(sale_id)
    result = SaleProcessingResult(sale_id=sale_id, currency=sale.currency, items_seen=len(sale.items))

    closed = [item for item in sale.items if item.status == ITEM_CLOSED]
    _mark_lots(db, closed, sale_id, result)

    winners = [item for item in closed if _is_winner(item)]
    result.winning_items = len(winners)
    processed = payment_orders.processed_item_ids(db, (item.id for item in winners))
    fresh = [item for item in winners if item.id not in processed]
    result.already_processed = len(winners) - len(fresh)

    groups: "OrderedDict[str, List[SaleItem]]" = OrderedDict()
    for item in fresh:
        groups.setdefault(item.leader_id, []).append(item)

    retry_orders = [
        order
        for order in payment_orders.list_uninvoiced_orders(db, sale_id=sale_id)
        if payment_orders.pending_items(order)
    ]

    fees: List[AccountFee] = []
    if groups or retry_orders:
        try:
            fees = basta.get_account_fees()
        except Exception as exc:  # noqa: BLE001
            logger.warning("[sale-closed] could not load account fees for sale=%s: %s", sale_id, exc)

    logger.info(
        "[sale-closed] sale=%s items=%d winners=%d new=%d buyers=%d",
        sale_id,
        len(sale.items),
        len(winners),
        len(fresh),
        len(groups),
    )

    touched = set()
    for user_id, items in groups.items():
        try:
            order = _attach_group(
                db,
                sale_id=sale_id,
                user_id=user_id,
                currency=sale.currency,
                items=items,
                basta=basta,
                fees=fees,
                alerter=alerter,
                result=result,
            )
            touched.add(order.id)
            if not order.stripe_invoice_id:
                _invoice_order(db, order, basta=basta, payments=payments, fees=fees, alerter=alerter, result=result)
        except Exception as exc:  # noqa: BLE001
            logger.error("[sale-closed] failed for buyer=%s sale=%s", user_id, sale_id, exc_info=True)
            result.errors.append(f"buyer {user_id}: {exc}")

    # Orders from an earlier pass whose invoice failed (no payment method yet,
    # processor outage) get another attempt.
    for order in retry_orders:
        if order.id in touched or order.stripe_invoice_id:
            continue
        try:
            _invoice_order(db, order, basta=basta, payments=payments, fees=fees, alerter=alerter, result=result)
        except Exception as exc:  # noqa: BLE001
            logger.error("[sale-closed] invoice retry failed for order id=%s", order.id, exc_info=True)
            result.errors.append(f"order {order.id}: {exc}")

    return result
