"""Fulfillment Guard & Supplier Order Placer.

For a paid lot: re-check supplier stock and price, place the supplier order,
pay it from the supplier balance, and confirm it. Guard failures move the
lot to CJ_OUT_OF_STOCK / CJ_PRICE_CHANGED for the refund step; transient
API failures leave the lot where it is with an error message for the next
scheduler run.

A payment failure after the supplier order exists keeps the lot in
CJ_ORDERED. :func:`resume_supplier_payment` then pays that same supplier
order, so a retry never creates a second one.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import DropshipLot, LotStatus
from app.services import dropship_lots
from app.services.alerts import Alerter, get_alerter
from app.services.circuit_breakers import check_spending_cap
from app.services.cj_client import CJClient, get_cj_client
from app.services.errors import InvalidTransitionError
from app.utils.logger import logger


REQUIRED_ADDRESS_FIELDS = ("name", "line1", "city", "state", "postal_code", "country")

# Supplier order statuses that mean the balance payment already went through.
SUPPLIER_PAID_STATES = {"UNSHIPPED", "PAID", "SHIPPED", "IN_TRANSIT", "DELIVERED"}


@dataclass
class FulfillmentResult:
    success: bool
    lot_id: Optional[str]
    status: str
    cj_order_id: Optional[str] = None
    cj_order_number: Optional[str] = None
    reason: Optional[str] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "lot_id": self.lot_id,
            "status": self.status,
            "cj_order_id": self.cj_order_id,
            "cj_order_number": self.cj_order_number,
            "reason": self.reason,
        }


def _failure(lot: DropshipLot, reason: str) -> FulfillmentResult:
    return FulfillmentResult(
        success=False,
        lot_id=lot.id,
        status=lot.status,
        cj_order_id=lot.cj_order_id,
        cj_order_number=lot.cj_order_number,
        reason=reason,
    )


def missing_address_fields(address: Optional[Dict[str, Any]]) -> list:
    if not address:
        return list(REQUIRED_ADDRESS_FIELDS)
    return [f for f in REQUIRED_ADDRESS_FIELDS if not str(address.get(f) or "").strip()]


def price_drift_exceeded(recorded_cents: int, current_cents: int, tolerance_pct: Optional[int] = None) -> bool:
    """True when ``current`` is more than ``tolerance_pct`` percent above ``recorded``.

    Integer arithmetic: exactly +20% is allowed, anything above is not.
    """

    pct = settings.PRICE_DRIFT_TOLERANCE_PCT if tolerance_pct is None else tolerance_pct
    return current_cents * 100 > recorded_cents * (100 + pct)


def _dollars(cents: int) -> str:
    return f"${cents / 100:.2f}"


def fulfill_dropship_lot(
    db: Session,
    lot: DropshipLot,
    shipping_address: Dict[str, Any],
    *,
    cj: Optional[CJClient] = None,
    alerter: Optional[Alerter] = None,
    now: Optional[datetime] = None,
    enforce_spend_cap: bool = True,
) -> FulfillmentResult:
    """Guard, place, pay and confirm the supplier order for ``lot``.

    ``lot`` must be PAID or AUCTION_CLOSED (the latter is moved to PAID
    first, the caller having observed payment). Any other status is
    rejected without side effects.
    """

    cj = cj or get_cj_client()
    alerter = alerter or get_alerter()
    now = now or datetime.now(timezone.utc)

    if lot.status not in (LotStatus.PAID.value, LotStatus.AUCTION_CLOSED.value):
        reason = f"Lot {lot.id} is in status {lot.status}, expected PAID"
        logger.warning("[fulfillment] %s", reason)
        return _failure(lot, reason)

    if lot.cj_order_id:
        reason = f"Lot {lot.id} already has supplier order {lot.cj_order_id}"
        logger.warning("[fulfillment] %s", reason)
        return _failure(lot, reason)

    missing = missing_address_fields(shipping_address)
    if missing:
        reason = f"Shipping address missing fields: {', '.join(missing)}"
        dropship_lots.record_lot_error(db, lot, reason)
        return _failure(lot, reason)

    address_fields = {"shipping_address": dict(shipping_address), "shipping_name": shipping_address.get("name")}
    if lot.status == LotStatus.AUCTION_CLOSED.value:
        try:
            dropship_lots.transition_lot(db, lot, LotStatus.PAID, now=now, **address_fields)
        except InvalidTransitionError:
            # Someone else moved it first; the claim below decides who proceeds.
            logger.info("[fulfillment] lot id=%s moved to %s concurrently", lot.id, lot.status)
    elif lot.shipping_address != shipping_address:
        dropship_lots.update_lot(db, lot, **address_fields)

    if not dropship_lots.claim_lot(db, lot, LotStatus.PAID, now=now, without_supplier_order=True):
        reason = f"Lot {lot.id} is already being fulfilled (status {lot.status})"
        logger.warning("[fulfillment] %s", reason)
        return _failure(lot, reason)

    try:
        return _guard_and_place(
            db, lot, shipping_address, cj=cj, alerter=alerter, now=now, enforce_spend_cap=enforce_spend_cap
        )
    finally:
        _release_claim(db, lot)


def _release_claim(db: Session, lot: DropshipLot) -> None:
    try:
        if lot.fulfillment_claimed_at is not None:
            dropship_lots.release_claim(db, lot)
    except Exception:  # noqa: BLE001
        logger.warning("[fulfillment] could not release claim on lot id=%s", lot.id, exc_info=True)


def _guard_and_place(
    db: Session,
    lot: DropshipLot,
    shipping_address: Dict[str, Any],
    *,
    cj: CJClient,
    alerter: Alerter,
    now: datetime,
    enforce_spend_cap: bool,
) -> FulfillmentResult:
    if enforce_spend_cap:
        spend = check_spending_cap(db, now=now)
        if spend.tripped:
            reason = (
                f"Daily spending cap reached ({_dollars(spend.spent_cents)} of {_dollars(spend.cap_cents)}); "
                "supplier order deferred"
            )
            logger.warning("[fulfillment] lot id=%s: %s", lot.id, reason)
            return _failure(lot, reason)

    # Guard 1: inventory. Advisory only; the order call is the real check.
    stock: Optional[int] = None
    try:
        stock = cj.get_variant_stock(lot.cj_variant_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("[fulfillment] inventory check failed for lot id=%s (continuing): %s", lot.id, exc)

    if stock is not None and stock < 1:
        dropship_lots.transition_lot(
            db,
            lot,
            LotStatus.CJ_OUT_OF_STOCK,
            now=now,
            error_message=f"Variant {lot.cj_variant_id} out of stock at fulfillment time",
        )
        alerter.send(f"Lot {lot.id}: CJ variant {lot.cj_variant_id} out of stock at fulfillment time - needs refund")
        return _failure(lot, "CJ product out of stock")

    # Guard 2: price drift against the cost recorded at listing time.
    current_cents: Optional[int] = None
    try:
        current_cents = cj.get_variant_price_cents(lot.cj_product_id, lot.cj_variant_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("[fulfillment] price check failed for lot id=%s (continuing): %s", lot.id, exc)

    if current_cents is not None and price_drift_exceeded(lot.cj_cost_cents, current_cents):
        before, after = lot.cj_cost_cents, current_cents
        dropship_lots.transition_lot(
            db,
            lot,
            LotStatus.CJ_PRICE_CHANGED,
            now=now,
            error_message=f"CJ price increased from {before} to {after} cents",
        )
        alerter.send(
            f"Lot {lot.id}: CJ price increased from {_dollars(before)} to {_dollars(after)} "
            f"(>{settings.PRICE_DRIFT_TOLERANCE_PCT}% threshold) - needs refund"
        )
        return _failure(lot, f"CJ price increased from {_dollars(before)} to {_dollars(after)}")

    # Place the supplier order.
    order_number = f"PLACER-{lot.basta_item_id}-{int(now.timestamp() * 1000)}"
    try:
        created = cj.create_order(
            order_number=order_number,
            vid=lot.cj_variant_id,
            address=shipping_address,
            logistic_name=lot.cj_logistic_name or settings.CJ_DEFAULT_LOGISTIC_NAME,
            from_country=lot.cj_from_country or settings.CJ_DEFAULT_FROM_COUNTRY,
        )
    except Exception as exc:  # noqa: BLE001
        logger.error("[fulfillment] CJ order creation failed for lot id=%s", lot.id, exc_info=True)
        dropship_lots.record_lot_error(db, lot, f"CJ order failed: {exc}")
        alerter.send(f'Lot {lot.id} ("{lot.cj_product_name or lot.title}"): CJ order creation failed - {exc}', "critical")
        return _failure(lot, str(exc))

    order_id = created.order_id
    if not isinstance(order_id, str) or not order_id.strip():
        body = json.dumps(created.raw, default=str)[:500]
        logger.error("[fulfillment] CJ createOrder returned no orderId for lot id=%s: %s", lot.id, body)
        dropship_lots.record_lot_error(db, lot, f"CJ order creation returned no order ID. Response: {body}")
        alerter.send(
            f"Lot {lot.id}: CJ order {order_number} returned no order ID; check the supplier dashboard before retrying",
            "critical",
        )
        return _failure(lot, "CJ order creation returned no order ID")

    try:
        dropship_lots.transition_lot(
            db,
            lot,
            LotStatus.CJ_ORDERED,
            now=now,
            keep_claim=True,
            cj_order_id=order_id,
            cj_order_number=order_number,
            cj_order_status=created.order_status,
            total_cost_cents=lot.cj_cost_cents + lot.cj_shipping_cents,
            error_message=None,
        )
    except InvalidTransitionError:
        alerter.send(
            f"Lot {lot.id}: supplier order {order_id} was created but the lot had already moved to "
            f"{lot.status}; possible duplicate supplier order",
            "critical",
        )
        raise
    logger.info("[fulfillment] CJ order created: %s for lot id=%s", order_id, lot.id)

    return _pay_and_confirm(db, lot, cj=cj, now=now)


def _pay_and_confirm(db: Session, lot: DropshipLot, *, cj: CJClient, now: datetime) -> FulfillmentResult:
    order_id = lot.cj_order_id
    try:
        cj.pay_order(order_id)
    except Exception as exc:  # noqa: BLE001
        logger.error("[fulfillment] CJ payment failed for order %s (lot id=%s): %s", order_id, lot.id, exc)
        dropship_lots.record_lot_error(db, lot, f"CJ payment failed: {exc}")
        return _failure(lot, f"CJ payment failed: {exc}")

    mark_supplier_paid(db, lot, now=now, order_status="UNSHIPPED")
    logger.info("[fulfillment] CJ order paid: %s", order_id)

    try:
        cj.confirm_order(order_id)
        logger.info("[fulfillment] CJ order confirmed: %s", order_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("[fulfillment] CJ confirm failed (non-blocking) for order %s: %s", order_id, exc)

    return FulfillmentResult(
        success=True,
        lot_id=lot.id,
        status=lot.status,
        cj_order_id=order_id,
        cj_order_number=lot.cj_order_number,
    )


def mark_supplier_paid(db: Session, lot: DropshipLot, *, now: datetime, order_status: str) -> None:
    total = lot.total_cost_cents
    if total is None:
        total = lot.cj_cost_cents + lot.cj_shipping_cents
    dropship_lots.transition_lot(
        db,
        lot,
        LotStatus.CJ_PAID,
        now=now,
        cj_paid_at=now,
        cj_order_status=order_status,
        total_cost_cents=total,
        profit_cents=(lot.winning_bid_cents or 0) - total,
        error_message=None,
    )


def resume_supplier_payment(
    db: Session,
    lot: DropshipLot,
    *,
    cj: Optional[CJClient] = None,
    now: Optional[datetime] = None,
    enforce_spend_cap: bool = True,
) -> FulfillmentResult:
    """Pay the existing supplier order of a CJ_ORDERED lot.

    If the supplier already reports the order as paid (our earlier write was
    lost), the lot is advanced without paying again.
    """

    cj = cj or get_cj_client()
    now = now or datetime.now(timezone.utc)

    if lot.status != LotStatus.CJ_ORDERED.value or not lot.cj_order_id:
        return _failure(lot, f"Lot {lot.id} is in status {lot.status}, expected CJ_ORDERED with a supplier order")

    if enforce_spend_cap:
        spend = check_spending_cap(db, now=now)
        if spend.tripped:
            return _failure(lot, "Daily spending cap reached; supplier payment deferred")

    if not dropship_lots.claim_lot(db, lot, LotStatus.CJ_ORDERED, now=now):
        reason = f"Lot {lot.id} is already being paid (status {lot.status})"
        logger.warning("[fulfillment] %s", reason)
        return _failure(lot, reason)

    try:
        return _resume_payment(db, lot, cj=cj, now=now)
    finally:
        _release_claim(db, lot)


def _resume_payment(db: Session, lot: DropshipLot, *, cj: CJClient, now: datetime) -> FulfillmentResult:
    try:
        detail = cj.get_order_detail(lot.cj_order_id)
    except Exception as exc:  # noqa: BLE001
        logger.warning("[fulfillment] could not read CJ order %s before retrying payment: %s", lot.cj_order_id, exc)
        detail = None

    if detail is not None and detail.order_status.upper() in SUPPLIER_PAID_STATES:
        mark_supplier_paid(db, lot, now=now, order_status=detail.order_status)
        logger.info("[fulfillment] CJ order %s already paid at supplier; lot id=%s -> CJ_PAID", lot.cj_order_id, lot.id)
        return FulfillmentResult(
            success=True,
            lot_id=lot.id,
            status=lot.status,
            cj_order_id=lot.cj_order_id,
            cj_order_number=lot.cj_order_number,
        )

    logger.info("[fulfillment] retrying payment for CJ order %s (lot id=%s)", lot.cj_order_id, lot.id)
    return _pay_and_confirm(db, lot, cj=cj, now=now)
