"""Stuck-lot detection and recovery.

A lot is stuck when it has sat in the same non-terminal status longer than
its threshold (``status_changed_at``; error/address writes do not reset the
clock). Terminal lots, refunded/cancelled ones included, are never picked up.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import DropshipLot, LotStatus
from app.services import dropship_lots
from app.services.alerts import Alerter
from app.services.basta_client import BastaClient
from app.services.cj_client import CJClient
from app.services.dropship_fulfillment import fulfill_dropship_lot, mark_supplier_paid, resume_supplier_payment
from app.services.errors import InvalidTransitionError
from app.services.sale_closed_processor import process_closed_sale
from app.services.stripe_gateway import StripeGateway
from app.utils.logger import logger


SUPPLIER_UNSHIPPED_STATES = {"UNSHIPPED", "PAID"}
SUPPLIER_SHIPPED_STATES = {"SHIPPED", "IN_TRANSIT"}
SUPPLIER_DEAD_STATES = {"CANCELLED", "FAILED", "REFUNDED"}

# Statuses that should keep moving without human input.
WATCHED_STATUSES = (LotStatus.AUCTION_CLOSED, LotStatus.PAID, LotStatus.CJ_ORDERED)


def _age_hours(lot: DropshipLot, now: datetime) -> float:
    changed = dropship_lots.as_utc(lot.status_changed_at) or now
    return (now - changed).total_seconds() / 3600


def _sync_supplier_order(db: Session, lot: DropshipLot, *, cj: CJClient, now: datetime) -> str:
    """Advance a CJ_ORDERED lot from the supplier's view of its order. Returns the action taken."""

    detail = cj.get_order_detail(lot.cj_order_id)
    supplier_status = detail.order_status.upper()
    logger.info("[stuck] lot id=%s supplier order %s status=%s", lot.id, lot.cj_order_id, supplier_status)

    if supplier_status in SUPPLIER_UNSHIPPED_STATES:
        mark_supplier_paid(db, lot, now=now, order_status=detail.order_status)
        return "cj_paid"

    if supplier_status in SUPPLIER_SHIPPED_STATES:
        mark_supplier_paid(db, lot, now=now, order_status=detail.order_status)
        dropship_lots.transition_lot(
            db,
            lot,
            LotStatus.SHIPPED,
            now=now,
            tracking_number=detail.track_number,
            tracking_carrier=detail.logistic_name,
        )
        return "shipped"

    if supplier_status in SUPPLIER_DEAD_STATES:
        dropship_lots.transition_lot(
            db,
            lot,
            LotStatus.CANCELLED,
            now=now,
            cj_order_status=detail.order_status,
            error_message=f"CJ order {lot.cj_order_id} status: {detail.order_status}",
        )
        return "cancelled"

    if lot.cj_paid_at is None:
        result = resume_supplier_payment(db, lot, cj=cj, now=now)
        return "payment_resumed" if result.success else "payment_failed"

    return "unchanged"


def handle_stuck_lots(
    db: Session,
    *,
    basta: BastaClient,
    cj: CJClient,
    payments: StripeGateway,
    alerter: Alerter,
    now: Optional[datetime] = None,
    skip_lot_ids: Iterable[str] = (),
) -> Dict[str, Any]:
    """Re-drive lots stuck in AUCTION_CLOSED, PAID or CJ_ORDERED and escalate old ones.

    ``skip_lot_ids`` are lots already retried earlier in the same run.
    """

    skip = set(skip_lot_ids)
    now = now or datetime.now(timezone.utc)
    result: Dict[str, Any] = {
        "auction_closed_retried": 0,
        "paid_retried": 0,
        "cj_ordered_checked": 0,
        "alerts_sent": 0,
        "errors": [],
    }

    # AUCTION_CLOSED: re-run the sale, its dedupe makes this harmless.
    closed = dropship_lots.stale_lots(
        db, status=LotStatus.AUCTION_CLOSED, older_than_minutes=settings.STUCK_AUCTION_CLOSED_MINUTES, now=now
    )
    for sale_id in sorted({lot.basta_sale_id for lot in closed if lot.basta_sale_id}):
        try:
            process_closed_sale(db, sale_id, basta=basta, payments=payments, alerter=alerter)
            result["auction_closed_retried"] += 1
        except Exception as exc:  # noqa: BLE001
            logger.error("[stuck] re-processing sale=%s failed", sale_id, exc_info=True)
            result["errors"].append(f"sale {sale_id}: {exc}")

    # PAID without a supplier order: retry fulfillment with the stored address.
    paid = dropship_lots.stale_lots(db, status=LotStatus.PAID, older_than_minutes=settings.STUCK_PAID_MINUTES, now=now)
    for lot in paid:
        if lot.id in skip or lot.cj_order_id:
            continue
        if not lot.shipping_address:
            logger.warning("[stuck] lot id=%s is PAID but has no shipping address", lot.id)
            result["errors"].append(f"lot {lot.id}: is PAID but has no shipping address - cannot fulfill")
            continue
        try:
            outcome = fulfill_dropship_lot(db, lot, lot.shipping_address, cj=cj, alerter=alerter, now=now)
            result["paid_retried"] += 1
            if not outcome.success:
                logger.warning("[stuck] fulfillment retry for lot id=%s failed: %s", lot.id, outcome.reason)
        except Exception as exc:  # noqa: BLE001
            logger.error("[stuck] fulfillment retry for lot id=%s raised", lot.id, exc_info=True)
            result["errors"].append(f"lot {lot.id}: {exc}")

    ordered = dropship_lots.stale_lots(
        db, status=LotStatus.CJ_ORDERED, older_than_minutes=settings.STUCK_CJ_ORDERED_MINUTES, now=now
    )
    for lot in ordered:
        if lot.id in skip or not lot.cj_order_id:
            continue
        try:
            action = _sync_supplier_order(db, lot, cj=cj, now=now)
            result["cj_ordered_checked"] += 1
            logger.info("[stuck] lot id=%s -> %s", lot.id, action)
        except InvalidTransitionError as exc:
            logger.info("[stuck] lot id=%s moved concurrently: %s", lot.id, exc)
        except Exception as exc:  # noqa: BLE001
            logger.error("[stuck] supplier order check for lot id=%s failed", lot.id, exc_info=True)
            result["errors"].append(f"lot {lot.id}: {exc}")

    # Escalate whatever is still sitting in a watched status past the alert threshold.
    overdue: List[DropshipLot] = dropship_lots.list_lots(db, statuses=list(WATCHED_STATUSES))
    for lot in overdue:
        hours = _age_hours(lot, now)
        if hours * 60 <= settings.STUCK_ALERT_MINUTES:
            continue
        alerter.send(
            f"STUCK LOT needs human intervention: lot={lot.id} status={lot.status} "
            f'product="{lot.cj_product_name or lot.title}" stuck for {hours:.1f}h',
            "critical",
        )
        result["alerts_sent"] += 1

    logger.info(
        "[stuck] done auction_closed_retried=%s paid_retried=%s cj_ordered_checked=%s alerts_sent=%s",
        result["auction_closed_retried"],
        result["paid_retried"],
        result["cj_ordered_checked"],
        result["alerts_sent"],
    )
    return result
