"""Lot Record store.

All writes to ``dropship_lots`` go through this module. Status changes are
status-gated: :func:`transition_lot` issues a single
``UPDATE ... WHERE id = :id AND status = :expected`` so that a duplicate
invocation racing on the same lot (two overlapping scheduler runs, a webhook
redelivered during a run) finds zero affected rows and fails with
InvalidTransitionError instead of writing twice.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import DropshipLot, LotStatus
from app.services.errors import InvalidTransitionError, PipelineError
from app.services.lot_state import (
    SPEND_STATUSES,
    StatusLike,
    ensure_transition,
    normalize_status,
)
from app.utils.logger import logger


# Columns callers may never write through the generic helpers.
_PROTECTED_FIELDS = {"id", "status", "status_changed_at", "fulfillment_claimed_at", "basta_item_id", "created_at"}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes (SQLite drops tzinfo on the way back)."""

    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _check_fields(lot: DropshipLot, fields: Dict[str, Any]) -> None:
    bad = _PROTECTED_FIELDS.intersection(fields)
    if bad:
        raise PipelineError(f"Fields {sorted(bad)} cannot be written directly on lot {lot.id}")

    if "cj_order_id" in fields and lot.cj_order_id and fields["cj_order_id"] != lot.cj_order_id:
        raise PipelineError(
            f"Lot {lot.id} already has supplier order {lot.cj_order_id}; refusing to replace it"
        )

    if fields.get("total_cost_cents") is not None:
        cost = fields.get("cj_cost_cents", lot.cj_cost_cents) or 0
        shipping = fields.get("cj_shipping_cents", lot.cj_shipping_cents) or 0
        if fields["total_cost_cents"] != cost + shipping:
            raise PipelineError(
                f"Lot {lot.id} total cost {fields['total_cost_cents']} != {cost} + {shipping}"
            )


def register_lot(
    db: Session,
    *,
    basta_item_id: str,
    cj_product_id: str,
    cj_variant_id: str,
    cj_cost_cents: int,
    cj_shipping_cents: int = 0,
    title: Optional[str] = None,
    status: StatusLike = LotStatus.PUBLISHED,
    **extra: Any,
) -> DropshipLot:
    """Insert a lot that the listing layer has published for auction."""

    lot = DropshipLot(
        basta_item_id=basta_item_id,
        cj_product_id=cj_product_id,
        cj_variant_id=cj_variant_id,
        cj_cost_cents=cj_cost_cents,
        cj_shipping_cents=cj_shipping_cents,
        title=title,
        status=normalize_status(status).value,
        **extra,
    )
    db.add(lot)
    db.commit()
    db.refresh(lot)
    logger.info("[lots] registered lot id=%s item=%s status=%s", lot.id, basta_item_id, lot.status)
    return lot


def get_lot(db: Session, lot_id: str) -> Optional[DropshipLot]:
    return db.query(DropshipLot).filter(DropshipLot.id == lot_id).one_or_none()


def get_lot_by_item(db: Session, basta_item_id: str) -> Optional[DropshipLot]:
    return db.query(DropshipLot).filter(DropshipLot.basta_item_id == basta_item_id).one_or_none()


def get_lots_by_items(db: Session, item_ids: Iterable[str]) -> Dict[str, DropshipLot]:
    ids = [i for i in item_ids if i]
    if not ids:
        return {}
    rows = db.query(DropshipLot).filter(DropshipLot.basta_item_id.in_(ids)).all()
    return {row.basta_item_id: row for row in rows}


def list_lots(
    db: Session,
    *,
    statuses: Optional[Sequence[StatusLike]] = None,
    stripe_invoice_id: Optional[str] = None,
    basta_sale_id: Optional[str] = None,
    winner_user_id: Optional[str] = None,
    updated_before: Optional[datetime] = None,
    status_changed_before: Optional[datetime] = None,
) -> List[DropshipLot]:
    q = db.query(DropshipLot)
    if statuses:
        q = q.filter(DropshipLot.status.in_([normalize_status(s).value for s in statuses]))
    if stripe_invoice_id:
        q = q.filter(DropshipLot.stripe_invoice_id == stripe_invoice_id)
    if basta_sale_id:
        q = q.filter(DropshipLot.basta_sale_id == basta_sale_id)
    if winner_user_id:
        q = q.filter(DropshipLot.winner_user_id == winner_user_id)
    if updated_before is not None:
        q = q.filter(DropshipLot.updated_at < updated_before)
    if status_changed_before is not None:
        q = q.filter(DropshipLot.status_changed_at < status_changed_before)
    return q.order_by(DropshipLot.updated_at.asc()).all()


def transition_lot(
    db: Session,
    lot: DropshipLot,
    target: StatusLike,
    *,
    now: Optional[datetime] = None,
    keep_claim: bool = False,
    **fields: Any,
) -> DropshipLot:
    """Move ``lot`` to ``target`` and write ``fields`` in the same UPDATE.

    The allowed-transition map is checked first; the UPDATE is then guarded
    on the status we read, so a concurrent writer that got there first makes
    this call raise InvalidTransitionError without touching the row. The
    fulfillment claim is cleared unless ``keep_claim`` is set.
    """

    expected = normalize_status(lot.status)
    target_status = ensure_transition(lot.id, expected, target)
    _check_fields(lot, fields)

    values: Dict[Any, Any] = {getattr(DropshipLot, key): value for key, value in fields.items()}
    values[DropshipLot.status] = target_status.value
    stamp = now or _now_utc()
    values[DropshipLot.updated_at] = stamp
    values[DropshipLot.status_changed_at] = stamp
    if not keep_claim:
        values[DropshipLot.fulfillment_claimed_at] = None

    try:
        affected = (
            db.query(DropshipLot)
            .filter(DropshipLot.id == lot.id, DropshipLot.status == expected.value)
            .update(values, synchronize_session=False)
        )
        if affected != 1:
            db.rollback()
            db.refresh(lot)
            raise InvalidTransitionError(lot.id, lot.status, target_status.value)
        db.commit()
    except InvalidTransitionError:
        raise
    except Exception:
        logger.error(
            "[lots] failed to move lot id=%s %s -> %s", lot.id, expected.value, target_status.value, exc_info=True
        )
        db.rollback()
        raise

    db.refresh(lot)
    logger.info("[lots] lot id=%s %s -> %s", lot.id, expected.value, target_status.value)
    return lot


def update_lot(db: Session, lot: DropshipLot, *, now: Optional[datetime] = None, **fields: Any) -> DropshipLot:
    """Write non-status fields (error message, address, tracking, ...)."""

    _check_fields(lot, fields)
    for key, value in fields.items():
        setattr(lot, key, value)
    if now is not None:
        lot.updated_at = now
    try:
        db.commit()
    except Exception:
        logger.error("[lots] failed to update lot id=%s fields=%s", lot.id, sorted(fields), exc_info=True)
        db.rollback()
        raise
    db.refresh(lot)
    return lot


def record_lot_error(db: Session, lot: DropshipLot, message: str) -> DropshipLot:
    """Overwrite the lot's last error message."""

    logger.warning("[lots] lot id=%s error: %s", lot.id, message)
    return update_lot(db, lot, error_message=message)


def claim_lot(
    db: Session,
    lot: DropshipLot,
    expected: StatusLike,
    *,
    now: Optional[datetime] = None,
    ttl_minutes: Optional[int] = None,
    without_supplier_order: bool = False,
) -> bool:
    """Take the fulfillment claim on ``lot`` while it sits in ``expected``.

    One conditional UPDATE: it only matches when the lot is still in
    ``expected`` and nobody holds a claim younger than ``ttl_minutes``.
    With ``without_supplier_order`` it also requires ``cj_order_id`` to be
    unset.
    Returns False (and leaves the row alone) when another worker got there
    first. Any later status write clears the claim.
    """

    status = normalize_status(expected)
    stamp = now or _now_utc()
    ttl = settings.FULFILLMENT_CLAIM_TTL_MINUTES if ttl_minutes is None else ttl_minutes
    stale_before = stamp - timedelta(minutes=ttl)
    conditions = [
        DropshipLot.id == lot.id,
        DropshipLot.status == status.value,
        or_(
            DropshipLot.fulfillment_claimed_at.is_(None),
            DropshipLot.fulfillment_claimed_at < stale_before,
        ),
    ]
    if without_supplier_order:
        conditions.append(DropshipLot.cj_order_id.is_(None))

    try:
        affected = (
            db.query(DropshipLot)
            .filter(*conditions)
            .update(
                # updated_at is left as is; it dates spend, not claims.
                {DropshipLot.fulfillment_claimed_at: stamp, DropshipLot.updated_at: DropshipLot.updated_at},
                synchronize_session=False,
            )
        )
        if affected != 1:
            db.rollback()
            db.refresh(lot)
            logger.info("[lots] lot id=%s already claimed or no longer %s", lot.id, status.value)
            return False
        db.commit()
    except Exception:
        logger.error("[lots] failed to claim lot id=%s", lot.id, exc_info=True)
        db.rollback()
        raise

    db.refresh(lot)
    return True


def release_claim(db: Session, lot: DropshipLot) -> DropshipLot:
    """Drop the fulfillment claim so the next run can pick the lot up again."""

    try:
        db.query(DropshipLot).filter(DropshipLot.id == lot.id).update(
            {DropshipLot.fulfillment_claimed_at: None, DropshipLot.updated_at: DropshipLot.updated_at},
            synchronize_session=False,
        )
        db.commit()
    except Exception:
        logger.error("[lots] failed to release claim on lot id=%s", lot.id, exc_info=True)
        db.rollback()
        raise
    db.refresh(lot)
    return lot


def status_counts(db: Session) -> Dict[str, int]:
    rows = db.query(DropshipLot.status, func.count(DropshipLot.id)).group_by(DropshipLot.status).all()
    return {status: int(count) for status, count in rows}


def financial_summary(db: Session) -> Dict[str, Any]:
    """Revenue / cost / profit across lots that committed supplier spend."""

    spend_values = [s.value for s in SPEND_STATUSES]
    revenue, cost, profit, count = (
        db.query(
            func.coalesce(func.sum(DropshipLot.winning_bid_cents), 0),
            func.coalesce(func.sum(DropshipLot.total_cost_cents), 0),
            func.coalesce(func.sum(DropshipLot.profit_cents), 0),
            func.count(DropshipLot.id),
        )
        .filter(DropshipLot.status.in_(spend_values))
        .one()
    )

    refunded = (
        db.query(func.count(DropshipLot.id))
        .filter(
            DropshipLot.status == LotStatus.CANCELLED.value,
            DropshipLot.error_message.like("%Refunded%"),
        )
        .scalar()
    )

    revenue = int(revenue or 0)
    margin_bps = int(int(profit or 0) * 10000 / revenue) if revenue else None
    return {
        "fulfilled_lots": int(count or 0),
        "revenue_cents": revenue,
        "cost_cents": int(cost or 0),
        "profit_cents": int(profit or 0),
        "margin_bps": margin_bps,
        "refunded_lots": int(refunded or 0),
        "by_status": status_counts(db),
    }


def stale_lots(
    db: Session,
    *,
    status: StatusLike,
    older_than_minutes: int,
    now: Optional[datetime] = None,
) -> List[DropshipLot]:
    cutoff = (now or _now_utc()) - timedelta(minutes=older_than_minutes)
    return list_lots(db, statuses=[status], status_changed_before=cutoff)
