"""Spend and margin circuit breakers.

Both values are derived views recomputed from ``dropship_lots`` on every
call; nothing is cached between scheduler runs or process restarts.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import DropshipLot
from app.services.lot_state import SPEND_STATUSES


@dataclass
class SpendCheck:
    spent_cents: int
    cap_cents: int

    @property
    def tripped(self) -> bool:
        return self.spent_cents >= self.cap_cents

    def as_dict(self) -> dict:
        return {"spent_cents": self.spent_cents, "cap_cents": self.cap_cents, "tripped": self.tripped}


@dataclass
class MarginCheck:
    revenue_cents: int
    profit_cents: int
    floor_bps: int
    lots: int

    @property
    def margin_bps(self) -> Optional[float]:
        if not self.revenue_cents:
            return None
        return self.profit_cents * 10000 / self.revenue_cents

    @property
    def tripped(self) -> bool:
        # profit / revenue < floor / 10000, kept in integers
        if self.revenue_cents <= 0:
            return False
        return self.profit_cents * 10000 < self.floor_bps * self.revenue_cents

    def as_dict(self) -> dict:
        return {
            "revenue_cents": self.revenue_cents,
            "profit_cents": self.profit_cents,
            "margin_bps": self.margin_bps,
            "floor_bps": self.floor_bps,
            "lots": self.lots,
            "tripped": self.tripped,
        }


def _day_bounds(now: datetime) -> tuple:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    now = now.astimezone(timezone.utc)
    start = now.replace(hour=0, minute=0, second=0, microsecond=0)
    return start, start + timedelta(days=1)


def check_spending_cap(
    db: Session,
    *,
    now: Optional[datetime] = None,
    cap_cents: Optional[int] = None,
) -> SpendCheck:
    """Total cost of lots at CJ_ORDERED or later that were updated today (UTC)."""

    start, end = _day_bounds(now or datetime.now(timezone.utc))
    spent = (
        db.query(func.coalesce(func.sum(DropshipLot.total_cost_cents), 0))
        .filter(
            DropshipLot.status.in_([s.value for s in SPEND_STATUSES]),
            DropshipLot.updated_at >= start,
            DropshipLot.updated_at < end,
        )
        .scalar()
    )
    cap = settings.DAILY_SPENDING_CAP_CENTS if cap_cents is None else cap_cents
    return SpendCheck(spent_cents=int(spent or 0), cap_cents=int(cap))


def check_margin_floor(
    db: Session,
    *,
    now: Optional[datetime] = None,
    floor_bps: Optional[int] = None,
    window_days: Optional[int] = None,
) -> MarginCheck:
    """Realized margin across lots fulfilled within the trailing window."""

    now = now or datetime.now(timezone.utc)
    days = settings.MARGIN_WINDOW_DAYS if window_days is None else window_days
    since = now - timedelta(days=days)
    revenue, profit, count = (
        db.query(
            func.coalesce(func.sum(DropshipLot.winning_bid_cents), 0),
            func.coalesce(func.sum(DropshipLot.profit_cents), 0),
            func.count(DropshipLot.id),
        )
        .filter(
            DropshipLot.status.in_([s.value for s in SPEND_STATUSES]),
            DropshipLot.profit_cents.isnot(None),
            DropshipLot.updated_at >= since,
        )
        .one()
    )
    floor = settings.MARGIN_FLOOR_BPS if floor_bps is None else floor_bps
    return MarginCheck(
        revenue_cents=int(revenue or 0),
        profit_cents=int(profit or 0),
        floor_bps=int(floor),
        lots=int(count or 0),
    )
