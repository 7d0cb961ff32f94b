from datetime import datetime, timedelta, timezone

import pytest

from app.models_sqlalchemy.models import DropshipLot, LotStatus
from app.services import dropship_lots
from app.services.errors import InvalidTransitionError, PipelineError

from conftest import age_lot, make_lot


def test_transition_writes_fields_and_stamps(db):
    lot = make_lot(db)
    now = datetime.now(timezone.utc)

    dropship_lots.transition_lot(
        db, lot, LotStatus.AUCTION_CLOSED, now=now, winner_user_id="user_1", winning_bid_cents=10000
    )

    assert lot.status == "AUCTION_CLOSED"
    assert lot.winner_user_id == "user_1"
    assert lot.winning_bid_cents == 10000
    assert dropship_lots.as_utc(lot.status_changed_at) == now
    assert dropship_lots.as_utc(lot.updated_at) == now


def test_illegal_transition_leaves_row_alone(db):
    lot = make_lot(db)

    with pytest.raises(InvalidTransitionError):
        dropship_lots.transition_lot(db, lot, LotStatus.CJ_ORDERED, cj_order_id="cj_1")

    db.refresh(lot)
    assert lot.status == "PUBLISHED"
    assert lot.cj_order_id is None


def test_transition_loses_race_against_concurrent_writer(db):
    lot = make_lot(db, status=LotStatus.AUCTION_CLOSED)

    # Another writer moves the row; our in-memory object still says AUCTION_CLOSED.
    db.query(DropshipLot).filter(DropshipLot.id == lot.id).update(
        {DropshipLot.status: "CANCELLED"}, synchronize_session=False
    )
    db.flush()
    assert lot.status == "AUCTION_CLOSED"

    with pytest.raises(InvalidTransitionError):
        dropship_lots.transition_lot(db, lot, LotStatus.PAID)


def test_status_cannot_be_written_directly(db):
    lot = make_lot(db)
    with pytest.raises(PipelineError):
        dropship_lots.update_lot(db, lot, status="DELIVERED")
    with pytest.raises(PipelineError):
        dropship_lots.update_lot(db, lot, status_changed_at=datetime.now(timezone.utc))


def test_supplier_order_id_is_never_replaced(db):
    lot = make_lot(db, status=LotStatus.CJ_ORDERED, cj_order_id="cj_1")

    with pytest.raises(PipelineError):
        dropship_lots.update_lot(db, lot, cj_order_id="cj_2")

    dropship_lots.update_lot(db, lot, cj_order_id="cj_1")
    assert lot.cj_order_id == "cj_1"


def test_total_cost_must_equal_cost_plus_shipping(db):
    lot = make_lot(db, status=LotStatus.PAID)

    with pytest.raises(PipelineError):
        dropship_lots.transition_lot(db, lot, LotStatus.CJ_ORDERED, cj_order_id="cj_1", total_cost_cents=4500)

    dropship_lots.transition_lot(db, lot, LotStatus.CJ_ORDERED, cj_order_id="cj_1", total_cost_cents=5000)
    assert lot.total_cost_cents == 5000


def test_error_writes_do_not_reset_the_stuck_clock(db):
    lot = age_lot(db, make_lot(db, status=LotStatus.PAID), minutes=90)
    changed = lot.status_changed_at

    dropship_lots.record_lot_error(db, lot, "CJ order failed: timeout")

    assert lot.error_message == "CJ order failed: timeout"
    assert lot.status_changed_at == changed
    stale = dropship_lots.stale_lots(db, status=LotStatus.PAID, older_than_minutes=60)
    assert [l.id for l in stale] == [lot.id]


def test_stale_lots_filters_by_status_and_age(db):
    old_paid = age_lot(db, make_lot(db, basta_item_id="a", status=LotStatus.PAID), minutes=45)
    make_lot(db, basta_item_id="b", status=LotStatus.PAID)
    age_lot(db, make_lot(db, basta_item_id="c", status=LotStatus.CJ_ORDERED, cj_order_id="cj_c"), minutes=45)

    stale = dropship_lots.stale_lots(db, status=LotStatus.PAID, older_than_minutes=30)

    assert [l.id for l in stale] == [old_paid.id]


def test_get_lots_by_items(db):
    a = make_lot(db, basta_item_id="a")
    make_lot(db, basta_item_id="b")

    found = dropship_lots.get_lots_by_items(db, ["a", "zzz", None])

    assert list(found) == ["a"]
    assert found["a"].id == a.id
    assert dropship_lots.get_lots_by_items(db, []) == {}


def test_financial_summary(db):
    make_lot(
        db,
        basta_item_id="a",
        status=LotStatus.CJ_PAID,
        winning_bid_cents=10000,
        total_cost_cents=5000,
        profit_cents=5000,
    )
    make_lot(
        db,
        basta_item_id="b",
        status=LotStatus.SHIPPED,
        winning_bid_cents=6000,
        total_cost_cents=5000,
        profit_cents=1000,
    )
    make_lot(db, basta_item_id="c", status=LotStatus.CANCELLED, error_message="x -> Refunded (Stripe refund: re_1)")
    make_lot(db, basta_item_id="d")

    summary = dropship_lots.financial_summary(db)

    assert summary["fulfilled_lots"] == 2
    assert summary["revenue_cents"] == 16000
    assert summary["cost_cents"] == 10000
    assert summary["profit_cents"] == 6000
    assert summary["margin_bps"] == 3750
    assert summary["refunded_lots"] == 1
    assert summary["by_status"] == {"CJ_PAID": 1, "SHIPPED": 1, "CANCELLED": 1, "PUBLISHED": 1}


def test_as_utc_handles_naive_values():
    naive = datetime(2026, 3, 1, 12, 0)
    assert dropship_lots.as_utc(naive) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert dropship_lots.as_utc(None) is None
    offset = datetime(2026, 3, 1, 14, 0, tzinfo=timezone(timedelta(hours=2)))
    assert dropship_lots.as_utc(offset) == datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
